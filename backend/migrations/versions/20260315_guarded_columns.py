"""Add late columns to users, clients, checkout links and ABAC rule tables

Revision ID: 20260315_guarded_columns
Revises: 20260301_initial
Create Date: 2026-03-15 10:00:00.000000

Every column is added only when missing; databases patched earlier with
`flask schema ensure-columns` upgrade cleanly.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260315_guarded_columns"
down_revision = "20260301_initial"
branch_labels = None
depends_on = None


_COLUMNS = (
    ("users", lambda: sa.Column("full_name", sa.String(length=255), nullable=True)),
    ("users", lambda: sa.Column("polo_id", sa.Integer(), nullable=True)),
    ("clients", lambda: sa.Column("segment", sa.String(length=64), nullable=True)),
    ("clients", lambda: sa.Column("asaas_customer_id", sa.String(length=64), nullable=True)),
    ("checkout_links", lambda: sa.Column("client_id", sa.Integer(), nullable=True)),
    (
        "checkout_links",
        lambda: sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
    ),
    ("checkout_links", lambda: sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True)),
    (
        "institution_phase_permissions",
        lambda: sa.Column("is_allowed", sa.Boolean(), nullable=False, server_default=sa.text("1")),
    ),
    (
        "payment_status_permissions",
        lambda: sa.Column("is_allowed", sa.Boolean(), nullable=False, server_default=sa.text("1")),
    ),
)

_INDEXES = (
    ("users", "ix_users_polo_id", ["polo_id"]),
    ("clients", "ix_clients_asaas_customer_id", ["asaas_customer_id"]),
    ("checkout_links", "ix_checkout_links_client_id", ["client_id"]),
)


def _column_names(inspector, table):
    return {c["name"] for c in inspector.get_columns(table)}


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table, make_column in _COLUMNS:
        column = make_column()
        if column.name in _column_names(inspector, table):
            continue
        with op.batch_alter_table(table, schema=None) as batch_op:
            batch_op.add_column(column)
        inspector = sa.inspect(bind)

    for table, name, columns in _INDEXES:
        existing = {ix["name"] for ix in inspector.get_indexes(table)}
        if name in existing:
            continue
        with op.batch_alter_table(table, schema=None) as batch_op:
            batch_op.create_index(name, columns, unique=False)


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table, name, _columns in reversed(_INDEXES):
        existing = {ix["name"] for ix in inspector.get_indexes(table)}
        if name in existing:
            with op.batch_alter_table(table, schema=None) as batch_op:
                batch_op.drop_index(name)

    for table, make_column in reversed(_COLUMNS):
        column = make_column()
        if column.name not in _column_names(sa.inspect(bind), table):
            continue
        with op.batch_alter_table(table, schema=None) as batch_op:
            batch_op.drop_column(column.name)
