from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from edunexia.time_utils import to_utc_z


AUDIT_ACTION_TYPES = (
    "create", "update", "delete",
    "grant", "revoke",
    "login", "logout", "view",
    "assign", "unassign",
)

AUDIT_ENTITY_TYPES = (
    "user", "role", "permission", "role_permission", "user_role", "user_permission",
    "institution", "polo",
    "lead", "client", "contact", "invoice", "payment", "contract", "subscription",
    "checkout_link", "period", "period_rule", "phase_rule", "payment_rule",
)


class AuditImmutableError(Exception):
    """Raised when code tries to modify or delete a persisted audit row."""


class PermissionAudit(db.Model):
    """
    Append-only log of permission-relevant actions.

    WHY: Compliance trail for who granted, revoked, assigned or changed what.
    old_value / new_value hold JSON snapshots of the entity around the change.

    IMMUTABLE: ORM updates and deletes raise AuditImmutableError.
    """
    __tablename__ = "permission_audit"
    __table_args__ = (
        db.Index("ix_permission_audit_entity", "entity_type", "entity_id"),
        db.Index("ix_permission_audit_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    action_type = db.Column(db.String(16), nullable=False, index=True)
    entity_type = db.Column(db.String(32), nullable=False, index=True)
    entity_id = db.Column(db.Integer, nullable=True)
    resource_type = db.Column(db.String(64), nullable=True)

    description = db.Column(db.Text, nullable=False)
    old_value = db.Column(db.JSON, nullable=True)
    new_value = db.Column(db.JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    details = db.Column("metadata", db.JSON, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    user = db.relationship("User", backref=db.backref("audit_entries", lazy=True, passive_deletes="all"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.user.username if self.user else None,
            "action_type": self.action_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "resource_type": self.resource_type,
            "description": self.description,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "metadata": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(PermissionAudit, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditImmutableError(f"Audit entry {target.id} is append-only")


@event.listens_for(PermissionAudit, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditImmutableError(f"Audit entry {target.id} is append-only")
