# Overview: Service-layer operations for idempotent schema patches; add columns only when missing.

"""
Idempotent Column Patches

WHY: Databases created before a column existed are brought up to date
without re-running full migrations. Each patch checks the live schema
first, so running it twice is a no-op the second time.

CONCURRENCY: Two processes may both see the column as missing. The loser
gets a duplicate-column error from the database, which is reported as
"already applied" (returns False) rather than failing the run.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from flask import current_app, has_app_context
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError, ProgrammingError

from ..extensions import db


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DUPLICATE_MARKERS = ("duplicate column", "already exists")


@dataclass(frozen=True)
class ColumnSpec:
    table: str
    column: str
    ddl: str  # type and constraints, e.g. "VARCHAR(64)" or "BOOLEAN NOT NULL DEFAULT 1"


# Columns added after the initial schema; older databases may lack them
LEGACY_COLUMNS = (
    ColumnSpec("users", "polo_id", "INTEGER REFERENCES polos(id)"),
    ColumnSpec("users", "full_name", "VARCHAR(255)"),
    ColumnSpec("clients", "segment", "VARCHAR(64)"),
    ColumnSpec("clients", "asaas_customer_id", "VARCHAR(64)"),
    ColumnSpec("checkout_links", "client_id", "INTEGER REFERENCES clients(id)"),
    ColumnSpec("checkout_links", "payment_status", "VARCHAR(16) NOT NULL DEFAULT 'pending'"),
    ColumnSpec("checkout_links", "paid_at", "TIMESTAMP"),
    ColumnSpec("institution_phase_permissions", "is_allowed", "BOOLEAN NOT NULL DEFAULT TRUE"),
    ColumnSpec("payment_status_permissions", "is_allowed", "BOOLEAN NOT NULL DEFAULT TRUE"),
)


def _check_identifier(name: str) -> None:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")


def column_exists(table: str, column: str) -> bool:
    inspector = inspect(db.engine)
    if not inspector.has_table(table):
        raise ValueError(f"Table '{table}' does not exist")
    return any(c["name"] == column for c in inspector.get_columns(table))


def ensure_column(table: str, column: str, ddl: str) -> bool:
    """
    Add table.column when missing.

    Returns True when the column was added, False when it already existed.
    """
    _check_identifier(table)
    _check_identifier(column)

    if column_exists(table, column):
        return False

    statement = text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    try:
        with db.engine.begin() as conn:
            conn.execute(statement)
    except (OperationalError, ProgrammingError) as e:
        message = str(e.orig if getattr(e, "orig", None) is not None else e).lower()
        if not any(marker in message for marker in _DUPLICATE_MARKERS):
            raise
        if has_app_context():
            current_app.logger.warning("Column %s.%s was added concurrently", table, column)
        return False

    if has_app_context():
        current_app.logger.info("Added column %s.%s", table, column)
    return True


def ensure_columns(specs=LEGACY_COLUMNS) -> list[str]:
    """Apply every spec; returns "table.column" for each column actually added."""
    added = []
    for spec in specs:
        if ensure_column(spec.table, spec.column, spec.ddl):
            added.append(f"{spec.table}.{spec.column}")
    return added
