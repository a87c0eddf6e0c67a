# Overview: Service-layer operations for the permission audit log; append, query, export and aggregate.

"""
Permission Audit Service

WHY: Every grant, revoke, role assignment and CRM/checkout mutation leaves
an append-only trail in permission_audit. Admins filter it, export it to
CSV and look at aggregate stats.

DESIGN:
- Database failures in log_action are logged and rolled back; they never
  fail the business operation. Callers commit their own change first, then log.
- Filters accept the query-string names used by the admin UI
  (userId, actionType, entityType, entityId, startDate, endDate, limit, offset)
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import PermissionAudit, User, AUDIT_ACTION_TYPES, AUDIT_ENTITY_TYPES
from ..validation import ValidationError, parse_int_arg, require_choice
from edunexia.time_utils import parse_iso_datetime, to_utc_z, utcnow


DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

CSV_COLUMNS = (
    "id", "created_at", "user_id", "username", "action_type", "entity_type",
    "entity_id", "resource_type", "description", "ip_address",
)


@dataclass
class AuditFilters:
    user_id: int | None = None
    action_type: str | None = None
    entity_type: str | None = None
    entity_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0


def filters_from_args(args) -> AuditFilters:
    """
    Build AuditFilters from request.args (or any mapping).

    endDate given as a bare date (YYYY-MM-DD) is inclusive of that whole day.
    Raises ValidationError on malformed values.
    """
    action_type = args.get("actionType") or None
    if action_type is not None:
        require_choice("actionType", action_type, AUDIT_ACTION_TYPES)

    entity_type = args.get("entityType") or None
    if entity_type is not None:
        require_choice("entityType", entity_type, AUDIT_ENTITY_TYPES)

    start_date = _parse_date_arg("startDate", args.get("startDate"))
    end_raw = args.get("endDate")
    end_date = _parse_date_arg("endDate", end_raw)
    if end_date is not None and end_raw and len(end_raw.strip()) == 10:
        end_date = end_date + timedelta(days=1) - timedelta(microseconds=1)

    if start_date and end_date and start_date > end_date:
        raise ValidationError("startDate must be before endDate")

    return AuditFilters(
        user_id=parse_int_arg("userId", args.get("userId")),
        action_type=action_type,
        entity_type=entity_type,
        entity_id=parse_int_arg("entityId", args.get("entityId")),
        start_date=start_date,
        end_date=end_date,
        limit=parse_int_arg("limit", args.get("limit"), default=DEFAULT_LIMIT, minimum=1, maximum=MAX_LIMIT),
        offset=parse_int_arg("offset", args.get("offset"), default=0, minimum=0),
    )


def _parse_date_arg(name: str, raw: str | None) -> datetime | None:
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


def log_action(
    *,
    action_type: str,
    entity_type: str,
    description: str,
    user_id: int | None = None,
    entity_id: int | None = None,
    resource_type: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
    metadata: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> PermissionAudit | None:
    """
    Append an audit entry.

    Returns the entry, or None when it could not be written (the failure is
    logged and the session rolled back so the caller's request can finish).
    """
    require_choice("action_type", action_type, AUDIT_ACTION_TYPES)
    require_choice("entity_type", entity_type, AUDIT_ENTITY_TYPES)

    entry = PermissionAudit(
        user_id=user_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        resource_type=resource_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        details=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow(),
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        if has_app_context():
            current_app.logger.exception(
                "Failed to write audit entry %s/%s", action_type, entity_type
            )
        return None
    return entry


@dataclass
class Actor:
    """Who performed a mutation; routes build one from the current request."""
    user_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def record(
    actor: Actor | None,
    action_type: str,
    entity_type: str,
    entity_id: int | None,
    description: str,
    **kwargs,
) -> PermissionAudit | None:
    """log_action with the actor's identity filled in."""
    actor = actor or Actor()
    return log_action(
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        description=description,
        user_id=actor.user_id,
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
        **kwargs,
    )


def _filtered_query(filters: AuditFilters):
    query = db.session.query(PermissionAudit)
    if filters.user_id is not None:
        query = query.filter(PermissionAudit.user_id == filters.user_id)
    if filters.action_type:
        query = query.filter(PermissionAudit.action_type == filters.action_type)
    if filters.entity_type:
        query = query.filter(PermissionAudit.entity_type == filters.entity_type)
    if filters.entity_id is not None:
        query = query.filter(PermissionAudit.entity_id == filters.entity_id)
    if filters.start_date is not None:
        query = query.filter(PermissionAudit.created_at >= filters.start_date)
    if filters.end_date is not None:
        query = query.filter(PermissionAudit.created_at <= filters.end_date)
    return query


def list_logs(filters: AuditFilters) -> dict:
    """Newest-first page of audit entries plus the unpaged total."""
    query = _filtered_query(filters)
    total = query.count()
    entries = (
        query.order_by(PermissionAudit.created_at.desc(), PermissionAudit.id.desc())
        .offset(filters.offset)
        .limit(filters.limit)
        .all()
    )
    return {
        "items": [e.to_dict() for e in entries],
        "count": len(entries),
        "total": total,
        "limit": filters.limit,
        "offset": filters.offset,
    }


def get_log(log_id: int) -> PermissionAudit | None:
    return db.session.get(PermissionAudit, log_id)


def export_csv(filters: AuditFilters) -> str:
    """
    Render one page of filtered entries as CSV.

    First row is the header.
    """
    entries = (
        _filtered_query(filters)
        .order_by(PermissionAudit.created_at.desc(), PermissionAudit.id.desc())
        .limit(filters.limit)
        .offset(filters.offset)
        .all()
    )

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for entry in entries:
        writer.writerow([
            entry.id,
            to_utc_z(entry.created_at),
            entry.user_id if entry.user_id is not None else "",
            entry.user.username if entry.user else "",
            entry.action_type,
            entry.entity_type,
            entry.entity_id if entry.entity_id is not None else "",
            entry.resource_type or "",
            entry.description,
            entry.ip_address or "",
        ])
    return buffer.getvalue()


def get_stats(start_date: datetime | None = None, end_date: datetime | None = None, top: int = 10) -> dict:
    """
    Aggregate counts for the audit dashboard.

    Returns totals by action_type and entity_type plus the most active users.
    """
    filters = AuditFilters(start_date=start_date, end_date=end_date)
    base = _filtered_query(filters)
    total = base.count()

    by_action = (
        base.with_entities(PermissionAudit.action_type, db.func.count(PermissionAudit.id))
        .group_by(PermissionAudit.action_type)
        .all()
    )
    by_entity = (
        base.with_entities(PermissionAudit.entity_type, db.func.count(PermissionAudit.id))
        .group_by(PermissionAudit.entity_type)
        .all()
    )
    count_col = db.func.count(PermissionAudit.id).label("total")
    top_users = (
        base.join(User, User.id == PermissionAudit.user_id)
        .with_entities(User.id, User.username, count_col)
        .group_by(User.id, User.username)
        .order_by(count_col.desc(), User.id.asc())
        .limit(top)
        .all()
    )

    return {
        "total": total,
        "by_action_type": {action: count for action, count in by_action},
        "by_entity_type": {entity: count for entity, count in by_entity},
        "top_users": [
            {"user_id": user_id, "username": username, "count": count}
            for user_id, username, count in top_users
        ],
        "start_date": to_utc_z(start_date),
        "end_date": to_utc_z(end_date),
    }
