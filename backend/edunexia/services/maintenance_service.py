# Overview: Service-layer operations for maintenance; retention cleanup and checkout expiry.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent
from . import checkout_service, session_service
from edunexia.time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """
    Delete security events older than retention_days.

    The permission audit trail is append-only and never cleaned up here.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete()
    db.session.commit()
    return deleted


def cleanup_sessions(*, retention_days: int = 30) -> int:
    return session_service.cleanup_expired_sessions(retention_days=retention_days)


def expire_checkout_links() -> int:
    return checkout_service.expire_stale_links()
