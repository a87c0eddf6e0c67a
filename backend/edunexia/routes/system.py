# backend/edunexia/routes/system.py
"""
System health and version endpoints.

Health checks the database, the session table and the permission seed, and
reports whether the external integrations (payment gateway, image
generation) are configured. Integrations are never called from here.
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import User, Role, Permission, SessionToken, Institution
from ..permissions import DEFAULT_ROLES
from edunexia.time_utils import utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"


def _timed(check):
    start_time = time.time()
    try:
        result = check()
    except Exception:
        current_app.logger.exception("Health check %s failed", check.__name__)
        result = {"status": "unhealthy", "error": f"{check.__name__} error"}
    result["latency_ms"] = round((time.time() - start_time) * 1000, 2)
    return result


def check_database_health() -> dict:
    return {
        "status": "healthy",
        "details": {
            "institutions": db.session.query(Institution).count(),
            "users": db.session.query(User).count(),
            "roles": db.session.query(Role).count(),
            "permissions": db.session.query(Permission).count(),
        },
    }


def check_session_service_health() -> dict:
    now = utcnow()
    active_sessions = db.session.query(SessionToken).filter(
        SessionToken.is_revoked.is_(False)
    ).count()
    expired_sessions = db.session.query(SessionToken).filter(
        SessionToken.expires_at < now,
        SessionToken.is_revoked.is_(False)
    ).count()
    return {
        "status": "healthy",
        "details": {
            "active_sessions": active_sessions,
            "expired_pending_cleanup": expired_sessions,
        },
    }


def check_permission_seed_health() -> dict:
    """Degraded (still operational) until `flask perms seed` has run."""
    existing = {name for (name,) in db.session.query(Role.name).all()}
    missing_roles = sorted(set(DEFAULT_ROLES) - existing)
    permission_count = db.session.query(Permission).count()

    result = {
        "status": "healthy",
        "details": {
            "permissions_initialized": permission_count > 0,
            "permission_count": permission_count,
        },
    }
    if missing_roles or permission_count == 0:
        result["status"] = "degraded"
        result["warning"] = "Run 'flask perms seed'"
        result["details"]["missing_roles"] = missing_roles
    return result


def integration_status() -> dict:
    config = current_app.config
    return {
        "payment_gateway": bool(config.get("ASAAS_API_KEY")),
        "image_generation": bool(config.get("REPLICATE_API_TOKEN")),
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    checks = {
        "database": _timed(check_database_health),
        "session_service": _timed(check_session_service_health),
        "permissions": _timed(check_permission_seed_health),
    }

    statuses = [c["status"] for c in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
        "integrations": integration_status(),
    }, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment info; never exposes keys or credentials."""
    return {
        "api_version": API_VERSION,
        "environment": current_app.config.get("APP_ENV", "development"),
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
