# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, session

from .permissions import SUPER_ADMIN_ROLE, ADMIN_ROLE
from .services import session_service, permission_service, abac_service
from .services.audit_service import Actor
from .services.permission_service import PermissionDeniedError


SESSION_TOKEN_KEY = "token"


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def request_token() -> str | None:
    """Bearer token from the Authorization header, else the one stored in the session cookie."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return session.get(SESSION_TOKEN_KEY)


def current_actor() -> Actor:
    """Audit identity for the current request."""
    user = getattr(g, "current_user", None)
    return Actor(
        user_id=user.id if user else None,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def require_auth(f):
    """
    Require authentication.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.institution_id / g.polo_id: copied from the user (may be None)
    - g.session_context: The full SessionContext object

    SECURITY: Returns 401 if:
    - No Bearer token and no session cookie token
    - Invalid or expired token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        context = session_service.validate_session(token)
        if not context:
            session.pop(SESSION_TOKEN_KEY, None)
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = context.user
        g.institution_id = context.institution_id
        g.polo_id = context.polo_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_permission(resource: str, action: str):
    """
    Require (resource, action), honoring the "manage" wildcard and super_admin.

    Denials are written to security_events by permission_service.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            # Ensure @require_auth was called first
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            try:
                permission_service.require_permission(
                    user_id=g.current_user.id,
                    resource=resource,
                    action=action,
                    path=request.path,
                    ip_address=request.remote_addr,
                    user_agent=request.headers.get("User-Agent"),
                )
            except PermissionDeniedError as e:
                return jsonify({
                    "error": "Permission denied",
                    "required_permission": f"{resource}:{action}",
                    "message": str(e)
                }), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def _deny_portal(reason: str, message: str):
    user = g.current_user
    permission_service.log_security_event(
        user_id=user.id,
        event_type="PORTAL_DENIED",
        success=False,
        resource=request.path,
        action=request.method,
        reason=reason,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
        institution_id=user.institution_id,
    )
    return jsonify({"error": message}), 403


def require_portal(*portal_types):
    """Require the authenticated user to log in through one of the given portals."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401
            if g.current_user.portal_type not in portal_types:
                return _deny_portal(
                    f"Portal '{g.current_user.portal_type}' not in {', '.join(portal_types)}",
                    "Access restricted to " + " / ".join(portal_types) + " portal",
                )
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def is_admin_user(user) -> bool:
    if user.portal_type == "admin":
        return True
    roles = permission_service.get_user_role_names(user.id)
    return SUPER_ADMIN_ROLE in roles or ADMIN_ROLE in roles


def require_admin(f):
    """Require the admin portal or the super_admin / admin role."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _is_authenticated():
            return jsonify({"error": "Authentication required"}), 401
        if not is_admin_user(g.current_user):
            return _deny_portal("Admin access required", "Access restricted to administrators")
        return f(*args, **kwargs)
    return decorated_function


require_student = require_portal("student")


def enforce_access(resource: str, action: str, **context):
    """
    Run the full ABAC evaluation for the current user.

    Returns None when allowed, else a 403 response. Context keys are the
    AccessContext fields (institution_id, polo_id, entity_id, target_date,
    payment_status).
    """
    try:
        abac_service.require_access(
            g.current_user.id,
            abac_service.AccessContext(resource=resource, action=action, **context),
            path=request.path,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
    except PermissionDeniedError as e:
        return jsonify({
            "error": "Permission denied",
            "required_permission": f"{resource}:{action}",
            "message": str(e),
        }), 403
    return None
