# Overview: Flask API routes for auth operations; parses input and returns JSON responses.

# backend/edunexia/routes/auth.py
"""
Authentication API routes

TRANSPORT: login returns the session token for API clients (Bearer header)
and also stores it in the signed Flask session cookie so browser portals
are authenticated without handling the token themselves.

AUDIT:
- Failed logins -> security_events (LOGIN_FAILED)
- Successful login / logout -> permission_audit (login / logout)
"""

from flask import Blueprint, request, jsonify, current_app, g, session

from ..services import auth_service
from ..services import session_service
from ..services import permission_service
from ..services import audit_service
from ..decorators import require_auth, request_token, current_actor, SESSION_TOKEN_KEY


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Body: {"username" | "email": ..., "password": ...}
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username") or data.get("email")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username/email and password required"}), 400

        user_agent = request.headers.get("User-Agent")
        ip_address = request.remote_addr

        user = auth_service.authenticate(username, password)

        if not user:
            permission_service.log_security_event(
                user_id=None,
                event_type="LOGIN_FAILED",
                success=False,
                resource=request.path,
                action="login",
                reason=f"Invalid credentials for '{username}'",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return jsonify({"error": "Invalid credentials"}), 401

        user_session, token = session_service.create_session(
            user_id=user.id,
            user_agent=user_agent,
            ip_address=ip_address
        )
        session[SESSION_TOKEN_KEY] = token

        audit_service.log_action(
            action_type="login",
            entity_type="user",
            entity_id=user.id,
            description=f"{user.username} logged in",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        return jsonify({
            "user": user.to_dict(),
            "roles": permission_service.get_user_role_names(user.id),
            "permissions": sorted(permission_service.get_user_permissions(user.id)),
            "token": token,
            "session": user_session.to_dict(),
            "message": "Login successful"
        }), 200

    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
def logout_route():
    """
    Revoke the current session token and clear the session cookie.

    WHY: Explicit logout prevents token reuse.
    """
    try:
        token = request_token()
        if not token:
            return jsonify({"error": "Authentication required"}), 401

        context = session_service.validate_session(token)
        revoked = session_service.revoke_session(token, reason="User logout")
        session.pop(SESSION_TOKEN_KEY, None)

        if not revoked:
            return jsonify({"error": "Invalid or expired token"}), 401

        if context:
            audit_service.log_action(
                action_type="logout",
                entity_type="user",
                entity_id=context.user.id,
                description=f"{context.user.username} logged out",
                user_id=context.user.id,
                ip_address=request.remote_addr,
                user_agent=request.headers.get("User-Agent"),
            )

        return jsonify({"message": "Logout successful"}), 200

    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    """Current user, roles, permission codes and session info."""
    user = g.current_user
    return jsonify({
        "user": user.to_dict(),
        "roles": permission_service.get_user_role_names(user.id),
        "permissions": sorted(permission_service.get_user_permissions(user.id)),
        "is_super_admin": permission_service.is_super_admin(user.id),
        "session": g.session_context.session.to_dict(),
    }), 200


@auth_bp.post("/logout-all")
@require_auth
def logout_all_route():
    """Revoke every session of the current user."""
    actor = current_actor()
    count = session_service.revoke_all_user_sessions(g.current_user.id, reason="User revoked all sessions")
    session.pop(SESSION_TOKEN_KEY, None)
    audit_service.record(
        actor, "logout", "user", g.current_user.id,
        f"{g.current_user.username} revoked {count} session(s)",
    )
    return jsonify({"revoked": count}), 200
