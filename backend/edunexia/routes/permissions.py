# Overview: Flask API routes for roles, permissions and user grants; parses input and returns JSON responses.

# backend/edunexia/routes/permissions.py
"""
Permission management routes.

Provides endpoints for:
- Roles (list, get, create, update, delete) and the permissions granted to them
- The permission catalog (list, create)
- Role assignments and direct permission grants per user
- Self-inspection: my permissions, and "may I do X?" checks

All management endpoints require authentication and the matching
roles / permissions / users permission. Every mutation is written to the
permission audit trail by permission_service.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import User
from ..services import permission_service
from ..services.permission_service import PermissionDeniedError
from ..decorators import require_auth, require_permission, current_actor
from ..validation import ValidationError, ConflictError, NotFoundError
from edunexia.time_utils import parse_iso_datetime

permissions_bp = Blueprint("permissions", __name__, url_prefix="/api/permissions")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _require_int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{key} required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def _optional_int(data: dict, key: str) -> int | None:
    if data.get(key) in (None, ""):
        return None
    return _require_int(data, key)


def _get_user_or_404(user_id: int):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


# =============================================================================
# ROLES
# =============================================================================

@permissions_bp.get("/roles")
@require_auth
@require_permission("roles", "read")
def list_roles():
    roles = permission_service.get_all_roles()
    return jsonify({"roles": [r.to_dict() for r in roles], "count": len(roles)})


@permissions_bp.get("/roles/<int:role_id>")
@require_auth
@require_permission("roles", "read")
def get_role(role_id: int):
    """Role with its permission list."""
    try:
        role = permission_service.get_role(role_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    role_dict = role.to_dict()
    role_dict["permissions"] = [p.to_dict() for p in permission_service.get_role_permissions(role.id)]
    return jsonify({"role": role_dict})


@permissions_bp.post("/roles")
@require_auth
@require_permission("roles", "create")
def create_role():
    """
    Create a custom role.

    Request body:
    - name: str (required)
    - description: str (optional)
    - scope: "global" | "institution" | "polo" (default "global")
    """
    data = _body()
    try:
        role = permission_service.create_role(
            name=data.get("name"),
            description=data.get("description"),
            scope=data.get("scope") or "global",
            actor=current_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create role")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"role": role.to_dict()}), 201


@permissions_bp.put("/roles/<int:role_id>")
@require_auth
@require_permission("roles", "update")
def update_role(role_id: int):
    try:
        role = permission_service.update_role(role_id, _body(), actor=current_actor())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except PermissionDeniedError as e:
        return jsonify({"error": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to update role")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"role": role.to_dict()})


@permissions_bp.delete("/roles/<int:role_id>")
@require_auth
@require_permission("roles", "delete")
def delete_role(role_id: int):
    """Delete a custom role. System roles are protected (403)."""
    try:
        permission_service.delete_role(role_id, actor=current_actor())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except PermissionDeniedError as e:
        return jsonify({"error": str(e)}), 403
    except Exception:
        current_app.logger.exception("Failed to delete role")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"message": "Role deleted"})


@permissions_bp.get("/roles/<int:role_id>/permissions")
@require_auth
@require_permission("roles", "read")
def list_role_permissions(role_id: int):
    try:
        permission_service.get_role(role_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    perms = permission_service.get_role_permissions(role_id)
    return jsonify({"permissions": [p.to_dict() for p in perms], "count": len(perms)})


@permissions_bp.post("/roles/<int:role_id>/permissions")
@require_auth
@require_permission("roles", "update")
def add_role_permission(role_id: int):
    """
    Grant a permission to a role.

    Request body:
    - permission_id: int (required)

    Granting an already-granted permission returns the existing grant.
    """
    try:
        permission_id = _require_int(_body(), "permission_id")
        grant = permission_service.add_permission_to_role(role_id, permission_id, actor=current_actor())
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to grant permission to role")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"role_permission": grant.to_dict()}), 201


@permissions_bp.delete("/roles/<int:role_id>/permissions/<int:permission_id>")
@require_auth
@require_permission("roles", "update")
def remove_role_permission(role_id: int, permission_id: int):
    removed = permission_service.remove_permission_from_role(role_id, permission_id, actor=current_actor())
    if not removed:
        return jsonify({"error": "Permission not granted to this role"}), 404
    return jsonify({"message": "Permission removed from role"})


# =============================================================================
# PERMISSION CATALOG
# =============================================================================

@permissions_bp.get("")
@require_auth
@require_permission("permissions", "read")
def list_permissions():
    """
    List permissions.

    Query params:
    - include_inactive: bool (default false)
    - resource: str - filter by resource
    """
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    resource = request.args.get("resource")

    perms = permission_service.get_all_permissions(include_inactive=include_inactive)
    if resource:
        perms = [p for p in perms if p.resource == resource]
    return jsonify({"permissions": [p.to_dict() for p in perms], "count": len(perms)})


@permissions_bp.post("")
@require_auth
@require_permission("permissions", "create")
def create_permission():
    data = _body()
    try:
        perm = permission_service.create_permission(
            resource=data.get("resource"),
            action=data.get("action"),
            description=data.get("description"),
            actor=current_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409

    return jsonify({"permission": perm.to_dict()}), 201


# =============================================================================
# USER ROLES
# =============================================================================

@permissions_bp.get("/users/<int:user_id>/roles")
@require_auth
@require_permission("users", "read")
def list_user_roles(user_id: int):
    try:
        _get_user_or_404(user_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    user_roles = permission_service.get_user_roles(user_id)
    return jsonify({"roles": [ur.to_dict() for ur in user_roles], "count": len(user_roles)})


@permissions_bp.post("/users/<int:user_id>/roles")
@require_auth
@require_permission("users", "update")
def assign_user_role(user_id: int):
    """
    Assign a role to a user.

    Request body:
    - role_id: int (required)
    - institution_id: int (required for institution-scoped roles)
    - polo_id: int (required for polo-scoped roles)
    """
    data = _body()
    try:
        user_role = permission_service.assign_role_to_user(
            user_id=user_id,
            role_id=_require_int(data, "role_id"),
            institution_id=_optional_int(data, "institution_id"),
            polo_id=_optional_int(data, "polo_id"),
            actor=current_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to assign role")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"user_role": user_role.to_dict()}), 201


@permissions_bp.delete("/users/<int:user_id>/roles/<int:user_role_id>")
@require_auth
@require_permission("users", "update")
def remove_user_role(user_id: int, user_role_id: int):
    owned = {ur.id for ur in permission_service.get_user_roles(user_id)}
    if user_role_id not in owned:
        return jsonify({"error": "Role assignment not found"}), 404
    try:
        permission_service.remove_role_from_user(user_role_id, actor=current_actor())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"message": "Role removed from user"})


# =============================================================================
# DIRECT USER PERMISSIONS
# =============================================================================

@permissions_bp.get("/users/<int:user_id>/permissions")
@require_auth
@require_permission("users", "read")
def list_user_permissions(user_id: int):
    """
    Direct grants plus the effective permission codes of a user.

    Query params:
    - include_expired: bool (default false)
    """
    try:
        _get_user_or_404(user_id)
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    include_expired = request.args.get("include_expired", "false").lower() == "true"
    grants = permission_service.get_user_direct_permissions(user_id, include_expired=include_expired)
    return jsonify({
        "direct_permissions": [gr.to_dict() for gr in grants],
        "effective_permissions": sorted(permission_service.get_user_permissions(user_id)),
        "count": len(grants),
    })


@permissions_bp.post("/users/<int:user_id>/permissions")
@require_auth
@require_permission("permissions", "update")
def grant_user_permission(user_id: int):
    """
    Grant a permission directly to a user.

    Request body:
    - permission_id: int (required)
    - institution_id, polo_id: int (optional scope)
    - expires_at: ISO-8601 datetime (optional, must be in the future)
    """
    data = _body()
    try:
        try:
            expires_at = parse_iso_datetime(data.get("expires_at"))
        except (TypeError, ValueError, AttributeError):
            raise ValidationError("expires_at must be an ISO-8601 datetime")

        grant = permission_service.add_permission_to_user(
            user_id=user_id,
            permission_id=_require_int(data, "permission_id"),
            institution_id=_optional_int(data, "institution_id"),
            polo_id=_optional_int(data, "polo_id"),
            expires_at=expires_at,
            actor=current_actor(),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to grant user permission")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"user_permission": grant.to_dict()}), 201


@permissions_bp.delete("/users/<int:user_id>/permissions/<int:user_permission_id>")
@require_auth
@require_permission("permissions", "update")
def revoke_user_permission(user_id: int, user_permission_id: int):
    grants = permission_service.get_user_direct_permissions(user_id, include_expired=True)
    if user_permission_id not in {gr.id for gr in grants}:
        return jsonify({"error": "Permission grant not found"}), 404
    try:
        permission_service.remove_permission_from_user(user_permission_id, actor=current_actor())
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"message": "Permission revoked"})


# =============================================================================
# SELF
# =============================================================================

@permissions_bp.get("/me")
@require_auth
def my_permissions():
    """Permission codes and roles of the authenticated user."""
    user_id = g.current_user.id
    return jsonify({
        "user_id": user_id,
        "roles": permission_service.get_user_role_names(user_id),
        "permissions": sorted(permission_service.get_user_permissions(user_id)),
        "is_super_admin": permission_service.is_super_admin(user_id),
    })


@permissions_bp.post("/check")
@require_auth
def check_permission():
    """
    Does the authenticated user hold (resource, action)?

    Request body:
    - resource: str (required)
    - action: str (required)

    Answers only; denials here are not security events.
    """
    data = _body()
    resource = data.get("resource")
    action = data.get("action")
    if not resource or not action:
        return jsonify({"error": "resource and action required"}), 400

    allowed = permission_service.check_user_permission(g.current_user.id, resource, action)
    return jsonify({"resource": resource, "action": action, "allowed": allowed})
