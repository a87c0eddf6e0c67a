# Overview: Service-layer operations for permission; encapsulates business logic and database work.

"""
Role-Based Permission Resolution, Administration and Security Event Logging

WHY: Enforce role-based access control and create an audit trail.
Every denial is logged to security_events; every grant, revoke and
assignment is written to permission_audit.

RESOLUTION:
- A user holds (resource, action) when any of their roles grants it,
  or a non-expired direct grant (user_permissions) does
- (resource, "manage") satisfies every action on that resource
- Inactive permissions never match
- Users holding the super_admin role pass every check

SCOPE:
- Roles have a scope (global, institution, polo)
- Institution-scoped roles are assigned together with an institution_id,
  polo-scoped roles together with a polo_id
- Whether the user may act on a given institution or polo is answered by
  check_institution_access / check_polo_access (used by the ABAC evaluator)

DESIGN PRINCIPLES:
- Fail closed: Deny by default, require explicit permission grant
- Log denials only: Permission grants are not logged as security events
- Seeding is idempotent: check-then-insert for permissions, roles, grants
"""

from __future__ import annotations

from ..extensions import db
from ..models import (
    User, UserRole, Role, RolePermission, Permission, UserPermission, SecurityEvent,
    Institution, Polo, Lead, Client, CheckoutLink, ROLE_SCOPES,
)
from ..permissions import (
    PERMISSION_DEFINITIONS, DEFAULT_ROLES, DEFAULT_ROLE_PERMISSIONS,
    SUPER_ADMIN_ROLE, WILDCARD_ACTION, parse_permission_code,
)
from ..validation import ValidationError, ConflictError, NotFoundError
from . import audit_service
from .audit_service import Actor
from edunexia.time_utils import utcnow


class PermissionDeniedError(Exception):
    """Raised when user lacks required permission."""
    pass


# Actions the owner shortcut never covers
OWNER_EXCLUDED_ACTIONS = {"delete", "approve", "reject"}


# =============================================================================
# SECURITY EVENTS
# =============================================================================

def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    institution_id: int | None = None,
) -> SecurityEvent:
    """
    Log security event.

    event_type examples:
    - PERMISSION_DENIED
    - ABAC_DENIED
    - LOGIN_FAILED
    - LOGOUT
    - ROLE_ASSIGNED
    - PORTAL_DENIED
    - WEBHOOK_REJECTED
    """
    event = SecurityEvent(
        user_id=user_id,
        institution_id=institution_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )

    db.session.add(event)
    db.session.commit()

    return event


# =============================================================================
# RESOLUTION
# =============================================================================

def get_user_role_names(user_id: int) -> list[str]:
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .distinct()
        .all()
    )
    return sorted(name for (name,) in rows)


def is_super_admin(user_id: int) -> bool:
    return (
        db.session.query(UserRole.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(UserRole.user_id == user_id, Role.name == SUPER_ADMIN_ROLE)
        .first()
        is not None
    )


def _role_permissions_query(user_id: int):
    return (
        db.session.query(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id, Permission.is_active.is_(True))
    )


def _direct_permissions_query(user_id: int):
    now = utcnow()
    return (
        db.session.query(Permission)
        .join(UserPermission, UserPermission.permission_id == Permission.id)
        .filter(
            UserPermission.user_id == user_id,
            Permission.is_active.is_(True),
            db.or_(UserPermission.expires_at.is_(None), UserPermission.expires_at > now),
        )
    )


def get_user_permissions(user_id: int) -> set[str]:
    """
    All "resource:action" codes the user holds through roles or live direct grants.

    "manage" codes are returned as-is; use check_user_permission to apply the wildcard.
    """
    codes: set[str] = set()
    for perm in _role_permissions_query(user_id).all():
        codes.add(perm.code)
    for perm in _direct_permissions_query(user_id).all():
        codes.add(perm.code)
    return codes


def check_user_permission(user_id: int, resource: str, action: str) -> bool:
    """
    Core RBAC check.

    True for super_admin, or when a role / live direct grant covers
    (resource, action) or (resource, "manage").
    """
    if is_super_admin(user_id):
        return True

    wanted = {action, WILDCARD_ACTION}
    role_hit = (
        _role_permissions_query(user_id)
        .filter(Permission.resource == resource, Permission.action.in_(wanted))
        .first()
    )
    if role_hit is not None:
        return True

    direct_hit = (
        _direct_permissions_query(user_id)
        .filter(Permission.resource == resource, Permission.action.in_(wanted))
        .first()
    )
    return direct_hit is not None


def require_permission(
    user_id: int,
    resource: str,
    action: str,
    path: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Require user to hold (resource, action); raise PermissionDeniedError if not.

    Logs the denial to security_events.
    """
    if check_user_permission(user_id, resource, action):
        return

    log_security_event(
        user_id=user_id,
        event_type="PERMISSION_DENIED",
        success=False,
        resource=path,
        action=f"{resource}:{action}",
        reason=f"Missing permission: {resource}:{action}",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    raise PermissionDeniedError(f"Permission denied: {resource}:{action}")


def check_institution_access(user_id: int, institution_id: int) -> bool:
    """
    May the user act inside this institution?

    Yes for super_admin, the institution owner, members of the institution,
    and holders of a role assignment scoped to it.
    """
    if is_super_admin(user_id):
        return True

    institution = db.session.get(Institution, institution_id)
    if not institution:
        return False
    if institution.owner_id == user_id:
        return True

    user = db.session.get(User, user_id)
    if user and user.institution_id == institution_id:
        return True

    return db.session.query(UserRole.id).filter_by(
        user_id=user_id, institution_id=institution_id
    ).first() is not None


def check_polo_access(user_id: int, polo_id: int) -> bool:
    """
    May the user act inside this polo?

    Yes for super_admin, the polo manager, polo members, polo-scoped role
    holders, and anyone with access to the polo's institution.
    """
    if is_super_admin(user_id):
        return True

    polo = db.session.get(Polo, polo_id)
    if not polo:
        return False
    if polo.manager_id == user_id:
        return True

    user = db.session.get(User, user_id)
    if user and user.polo_id == polo_id:
        return True

    if db.session.query(UserRole.id).filter_by(user_id=user_id, polo_id=polo_id).first() is not None:
        return True

    return check_institution_access(user_id, polo.institution_id)


# resource -> (model, owner attributes checked in order)
_OWNERSHIP = {
    "leads": (Lead, ("assigned_to_id", "created_by_id")),
    "clients": (Client, ("assigned_to_id", "created_by_id")),
    "institutions": (Institution, ("owner_id",)),
    "polos": (Polo, ("manager_id",)),
    "checkout_links": (CheckoutLink, ("created_by_id",)),
}


def is_entity_owner(user_id: int, resource: str, entity_id: int) -> bool:
    """True when the user owns the entity (unknown resources are never owned)."""
    mapping = _OWNERSHIP.get(resource)
    if mapping is None:
        return False
    model, attributes = mapping
    entity = db.session.get(model, entity_id)
    if entity is None:
        return False
    return any(getattr(entity, attr) == user_id for attr in attributes)


# =============================================================================
# PERMISSIONS
# =============================================================================

def get_all_permissions(include_inactive: bool = False) -> list[Permission]:
    query = db.session.query(Permission)
    if not include_inactive:
        query = query.filter(Permission.is_active.is_(True))
    return query.order_by(Permission.resource, Permission.action).all()


def get_permission(resource: str, action: str) -> Permission | None:
    return db.session.query(Permission).filter_by(resource=resource, action=action).first()


def create_permission(resource: str, action: str, description: str | None = None, actor: Actor | None = None) -> Permission:
    """Create a (resource, action) permission. Raises ConflictError when it exists."""
    if not resource or not action:
        raise ValidationError("resource and action are required")
    if get_permission(resource, action):
        raise ConflictError(f"Permission {resource}:{action} already exists")

    perm = Permission(resource=resource, action=action, description=description)
    db.session.add(perm)
    db.session.commit()

    audit_service.record(actor, "create", "permission", perm.id, f"Created permission {perm.code}", new_value=perm.to_dict())
    return perm


# =============================================================================
# ROLES
# =============================================================================

def get_all_roles() -> list[Role]:
    return db.session.query(Role).order_by(Role.name).all()


def get_role(role_id: int) -> Role:
    role = db.session.get(Role, role_id)
    if not role:
        raise NotFoundError("Role not found")
    return role


def get_role_by_name(name: str) -> Role | None:
    return db.session.query(Role).filter_by(name=name).first()


def get_role_permissions(role_id: int) -> list[Permission]:
    return (
        db.session.query(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role_id == role_id)
        .order_by(Permission.resource, Permission.action)
        .all()
    )


def create_role(
    name: str,
    description: str | None = None,
    scope: str = "global",
    actor: Actor | None = None,
) -> Role:
    if not name:
        raise ValidationError("name required")
    if scope not in ROLE_SCOPES:
        raise ValidationError(f"scope must be one of: {', '.join(ROLE_SCOPES)}")
    if get_role_by_name(name):
        raise ConflictError("Role already exists")

    role = Role(name=name, description=description, scope=scope, is_system=False)
    db.session.add(role)
    db.session.commit()

    audit_service.record(actor, "create", "role", role.id, f"Created role {name}", new_value=role.to_dict())
    return role


def update_role(role_id: int, patch: dict, actor: Actor | None = None) -> Role:
    """
    Update name / description / scope of a custom role.

    System roles are read-only.
    """
    role = get_role(role_id)
    if role.is_system:
        raise PermissionDeniedError("System roles cannot be modified")

    old = role.to_dict()

    if "name" in patch:
        name = patch["name"]
        if not name:
            raise ValidationError("name cannot be blank")
        other = get_role_by_name(name)
        if other and other.id != role.id:
            raise ConflictError("Role already exists")
        role.name = name
    if "description" in patch:
        role.description = patch["description"]
    if "scope" in patch:
        if patch["scope"] not in ROLE_SCOPES:
            raise ValidationError(f"scope must be one of: {', '.join(ROLE_SCOPES)}")
        role.scope = patch["scope"]

    db.session.commit()

    audit_service.record(actor, "update", "role", role.id, f"Updated role {role.name}", old_value=old, new_value=role.to_dict())
    return role


def delete_role(role_id: int, actor: Actor | None = None) -> None:
    """
    Delete a custom role together with its grants and user assignments.

    System roles cannot be deleted.
    """
    role = get_role(role_id)
    if role.is_system:
        raise PermissionDeniedError("System roles cannot be deleted")

    old = role.to_dict()
    db.session.delete(role)  # cascades role_permissions and user_roles
    db.session.commit()

    audit_service.record(actor, "delete", "role", role_id, f"Deleted role {old['name']}", old_value=old)


def add_permission_to_role(role_id: int, permission_id: int, actor: Actor | None = None) -> RolePermission:
    """Grant a permission to a role. Idempotent: returns the existing grant."""
    role = get_role(role_id)
    perm = db.session.get(Permission, permission_id)
    if not perm:
        raise NotFoundError("Permission not found")

    existing = db.session.query(RolePermission).filter_by(role_id=role.id, permission_id=perm.id).first()
    if existing:
        return existing

    grant = RolePermission(role_id=role.id, permission_id=perm.id)
    db.session.add(grant)
    db.session.commit()

    audit_service.record(
        actor, "grant", "role_permission", grant.id,
        f"Granted {perm.code} to role {role.name}",
        resource_type=perm.resource,
        new_value={"role_id": role.id, "permission_id": perm.id},
    )
    return grant


def remove_permission_from_role(role_id: int, permission_id: int, actor: Actor | None = None) -> bool:
    """Revoke a permission from a role. Returns False when it was not granted."""
    grant = db.session.query(RolePermission).filter_by(role_id=role_id, permission_id=permission_id).first()
    if not grant:
        return False

    perm = grant.permission
    role = grant.role
    db.session.delete(grant)
    db.session.commit()

    audit_service.record(
        actor, "revoke", "role_permission", grant.id,
        f"Revoked {perm.code} from role {role.name}",
        resource_type=perm.resource,
        old_value={"role_id": role_id, "permission_id": permission_id},
    )
    return True


def grant_permission_to_role(role_name: str, permission_code: str) -> RolePermission:
    """CLI helper: grant "resource:action" to a role by name."""
    role = get_role_by_name(role_name)
    if not role:
        raise ValueError(f"Role '{role_name}' not found")
    resource, action = parse_permission_code(permission_code)
    perm = get_permission(resource, action)
    if not perm:
        raise ValueError(f"Permission '{permission_code}' not found")
    return add_permission_to_role(role.id, perm.id)


def revoke_permission_from_role(role_name: str, permission_code: str) -> bool:
    """CLI helper: revoke "resource:action" from a role by name."""
    role = get_role_by_name(role_name)
    if not role:
        raise ValueError(f"Role '{role_name}' not found")
    resource, action = parse_permission_code(permission_code)
    perm = get_permission(resource, action)
    if not perm:
        raise ValueError(f"Permission '{permission_code}' not found")
    return remove_permission_from_role(role.id, perm.id)


# =============================================================================
# USER ROLES
# =============================================================================

def get_user_roles(user_id: int) -> list[UserRole]:
    return (
        db.session.query(UserRole)
        .filter(UserRole.user_id == user_id)
        .order_by(UserRole.id)
        .all()
    )


def assign_role_to_user(
    user_id: int,
    role_id: int,
    institution_id: int | None = None,
    polo_id: int | None = None,
    actor: Actor | None = None,
) -> UserRole:
    """
    Assign a role to a user, validating the role's scope.

    - institution scope: institution_id required
    - polo scope: polo_id required (institution_id is filled from the polo)
    - global scope: no institution_id / polo_id allowed

    Raises NotFoundError, ValidationError, ConflictError.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    role = get_role(role_id)

    if role.scope == "institution":
        if institution_id is None:
            raise ValidationError("Institution-scoped roles require institution_id")
        if not db.session.get(Institution, institution_id):
            raise NotFoundError("Institution not found")
        polo_id = None
    elif role.scope == "polo":
        if polo_id is None:
            raise ValidationError("Polo-scoped roles require polo_id")
        polo = db.session.get(Polo, polo_id)
        if not polo:
            raise NotFoundError("Polo not found")
        if institution_id is not None and institution_id != polo.institution_id:
            raise ValidationError("Polo does not belong to this institution")
        institution_id = polo.institution_id
    else:
        if institution_id is not None or polo_id is not None:
            raise ValidationError("Global roles cannot be scoped to an institution or polo")

    existing = db.session.query(UserRole).filter_by(
        user_id=user_id,
        role_id=role.id,
        institution_id=institution_id,
        polo_id=polo_id,
    ).first()
    if existing:
        raise ConflictError("User already has this role in this scope")

    user_role = UserRole(user_id=user_id, role_id=role.id, institution_id=institution_id, polo_id=polo_id)
    db.session.add(user_role)
    db.session.commit()

    audit_service.record(
        actor, "assign", "user_role", user_role.id,
        f"Assigned role {role.name} to {user.username}",
        new_value=user_role.to_dict(),
    )
    return user_role


def remove_role_from_user(user_role_id: int, actor: Actor | None = None) -> None:
    user_role = db.session.get(UserRole, user_role_id)
    if not user_role:
        raise NotFoundError("Role assignment not found")

    old = user_role.to_dict()
    username = user_role.user.username
    db.session.delete(user_role)
    db.session.commit()

    audit_service.record(
        actor, "unassign", "user_role", user_role_id,
        f"Removed role {old['role_name']} from {username}",
        old_value=old,
    )


# =============================================================================
# DIRECT USER PERMISSIONS
# =============================================================================

def get_user_direct_permissions(user_id: int, include_expired: bool = False) -> list[UserPermission]:
    query = db.session.query(UserPermission).filter(UserPermission.user_id == user_id)
    if not include_expired:
        query = query.filter(
            db.or_(UserPermission.expires_at.is_(None), UserPermission.expires_at > utcnow())
        )
    return query.order_by(UserPermission.id).all()


def add_permission_to_user(
    user_id: int,
    permission_id: int,
    institution_id: int | None = None,
    polo_id: int | None = None,
    expires_at=None,
    actor: Actor | None = None,
) -> UserPermission:
    """
    Grant a permission directly to a user.

    Idempotent: granting again in the same scope updates expires_at on the
    existing row instead of creating a duplicate.
    """
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    perm = db.session.get(Permission, permission_id)
    if not perm:
        raise NotFoundError("Permission not found")
    if expires_at is not None and expires_at <= utcnow():
        raise ValidationError("expires_at must be in the future")

    existing = db.session.query(UserPermission).filter_by(
        user_id=user_id,
        permission_id=permission_id,
        institution_id=institution_id,
        polo_id=polo_id,
    ).first()

    if existing:
        old = existing.to_dict()
        existing.expires_at = expires_at
        existing.granted_by_id = actor.user_id if actor else existing.granted_by_id
        db.session.commit()
        audit_service.record(
            actor, "update", "user_permission", existing.id,
            f"Renewed {perm.code} for {user.username}",
            resource_type=perm.resource,
            old_value=old,
            new_value=existing.to_dict(),
        )
        return existing

    grant = UserPermission(
        user_id=user_id,
        permission_id=permission_id,
        institution_id=institution_id,
        polo_id=polo_id,
        expires_at=expires_at,
        granted_by_id=actor.user_id if actor else None,
    )
    db.session.add(grant)
    db.session.commit()

    audit_service.record(
        actor, "grant", "user_permission", grant.id,
        f"Granted {perm.code} to {user.username}",
        resource_type=perm.resource,
        new_value=grant.to_dict(),
    )
    return grant


def remove_permission_from_user(user_permission_id: int, actor: Actor | None = None) -> None:
    grant = db.session.get(UserPermission, user_permission_id)
    if not grant:
        raise NotFoundError("Permission grant not found")

    old = grant.to_dict()
    db.session.delete(grant)
    db.session.commit()

    audit_service.record(
        actor, "revoke", "user_permission", user_permission_id,
        f"Revoked {old['resource']}:{old['action']} from user {old['user_id']}",
        resource_type=old["resource"],
        old_value=old,
    )


# =============================================================================
# SEEDING (idempotent)
# =============================================================================

def initialize_permissions() -> int:
    """
    Insert every catalog permission that doesn't exist yet.

    Returns the number of permissions created.
    """
    existing = {
        (resource, action)
        for resource, action in db.session.query(Permission.resource, Permission.action).all()
    }

    created = 0
    for resource, action, description, _category in PERMISSION_DEFINITIONS:
        if (resource, action) in existing:
            continue
        db.session.add(Permission(resource=resource, action=action, description=description))
        existing.add((resource, action))
        created += 1

    db.session.commit()
    return created


def create_default_roles() -> int:
    """Create the system roles if they don't exist. Returns number created."""
    created = 0
    for name, (description, scope) in DEFAULT_ROLES.items():
        role = get_role_by_name(name)
        if role:
            if not role.is_system:
                role.is_system = True
            continue
        db.session.add(Role(name=name, description=description, scope=scope, is_system=True))
        created += 1

    db.session.commit()
    return created


def assign_default_role_permissions() -> int:
    """
    Grant each system role its default permissions.

    Only missing grants are inserted. Returns number of grants created.
    """
    permissions = {(p.resource, p.action): p.id for p in db.session.query(Permission).all()}
    created = 0

    for role_name, grants in DEFAULT_ROLE_PERMISSIONS.items():
        role = get_role_by_name(role_name)
        if not role:
            continue

        current = {
            pid for (pid,) in db.session.query(RolePermission.permission_id).filter_by(role_id=role.id).all()
        }
        for resource, actions in grants.items():
            for action in actions:
                permission_id = permissions.get((resource, action))
                if permission_id is None or permission_id in current:
                    continue
                db.session.add(RolePermission(role_id=role.id, permission_id=permission_id))
                current.add(permission_id)
                created += 1

    db.session.commit()
    return created


def seed_all() -> dict:
    """Run every seeding step; safe to run repeatedly."""
    return {
        "permissions": initialize_permissions(),
        "roles": create_default_roles(),
        "role_permissions": assign_default_role_permissions(),
    }
