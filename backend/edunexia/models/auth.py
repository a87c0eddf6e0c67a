from __future__ import annotations

from ..extensions import db
from edunexia.time_utils import to_utc_z


PORTAL_TYPES = ("student", "partner", "polo", "admin")
ROLE_SCOPES = ("global", "institution", "polo")


class User(db.Model):
    """
    User accounts for authentication and attribution.

    MULTI-TENANT: A user may be attached to an institution and/or a polo.
    Global staff (super admins, support) have neither.

    PORTAL: portal_type selects which front-end portal the user signs into
    (student, partner, polo, admin). Route gates like require_student use it.

    WHY: Every action must be attributable. No shared logins.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_institution_id", "institution_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(255), nullable=True)

    portal_type = db.Column(db.String(16), nullable=False, default="student")

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True)
    polo_id = db.Column(db.Integer, db.ForeignKey("polos.id"), nullable=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    institution = db.relationship("Institution", foreign_keys=[institution_id], backref=db.backref("users", lazy=True))
    polo = db.relationship("Polo", foreign_keys=[polo_id], backref=db.backref("users", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "portal_type": self.portal_type,
            "institution_id": self.institution_id,
            "polo_id": self.polo_id,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class Role(db.Model):
    """
    Named bundle of permissions.

    SCOPE:
    - global: applies everywhere (super_admin, admin, auditor)
    - institution: must be assigned together with an institution_id
    - polo: must be assigned together with a polo_id

    SYSTEM ROLES: is_system=True roles are seeded and cannot be renamed,
    updated or deleted through the API.
    """
    __tablename__ = "roles"
    __table_args__ = (
        db.CheckConstraint("scope IN ('global', 'institution', 'polo')", name="ck_roles_scope"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True, index=True)
    description = db.Column(db.Text, nullable=True)
    scope = db.Column(db.String(16), nullable=False, default="global")
    is_system = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "scope": self.scope,
            "is_system": self.is_system,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class UserRole(db.Model):
    """
    User-Role association, optionally narrowed to an institution or polo.
    """
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", "institution_id", "polo_id", name="uq_user_roles"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)

    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True, index=True)
    polo_id = db.Column(db.Integer, db.ForeignKey("polos.id"), nullable=True, index=True)

    assigned_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("user_roles", lazy=True, cascade="all"))
    role = db.relationship("Role", backref=db.backref("user_roles", lazy=True, cascade="all"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "role_name": self.role.name if self.role else None,
            "institution_id": self.institution_id,
            "polo_id": self.polo_id,
            "assigned_at": to_utc_z(self.assigned_at),
        }


class Permission(db.Model):
    """
    One (resource, action) capability.

    DESIGN: Permissions are identified by the (resource, action) pair, e.g.
    ("leads", "update"). The "manage" action is a wildcard: holding
    (leads, manage) satisfies any action on leads.
    """
    __tablename__ = "permissions"
    __table_args__ = (
        db.UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    resource = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(32), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def code(self) -> str:
        return f"{self.resource}:{self.action}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource": self.resource,
            "action": self.action,
            "code": self.code,
            "description": self.description,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class RolePermission(db.Model):
    """
    Role-Permission association.

    WHY: Defines which roles have which permissions.
    Many-to-many relationship between roles and permissions.
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permissions"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True)
    permission_id = db.Column(db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True)

    granted_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    role = db.relationship("Role", backref=db.backref("role_permissions", lazy=True, cascade="all"))
    permission = db.relationship("Permission", backref=db.backref("role_permissions", lazy=True, cascade="all"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role_id": self.role_id,
            "permission_id": self.permission_id,
            "granted_at": to_utc_z(self.granted_at),
        }


class UserPermission(db.Model):
    """
    Direct permission grant to a user, optionally time-limited and scoped.

    DESIGN:
    - Supplements role-derived permissions (never removes them)
    - expires_at=None means the grant never expires
    - Expired grants stay in the table for history but are ignored by checks
    """
    __tablename__ = "user_permissions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "permission_id", "institution_id", "polo_id", name="uq_user_permissions"),
        db.Index("ix_user_permissions_user", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    permission_id = db.Column(db.Integer, db.ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False, index=True)

    institution_id = db.Column(db.Integer, db.ForeignKey("institutions.id"), nullable=True)
    polo_id = db.Column(db.Integer, db.ForeignKey("polos.id"), nullable=True)

    granted_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", foreign_keys=[user_id], backref=db.backref("direct_permissions", lazy=True, cascade="all"))
    permission = db.relationship("Permission", backref=db.backref("user_grants", lazy=True, cascade="all"))
    granted_by = db.relationship("User", foreign_keys=[granted_by_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "permission_id": self.permission_id,
            "resource": self.permission.resource if self.permission else None,
            "action": self.permission.action if self.permission else None,
            "institution_id": self.institution_id,
            "polo_id": self.polo_id,
            "granted_by_id": self.granted_by_id,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Secure session token management.

    WHY: Revocable auth tokens with timeout support. The same token backs
    both the Bearer header and the signed session cookie set at login.

    SECURITY NOTES:
    - Tokens stored hashed in database (SHA-256)
    - 24-hour absolute timeout
    - 2-hour idle timeout
    - Revocable on logout or suspicious activity
    """
    __tablename__ = "session_tokens"
    __table_args__ = (
        db.Index("ix_session_tokens_user_active", "user_id", "is_revoked"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Token hash (never store plaintext tokens!)
    token_hash = db.Column(db.String(255), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False, index=True)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(255), nullable=True)

    user_agent = db.Column(db.String(512), nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)  # IPv6 max length

    user = db.relationship("User", backref=db.backref("session_tokens", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
            "revoked_at": to_utc_z(self.revoked_at) if self.revoked_at else None,
        }
