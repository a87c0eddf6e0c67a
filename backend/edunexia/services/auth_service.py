# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every action must be attributable. Uses bcrypt for secure password
hashing and validates password strength.

PORTALS: Users carry a portal_type (student, partner, polo, admin). Login is
the same for every portal; route gates decide what each portal may reach.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters required
- Must contain uppercase, lowercase, digit, and special char
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re
from ..extensions import db
from ..models import User, Role, UserRole, Institution, Polo, PORTAL_TYPES
from ..permissions import SUPER_ADMIN_ROLE
from edunexia.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character (!@#$%^&*(),.'":{}|<>)

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    Returns True if password matches hash, False otherwise.
    A malformed stored hash (e.g. a legacy plaintext value) never verifies.
    """
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    email: str,
    password: str,
    portal_type: str = "student",
    full_name: str | None = None,
    institution_id: int | None = None,
    polo_id: int | None = None,
) -> User:
    """
    Create new user with bcrypt password hashing.

    Raises:
        ValueError: unknown portal, duplicate username/email, missing institution/polo,
            or a polo that belongs to a different institution
        PasswordValidationError: If password doesn't meet requirements
    """
    if portal_type not in PORTAL_TYPES:
        raise ValueError(f"Invalid portal_type '{portal_type}'")

    existing = db.session.query(User).filter(
        db.or_(User.username == username, User.email == email)
    ).first()
    if existing:
        raise ValueError("Username or email already exists")

    if institution_id is not None and not db.session.get(Institution, institution_id):
        raise ValueError("Institution not found")

    if polo_id is not None:
        polo = db.session.get(Polo, polo_id)
        if not polo:
            raise ValueError("Polo not found")
        if institution_id is not None and polo.institution_id != institution_id:
            raise ValueError("Polo does not belong to this institution")
        institution_id = polo.institution_id

    user = User(
        username=username,
        email=email,
        full_name=full_name,
        portal_type=portal_type,
        password_hash=hash_password(password),
        institution_id=institution_id,
        polo_id=polo_id,
    )

    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username (or email) and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = db.session.query(User).filter(
        db.or_(User.username == username, User.email == username),
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None


def reset_password(username: str, new_password: str) -> User:
    """
    Replace a user's password (admin tooling / CLI).

    Raises ValueError if the user doesn't exist,
    PasswordValidationError if the password is weak.
    """
    user = db.session.query(User).filter(
        db.or_(User.username == username, User.email == username)
    ).first()
    if not user:
        raise ValueError(f"User '{username}' not found")

    user.password_hash = hash_password(new_password)
    db.session.commit()
    return user


def make_super_admin(username: str) -> UserRole:
    """
    Grant the super_admin role and switch the user to the admin portal.

    Idempotent: returns the existing assignment when already granted.
    """
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        raise ValueError(f"User '{username}' not found")

    role = db.session.query(Role).filter_by(name=SUPER_ADMIN_ROLE).first()
    if not role:
        raise ValueError("super_admin role not found (run 'flask perms seed' first)")

    user.portal_type = "admin"

    existing = db.session.query(UserRole).filter_by(
        user_id=user.id,
        role_id=role.id,
        institution_id=None,
        polo_id=None,
    ).first()
    if existing:
        db.session.commit()
        return existing

    user_role = UserRole(user_id=user.id, role_id=role.id)
    db.session.add(user_role)
    db.session.commit()
    return user_role
