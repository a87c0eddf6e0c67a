# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/edunexia/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--institution "Name"] [--code CODE]
#   Full idempotent bootstrap: permissions, roles, ABAC rules, default institution and admin.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User management:
# - python -m flask users list [--institution-id 1]
# - python -m flask users create --username ana --email ana@x.br --password "Password123!" --portal admin
# - python -m flask users reset-password ana
#   Replace a user's password (prompts for the new one).
# - python -m flask users make-superadmin ana
#   Grant super_admin and switch the user to the admin portal.
#
# Permission inspection/repair:
# - python -m flask perms seed
#   Create missing permissions, system roles and default role grants.
# - python -m flask perms list [--role admin] [--resource leads]
# - python -m flask perms grant sales leads:delete
# - python -m flask perms revoke sales leads:delete
# - python -m flask perms check ana leads:update
#
# ABAC:
# - python -m flask abac seed-rules
#   Insert default phase / payment / period rules that don't exist yet.
#
# Schema:
# - python -m flask schema ensure-columns
#   Add columns introduced after the initial schema when they are missing.
#
# Maintenance:
# - python -m flask maintenance expire-checkouts
# - python -m flask maintenance cleanup-security-events --retention-days 90
# - python -m flask maintenance cleanup-sessions --retention-days 30

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import User, Role, Institution
from .models.auth import PORTAL_TYPES
from .permissions import parse_permission_code
from .services import auth_service, session_service, permission_service, abac_service, schema_service, maintenance_service
from .services.auth_service import PasswordValidationError


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--institution', 'institution_name', default='Default Institution', help='Institution name')
@click.option('--code', 'institution_code', default='DEFAULT', help='Institution code')
@click.option('--admin-username', default='admin', show_default=True)
@click.option('--admin-email', default='admin@edunexia.local', show_default=True)
@click.option('--admin-password', default='Password123!', show_default=True)
@with_appcontext
def init_system(institution_name, institution_code, admin_username, admin_email, admin_password):
    """
    Initialize the system: permissions, roles, ABAC rules, a default
    institution and a super admin.

    Safe to run repeatedly; existing rows are left untouched.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing EduNexia...")

    counts = permission_service.seed_all()
    click.echo(
        f"PASS Permissions: {counts['permissions']} created, "
        f"roles: {counts['roles']} created, role grants: {counts['role_permissions']} created"
    )

    rule_counts = abac_service.seed_default_rules()
    click.echo(
        f"PASS ABAC rules: {rule_counts['phase_rules']} phase, "
        f"{rule_counts['payment_rules']} payment, {rule_counts['period_rules']} period"
    )

    institution = db.session.query(Institution).filter_by(code=institution_code).first()
    if not institution:
        institution = Institution(name=institution_name, code=institution_code, phase="active")
        db.session.add(institution)
        db.session.commit()
        click.echo(f"PASS Created institution: {institution.name} (ID: {institution.id}, Code: {institution.code})")
    else:
        click.echo(f"PASS Using existing institution: {institution.name} (ID: {institution.id})")

    admin = db.session.query(User).filter_by(username=admin_username).first()
    if admin:
        click.echo(f"WARN  User '{admin_username}' already exists, skipping...")
    else:
        try:
            admin = auth_service.create_user(
                username=admin_username,
                email=admin_email,
                password=admin_password,
                portal_type="admin",
                full_name="Administrator",
                institution_id=institution.id,
            )
            click.echo(f"PASS Created user: {admin_username} ({admin_email})")
        except (PasswordValidationError, ValueError) as e:
            click.echo(f"FAIL Failed to create user '{admin_username}': {str(e)}")
            return

    auth_service.make_super_admin(admin.username)
    if institution.owner_id is None:
        institution.owner_id = admin.id
        db.session.commit()
    click.echo(f"PASS '{admin.username}' is super_admin")

    click.echo("\n" + "="*60)
    click.echo("DONE EduNexia initialized")
    click.echo("="*60)
    click.echo("\nSECURITY Change the default admin password in production!")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@click.option('--institution-id', type=int, help='Filter by institution ID')
@with_appcontext
def list_users(institution_id):
    """List all users with their roles."""
    query = db.session.query(User)
    if institution_id:
        query = query.filter_by(institution_id=institution_id)
    users = query.order_by(User.username).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Inst':<5} {'Username':<20} {'Portal':<8} {'Active':<8} {'Roles'}")
    click.echo("="*100)

    for user in users:
        roles_str = ", ".join(permission_service.get_user_role_names(user.id)) or "none"
        active_str = "Yes" if user.is_active else "No"
        institution_str = str(user.institution_id) if user.institution_id else "-"
        click.echo(f"{user.id:<5} {institution_str:<5} {user.username:<20} {user.portal_type:<8} {active_str:<8} {roles_str}")

    click.echo("="*100 + "\n")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--portal', type=click.Choice(PORTAL_TYPES), default='student', show_default=True)
@click.option('--institution-id', type=int, help='Institution ID')
@click.option('--role', help='Role to assign (global roles only)')
@with_appcontext
def create_user_cli(username, email, password, portal, institution_id, role):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter, one lowercase letter, one digit
    - At least one special character
    """
    try:
        user = auth_service.create_user(
            username=username,
            email=email,
            password=password,
            portal_type=portal,
            institution_id=institution_id,
        )
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
        return
    except ValueError as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")
        return

    click.echo(f"PASS Created user: {username} ({email}) on the {portal} portal")

    if role:
        role_obj = permission_service.get_role_by_name(role)
        if not role_obj:
            click.echo(f"WARN  Role '{role}' not found, no role assigned")
            return
        try:
            permission_service.assign_role_to_user(
                user.id,
                role_obj.id,
                institution_id=institution_id if role_obj.scope == "institution" else None,
            )
            click.echo(f"PASS Assigned role '{role}'")
        except (ValueError, LookupError) as e:
            click.echo(f"FAIL Could not assign role '{role}': {str(e)}")


@users_group.command('reset-password')
@click.argument('username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='New password')
@with_appcontext
def reset_password_cli(username, password):
    """Replace a user's password and revoke their sessions."""
    try:
        user = auth_service.reset_password(username, password)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        return
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        return

    revoked = session_service.revoke_all_user_sessions(user.id, reason="Password reset")
    click.echo(f"PASS Password updated for '{user.username}' ({revoked} session(s) revoked)")


@users_group.command('make-superadmin')
@click.argument('username')
@with_appcontext
def make_superadmin_cli(username):
    """Grant super_admin to a user (idempotent)."""
    try:
        auth_service.make_super_admin(username)
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        return
    click.echo(f"PASS '{username}' is super_admin")


# =============================================================================
# PERMISSIONS
# =============================================================================

@click.group('perms')
def perms_group():
    """Permission inspection and repair commands."""


@perms_group.command('seed')
@with_appcontext
def seed_permissions_cli():
    """Create missing permissions, system roles and default grants."""
    counts = permission_service.seed_all()
    click.echo(f"PASS Permissions created: {counts['permissions']}")
    click.echo(f"PASS Roles created: {counts['roles']}")
    click.echo(f"PASS Role grants created: {counts['role_permissions']}")


@perms_group.command('list')
@click.option('--role', help='Filter by role name')
@click.option('--resource', help='Filter by resource')
@with_appcontext
def list_permissions_cli(role, resource):
    """List all permissions, optionally filtered by role or resource."""
    if role:
        role_obj = db.session.query(Role).filter_by(name=role).first()
        if not role_obj:
            click.echo(f"FAIL Role '{role}' not found")
            return
        perms = permission_service.get_role_permissions(role_obj.id)
        title = f"Permissions for role: {role.upper()}"
    else:
        perms = permission_service.get_all_permissions(include_inactive=True)
        title = "All Permissions"

    if resource:
        perms = [p for p in perms if p.resource == resource]

    click.echo(f"\n{'='*80}")
    click.echo(title)
    click.echo(f"{'='*80}\n")

    current_resource = None
    for perm in perms:
        if perm.resource != current_resource:
            if current_resource:
                click.echo("")
            click.echo(f"RESOURCE {perm.resource}")
            click.echo("-"*80)
            current_resource = perm.resource
        inactive = "" if perm.is_active else " (inactive)"
        click.echo(f"  {perm.code:<40} {perm.description or ''}{inactive}")

    click.echo(f"\n Total: {len(perms)} permissions\n")


@perms_group.command('grant')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def grant_permission_cli(role_name, permission_code):
    """Grant a permission (resource:action) to a role."""
    try:
        permission_service.grant_permission_to_role(role_name, permission_code)
        click.echo(f"PASS Granted '{permission_code}' to role '{role_name}'")
    except ValueError as e:
        click.echo(f"FAIL Error: {str(e)}")


@perms_group.command('revoke')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def revoke_permission_cli(role_name, permission_code):
    """Revoke a permission from a role."""
    try:
        revoked = permission_service.revoke_permission_from_role(role_name, permission_code)
        if revoked:
            click.echo(f"PASS Revoked '{permission_code}' from role '{role_name}'")
        else:
            click.echo(f"WARN  Permission '{permission_code}' was not granted to '{role_name}'")
    except ValueError as e:
        click.echo(f"FAIL Error: {str(e)}")


@perms_group.command('check')
@click.argument('username')
@click.argument('permission_code')
@with_appcontext
def check_permission_cli(username, permission_code):
    """Check if a user has a specific permission."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return

    try:
        resource, action = parse_permission_code(permission_code)
    except ValueError as e:
        click.echo(f"FAIL {str(e)}")
        return

    if permission_service.check_user_permission(user.id, resource, action):
        click.echo(f"PASS User '{username}' HAS permission '{permission_code}'")
    else:
        click.echo(f"FAIL User '{username}' DOES NOT HAVE permission '{permission_code}'")

    roles = permission_service.get_user_role_names(user.id)
    all_perms = permission_service.get_user_permissions(user.id)

    click.echo(f"\nUser roles: {', '.join(roles) or 'none'}")
    click.echo(f"Total permissions: {len(all_perms)}")


# =============================================================================
# ABAC
# =============================================================================

@click.group('abac')
def abac_group():
    """Attribute-based access rule commands."""


@abac_group.command('seed-rules')
@with_appcontext
def seed_rules_cli():
    """Insert the default phase, payment and period rules that don't exist yet."""
    counts = abac_service.seed_default_rules()
    for kind, created in counts.items():
        click.echo(f"PASS {kind}: {created} created")


# =============================================================================
# SCHEMA
# =============================================================================

@click.group('schema')
def schema_group():
    """Idempotent schema patches."""


@schema_group.command('ensure-columns')
@with_appcontext
def ensure_columns_cli():
    """Add columns introduced after the initial schema when they are missing."""
    added = []
    for spec in schema_service.LEGACY_COLUMNS:
        try:
            if schema_service.ensure_column(spec.table, spec.column, spec.ddl):
                added.append(spec)
                click.echo(f"PASS Added {spec.table}.{spec.column}")
        except ValueError as e:
            click.echo(f"WARN  Skipped {spec.table}.{spec.column}: {str(e)}")

    if not added:
        click.echo("PASS Schema already up to date")


# =============================================================================
# MAINTENANCE
# =============================================================================

@click.group('maintenance')
def maintenance_group():
    """Maintenance and retention commands."""


@maintenance_group.command('expire-checkouts')
@with_appcontext
def expire_checkouts_cli():
    """Expire unpaid checkout links whose window has passed."""
    expired = maintenance_service.expire_checkout_links()
    click.echo(f"Expired {expired} checkout links.")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days=retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


@maintenance_group.command('cleanup-sessions')
@click.option('--retention-days', type=int, default=30, show_default=True)
@with_appcontext
def cleanup_sessions_cli(retention_days):
    """Delete expired or revoked sessions older than the retention window."""
    deleted = maintenance_service.cleanup_sessions(retention_days=retention_days)
    click.echo(f"Deleted {deleted} sessions older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(perms_group)
    app.cli.add_command(abac_group)
    app.cli.add_command(schema_group)
    app.cli.add_command(maintenance_group)
