# Overview: Flask CLI command groups for bootstrap, inspection, and lock maintenance.

# backend/consigna/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP=consigna (the create_app factory is picked up automatically).
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Full idempotent bootstrap: creates tables, roles, permissions, and default users.
# - python -m flask system init-permissions
#   Initialize permissions and assign defaults to roles.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Create a demo agreement with a handful of consigned products.
#
# User inspection/bootstrap:
# - python -m flask users list
# - python -m flask users create --username ana --email ana@example.com --password "Password123!" --role counter
#
# Permission inspection/repair:
# - python -m flask perms list --category BOLETAS
# - python -m flask perms check ana APPROVE_BOLETAS
# - python -m flask perms grant counter CANCEL_BOLETAS
# - python -m flask perms revoke counter CANCEL_BOLETAS
# - python -m flask perms override ana APPROVE_BOLETAS --type GRANT --reason "Covering for supervisor"
#
# Counting locks:
# - python -m flask locks list
# - python -m flask locks release 42 --admin admin --reason "Counter left the site"

import click
from flask.cli import with_appcontext

from .errors import ConsignmentError
from .extensions import db
from .models import Agreement, ConsignedProduct, Permission, Role, RolePermission, User
from .permissions import DEFAULT_ROLES, get_permission_definition, get_permissions_by_category
from .services import lock_service, permission_service
from .services.auth_service import create_user, create_default_roles, assign_role, PasswordValidationError


DEFAULT_PASSWORD = "Password123!"

DEFAULT_USERS = [
    ("admin", "admin@consigna.local", "Administrator", "admin"),
    ("supervisor", "supervisor@consigna.local", "Supervisor", "supervisor"),
    ("counter", "counter@consigna.local", "Counter", "counter"),
]

DEMO_PRODUCTS = [
    ("P-1001", "Shampoo 400ml", "CL-01", 24, 1850),
    ("P-1002", "Conditioner 400ml", "CL-02", 18, 1990),
    ("P-2001", "Toothpaste 100g", "CL-10", 36, 650),
    ("P-3001", "Hand soap 250ml", None, 12, 1200),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the system: tables, roles, permissions and default users.

    Creates:
    - Roles: admin, supervisor, counter
    - Users: admin, supervisor, counter (password "Password123!")

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing system...")

    db.create_all()
    click.echo("PASS Tables ready")

    click.echo("\nLIST Creating roles...")
    create_default_roles()
    roles = db.session.query(Role).order_by(Role.name).all()
    click.echo(f"PASS Roles: {', '.join(r.name for r in roles)}")

    click.echo("\nSECURITY Initializing permissions...")
    perm_count = permission_service.initialize_permissions()
    assignment_count = permission_service.assign_default_role_permissions()
    click.echo(f"PASS Created {perm_count} permissions, {assignment_count} role assignments")

    click.echo("\nUSERS Creating default users...")
    for username, email, full_name, role_name in DEFAULT_USERS:
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            user = create_user(username=username, email=email, password=DEFAULT_PASSWORD, full_name=full_name)
            assign_role(user.id, role_name)
            click.echo(f"PASS Created user: {username} ({email}) with role '{role_name}'")
        except ConsignmentError as e:
            db.session.rollback()
            click.echo(f"FAIL Failed to create user '{username}': {e}")

    click.echo("\n" + "="*60)
    click.echo("DONE System initialized")
    click.echo("="*60)
    click.echo(f"\nDefault password for all users: {DEFAULT_PASSWORD} (CHANGE IN PRODUCTION!)")


@system_group.command('init-permissions')
@with_appcontext
def init_permissions():
    """
    Initialize permission system.

    Creates all permissions and assigns default permissions to roles.
    Safe to run multiple times (idempotent).
    """
    click.echo("SECURITY Initializing Permission System...")

    perm_count = permission_service.initialize_permissions()
    click.echo(f"PASS Created {perm_count} new permissions")

    assignment_count = permission_service.assign_default_role_permissions()
    click.echo(f"PASS Created {assignment_count} new role-permission assignments")

    click.echo("\nSTATS Permission Summary by Role:")
    click.echo("="*60)
    for role_name, _ in DEFAULT_ROLES:
        role = db.session.query(Role).filter_by(name=role_name).first()
        if role:
            count = db.session.query(RolePermission).filter_by(role_id=role.id).count()
            click.echo(f"  {role_name.upper():<12} -> {count} permissions")
    click.echo("="*60)


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
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


@system_group.command('seed-demo')
@click.option('--client-id', default='DEMO-001', help='Client code for the demo agreement')
@with_appcontext
def seed_demo(client_id):
    """Create a demo consignment agreement with products (idempotent)."""
    agreement = db.session.query(Agreement).filter_by(client_id=client_id).first()
    if agreement:
        click.echo(f"WARN  Agreement '{client_id}' already exists (ID: {agreement.id})")
        return

    agreement = Agreement(client_id=client_id, client_name="Demo Pharmacy", erp_warehouse_id="WH-01")
    db.session.add(agreement)
    db.session.flush()

    for product_id, description, client_code, max_stock, price_cents in DEMO_PRODUCTS:
        db.session.add(ConsignedProduct(
            agreement_id=agreement.id,
            product_id=product_id,
            description=description,
            client_product_code=client_code,
            max_stock=max_stock,
            price_cents=price_cents,
        ))

    db.session.commit()
    click.echo(f"PASS Created agreement '{client_id}' (ID: {agreement.id}) with {len(DEMO_PRODUCTS)} products")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--full-name', default=None, help='Display name used in boleta history')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice([name for name, _ in DEFAULT_ROLES]), prompt=True, help='Role')
@with_appcontext
def create_user_cli(username, email, full_name, password, role):
    """
    Create a new user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(username=username, email=email, password=password, full_name=full_name)
        assign_role(user.id, role)
        click.echo(f"PASS Created user: {username} ({email}) with role '{role}'")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {e}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except ConsignmentError as e:
        db.session.rollback()
        click.echo(f"FAIL Failed to create user: {e}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<32} {'Active':<8} {'Roles'}")
    click.echo("="*90)

    for user in users:
        roles = permission_service.get_user_role_names(user.id)
        roles_str = ", ".join(roles) if roles else "none"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<32} {active_str:<8} {roles_str}")

    click.echo("="*90 + "\n")


@click.group('perms')
def perms_group():
    """Permission inspection and repair commands."""


@perms_group.command('list')
@click.option('--role', help='Filter by role name')
@click.option('--category', help='Filter by category')
@with_appcontext
def list_permissions_cli(role, category):
    """List all permissions, optionally filtered by role or category."""
    if role:
        role_obj = db.session.query(Role).filter_by(name=role).first()
        if not role_obj:
            click.echo(f"FAIL Role '{role}' not found")
            return

        perms = (
            db.session.query(Permission)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .filter(RolePermission.role_id == role_obj.id)
            .order_by(Permission.code)
            .all()
        )
        click.echo(f"\nPermissions for role: {role.upper()}")
        click.echo("-"*80)
        for perm in perms:
            click.echo(f"{perm.code:<30} {perm.name:<35} {perm.category}")
        click.echo(f"\n Total: {len(perms)} permissions\n")

    elif category:
        definitions = get_permissions_by_category(category.upper())
        click.echo(f"\nPermissions in category: {category.upper()}")
        click.echo("-"*80)
        for code, name, _, _ in definitions:
            click.echo(f"{code:<30} {name}")
        click.echo(f"\n Total: {len(definitions)} permissions\n")

    else:
        perms = db.session.query(Permission).order_by(Permission.category, Permission.code).all()

        current_category = None
        for perm in perms:
            if perm.category != current_category:
                click.echo(f"\nCATEGORY {perm.category}")
                click.echo("-"*80)
                current_category = perm.category
            click.echo(f"  {perm.code:<28} {perm.name}")

        click.echo(f"\n Total: {len(perms)} permissions\n")


@perms_group.command('grant')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def grant_permission_cli(role_name, permission_code):
    """Grant a permission to a role."""
    try:
        permission_service.grant_permission_to_role(role_name, permission_code)
        click.echo(f"PASS Granted '{permission_code}' to role '{role_name}'")
    except ConsignmentError as e:
        click.echo(f"FAIL Error: {e}")


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
    except ConsignmentError as e:
        click.echo(f"FAIL Error: {e}")


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

    definition = get_permission_definition(permission_code)
    if definition is None:
        click.echo(f"FAIL Unknown permission '{permission_code}'")
        return

    if permission_service.user_has_permission(user.id, permission_code):
        click.echo(f"PASS User '{username}' HAS permission '{permission_code}' ({definition['name']})")
    else:
        click.echo(f"FAIL User '{username}' DOES NOT HAVE permission '{permission_code}' ({definition['name']})")

    roles = permission_service.get_user_role_names(user.id)
    all_perms = permission_service.get_user_permissions(user.id)

    click.echo(f"\nUser roles: {', '.join(roles)}")
    click.echo(f"Total permissions: {len(all_perms)}")


@perms_group.command('override')
@click.argument('username')
@click.argument('permission_code')
@click.option('--type', 'override_type', type=click.Choice(['GRANT', 'DENY', 'CLEAR']), required=True)
@click.option('--reason', default=None, help='Why the override exists')
@with_appcontext
def override_permission_cli(username, permission_code, override_type, reason):
    """Grant, deny or clear a per-user permission override."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return

    try:
        if override_type == 'CLEAR':
            cleared = permission_service.revoke_permission_override(user_id=user.id, permission_code=permission_code)
            if cleared:
                click.echo(f"PASS Cleared override '{permission_code}' for '{username}'")
            else:
                click.echo(f"WARN  No active override '{permission_code}' for '{username}'")
            return

        permission_service.grant_permission_override(
            user_id=user.id,
            permission_code=permission_code,
            granted_by_user_id=None,
            override_type=override_type,
            reason=reason,
        )
        click.echo(f"PASS {override_type} '{permission_code}' for '{username}'")
    except ConsignmentError as e:
        click.echo(f"FAIL Error: {e}")


@click.group('locks')
def locks_group():
    """Counting lock inspection and forced release."""


@locks_group.command('list')
@with_appcontext
def list_locks_cli():
    """List every agreement currently being counted."""
    locks = lock_service.list_active_sessions()

    if not locks:
        click.echo("No active counting sessions.")
        return

    click.echo("\n" + "="*96)
    click.echo(f"{'Session':<9} {'Agreement':<24} {'Holder':<24} {'Lines':<7} {'Started'}")
    click.echo("="*96)
    for lock in locks:
        agreement = f"{lock['client_id']} ({lock['agreement_id']})"
        click.echo(
            f"{lock['session_id']:<9} {agreement:<24} {lock['holder_username']:<24} "
            f"{lock['line_count']:<7} {lock['started_at']}"
        )
    click.echo("="*96 + "\n")


@locks_group.command('release')
@click.argument('session_id', type=int)
@click.option('--admin', 'admin_username', required=True, help='User performing the release (needs MANAGE_COUNT_LOCKS)')
@click.option('--reason', default=None, help='Recorded on the released session')
@with_appcontext
def release_lock_cli(session_id, admin_username, reason):
    """Force-release a counting session."""
    admin = db.session.query(User).filter_by(username=admin_username).first()
    if not admin:
        click.echo(f"FAIL User '{admin_username}' not found")
        return

    try:
        session = lock_service.release(session_id, admin.id, forced=True, reason=reason)
        click.echo(f"PASS Released session {session.id} on agreement {session.agreement_id}")
    except ConsignmentError as e:
        click.echo(f"FAIL {e}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(perms_group)
    app.cli.add_command(locks_group)
