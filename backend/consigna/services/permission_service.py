# Overview: Service-layer operations for permission; encapsulates business logic and database work.

"""
Permission Checking and Security Event Logging

WHY: Approvals, shipping, invoicing, cancellations and forced lock releases
are privileged. The counting and boleta services call require_permission on
every attempt; nothing caches a previous answer, because a grant can be
revoked while a session or a boleta is still open.

DESIGN PRINCIPLES:
- Fail closed: Deny by default, require explicit permission grant
- Log denials only: Permission grants are not logged
"""

from typing import NoReturn

from flask import current_app

from ..errors import PermissionDeniedError, ValidationError, NotFoundError
from ..extensions import db
from ..models import User, UserRole, Role, RolePermission, Permission, SecurityEvent, UserPermissionOverride
from ..permissions import PERMISSION_DEFINITIONS, DEFAULT_ROLE_PERMISSIONS, SYSTEM_ADMIN, MANAGE_PERMISSIONS
from ..permissions import validate_permission_code
from ..time_utils import utcnow
from .concurrency import in_unit_of_work


# Admin-level permissions cannot be altered by per-user overrides.
PROTECTED_PERMISSIONS = {
    SYSTEM_ADMIN,
    MANAGE_PERMISSIONS,
}


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """
    Log security event to audit trail.

    Commits immediately. Denials raised inside run_in_transaction go
    through deny_permission instead, which leaves the write until after
    the rollback.

    event_type examples:
    - PERMISSION_DENIED
    - LOGIN_FAILED
    - LOGOUT
    """
    event = SecurityEvent(
        user_id=user_id,
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


def get_user_permissions(user_id: int) -> set[str]:
    """
    Get all permission codes for a user.

    Returns set of permission codes (e.g., {"COUNT_CONSIGNMENTS", "VIEW_BOLETAS"}).
    Inactive users have no permissions.
    """
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return set()

    permission_codes: set[str] = set()

    rows = (
        db.session.query(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    for (code,) in rows:
        permission_codes.add(code)

    # Apply per-user overrides (GRANT/DENY)
    overrides = db.session.query(UserPermissionOverride).filter_by(
        user_id=user_id,
        is_active=True,
    ).all()

    for override in overrides:
        # Never allow overrides to change protected permissions
        if override.permission_code in PROTECTED_PERMISSIONS:
            continue
        if override.override_type == "GRANT":
            permission_codes.add(override.permission_code)
        elif override.override_type == "DENY":
            permission_codes.discard(override.permission_code)

    return permission_codes


def user_has_permission(user_id: int, permission_code: str) -> bool:
    """
    Check if user has a specific permission.

    Always resolved from the database; no per-request cache.
    """
    return permission_code in get_user_permissions(user_id)


def require_permission(
    user_id: int,
    permission_code: str,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Require user to have permission, raise PermissionDeniedError if not.

    Denials are written to security_events.

    Usage:
        require_permission(user_id, "APPROVE_BOLETAS", resource="boleta:12")
    """
    if user_has_permission(user_id, permission_code):
        return

    deny_permission(
        user_id,
        permission_code,
        resource=resource,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def deny_permission(
    user_id: int,
    permission_code: str,
    message: str | None = None,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    reason: str | None = None,
) -> NoReturn:
    """
    Record a PERMISSION_DENIED event and raise PermissionDeniedError.

    Outside a unit of work the event is committed right away. Inside
    run_in_transaction it rides on the exception and is written after the
    rollback, so nothing the refused operation staged is committed with it.
    """
    audit = {
        "user_id": user_id,
        "event_type": "PERMISSION_DENIED",
        "success": False,
        "resource": resource,
        "action": permission_code,
        "reason": reason or f"Missing permission: {permission_code}",
        "ip_address": ip_address,
        "user_agent": user_agent,
    }
    error = PermissionDeniedError(message or f"Permission denied: {permission_code}", permission=permission_code)

    if in_unit_of_work():
        error.audit = audit
    else:
        log_security_event(**audit)

    current_app.logger.warning(
        "Permission %s denied for user %s on %s", permission_code, user_id, resource
    )
    raise error


def grant_permission_override(
    *,
    user_id: int,
    permission_code: str,
    granted_by_user_id: int | None,
    override_type: str,
    reason: str | None = None,
) -> UserPermissionOverride:
    """
    Grant or deny a permission via per-user override.

    override_type must be "GRANT" or "DENY".
    Admin-level permissions cannot be altered via overrides.
    """
    if permission_code in PROTECTED_PERMISSIONS:
        raise ValidationError("Permission overrides cannot modify admin permissions")

    if override_type not in {"GRANT", "DENY"}:
        raise ValidationError("override_type must be GRANT or DENY")

    if not validate_permission_code(permission_code):
        raise NotFoundError(f"Permission '{permission_code}' not found")

    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    override = db.session.query(UserPermissionOverride).filter_by(
        user_id=user_id,
        permission_code=permission_code,
    ).first()

    if override:
        override.override_type = override_type
        override.granted_by_user_id = granted_by_user_id
        override.granted_at = utcnow()
        override.reason = reason
        override.is_active = True
        override.revoked_at = None
    else:
        override = UserPermissionOverride(
            user_id=user_id,
            permission_code=permission_code,
            override_type=override_type,
            granted_by_user_id=granted_by_user_id,
            granted_at=utcnow(),
            reason=reason,
            is_active=True,
        )
        db.session.add(override)

    db.session.commit()
    return override


def revoke_permission_override(*, user_id: int, permission_code: str) -> UserPermissionOverride | None:
    """Deactivate a permission override for a user."""
    override = db.session.query(UserPermissionOverride).filter_by(
        user_id=user_id,
        permission_code=permission_code,
        is_active=True,
    ).first()

    if not override:
        return None

    override.is_active = False
    override.revoked_at = utcnow()

    db.session.commit()
    return override


def get_user_role_names(user_id: int) -> list[str]:
    """Get list of role names for a user."""
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .order_by(Role.name)
        .all()
    )
    return [name for (name,) in rows]


def initialize_permissions():
    """
    Initialize all permission definitions in database.

    Idempotent: Safe to run multiple times.
    """
    created_count = 0

    for code, name, description, category in PERMISSION_DEFINITIONS:
        existing = db.session.query(Permission).filter_by(code=code).first()

        if not existing:
            permission = Permission(
                code=code,
                name=name,
                description=description,
                category=category
            )
            db.session.add(permission)
            created_count += 1

    db.session.commit()
    return created_count


def assign_default_role_permissions():
    """
    Assign default permissions to roles based on DEFAULT_ROLE_PERMISSIONS.

    Idempotent: Safe to run multiple times (skips existing).
    """
    created_count = 0

    for role_name, permission_codes in DEFAULT_ROLE_PERMISSIONS.items():
        role = db.session.query(Role).filter_by(name=role_name).first()

        if not role:
            continue  # Role doesn't exist, skip

        for permission_code in permission_codes:
            permission = db.session.query(Permission).filter_by(code=permission_code).first()

            if not permission:
                continue  # Permission doesn't exist, skip

            existing = db.session.query(RolePermission).filter_by(
                role_id=role.id,
                permission_id=permission.id
            ).first()

            if not existing:
                db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                created_count += 1

    db.session.commit()
    return created_count


def grant_permission_to_role(role_name: str, permission_code: str):
    """Grant a permission to a role."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise NotFoundError(f"Role '{role_name}' not found")

    permission = db.session.query(Permission).filter_by(code=permission_code).first()
    if not permission:
        raise NotFoundError(f"Permission '{permission_code}' not found")

    existing = db.session.query(RolePermission).filter_by(
        role_id=role.id,
        permission_id=permission.id
    ).first()

    if existing:
        return existing  # Already granted

    role_permission = RolePermission(role_id=role.id, permission_id=permission.id)

    db.session.add(role_permission)
    db.session.commit()

    return role_permission


def revoke_permission_from_role(role_name: str, permission_code: str) -> bool:
    """Revoke a permission from a role."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise NotFoundError(f"Role '{role_name}' not found")

    permission = db.session.query(Permission).filter_by(code=permission_code).first()
    if not permission:
        raise NotFoundError(f"Permission '{permission_code}' not found")

    role_permission = db.session.query(RolePermission).filter_by(
        role_id=role.id,
        permission_id=permission.id
    ).first()

    if role_permission:
        db.session.delete(role_permission)
        db.session.commit()
        return True

    return False  # Wasn't granted in the first place
