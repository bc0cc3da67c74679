# Overview: Permission system package.
# Re-exports all public APIs for backwards-compatible imports.

from .categories import PermissionCategory
from .definitions import (
    PERMISSION_DEFINITIONS,
    COUNTING_PERMISSIONS,
    BOLETA_PERMISSIONS,
    USER_PERMISSIONS,
    SYSTEM_PERMISSIONS,
    COUNT_CONSIGNMENTS,
    MANAGE_COUNT_LOCKS,
    VIEW_BOLETAS,
    APPROVE_BOLETAS,
    SEND_BOLETAS,
    INVOICE_BOLETAS,
    CANCEL_BOLETAS,
    VIEW_USERS,
    MANAGE_PERMISSIONS,
    SYSTEM_ADMIN,
)
from .roles import DEFAULT_ROLES, DEFAULT_ROLE_PERMISSIONS
from .helpers import (
    DEFINITIONS_BY_CODE,
    get_permissions_by_category,
    get_permission_definition,
    validate_permission_code,
)

__all__ = [
    "PermissionCategory",
    "PERMISSION_DEFINITIONS",
    "COUNTING_PERMISSIONS",
    "BOLETA_PERMISSIONS",
    "USER_PERMISSIONS",
    "SYSTEM_PERMISSIONS",
    "COUNT_CONSIGNMENTS",
    "MANAGE_COUNT_LOCKS",
    "VIEW_BOLETAS",
    "APPROVE_BOLETAS",
    "SEND_BOLETAS",
    "INVOICE_BOLETAS",
    "CANCEL_BOLETAS",
    "VIEW_USERS",
    "MANAGE_PERMISSIONS",
    "SYSTEM_ADMIN",
    "DEFAULT_ROLES",
    "DEFAULT_ROLE_PERMISSIONS",
    "DEFINITIONS_BY_CODE",
    "get_permissions_by_category",
    "get_permission_definition",
    "validate_permission_code",
]
