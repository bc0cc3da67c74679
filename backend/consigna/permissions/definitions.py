# Overview: All permission definitions organized by category.
# Each permission is defined as: (code, name, description, category)

from .categories import PermissionCategory


# -- COUNTING --

COUNT_CONSIGNMENTS = "COUNT_CONSIGNMENTS"
MANAGE_COUNT_LOCKS = "MANAGE_COUNT_LOCKS"

COUNTING_PERMISSIONS = [
    (
        COUNT_CONSIGNMENTS,
        "Count Consignments",
        "Start counting sessions, record counts and submit them",
        PermissionCategory.COUNTING,
    ),
    (
        MANAGE_COUNT_LOCKS,
        "Manage Count Locks",
        "List active counting sessions and force-release them",
        PermissionCategory.COUNTING,
    ),
]


# -- BOLETAS --

VIEW_BOLETAS = "VIEW_BOLETAS"
APPROVE_BOLETAS = "APPROVE_BOLETAS"
SEND_BOLETAS = "SEND_BOLETAS"
INVOICE_BOLETAS = "INVOICE_BOLETAS"
CANCEL_BOLETAS = "CANCEL_BOLETAS"

BOLETA_PERMISSIONS = [
    (
        VIEW_BOLETAS,
        "View Boletas",
        "List replenishment boletas and view their lines and history",
        PermissionCategory.BOLETAS,
    ),
    (
        APPROVE_BOLETAS,
        "Approve Boletas",
        "Approve pending boletas and correct their replenish quantities",
        PermissionCategory.BOLETAS,
    ),
    (
        SEND_BOLETAS,
        "Send Boletas",
        "Mark approved boletas as sent to the client",
        PermissionCategory.BOLETAS,
    ),
    (
        INVOICE_BOLETAS,
        "Invoice Boletas",
        "Mark sent boletas as invoiced with an ERP invoice number",
        PermissionCategory.BOLETAS,
    ),
    (
        CANCEL_BOLETAS,
        "Cancel Boletas",
        "Cancel boletas that are not yet invoiced",
        PermissionCategory.BOLETAS,
    ),
]


# -- USERS --

VIEW_USERS = "VIEW_USERS"
MANAGE_PERMISSIONS = "MANAGE_PERMISSIONS"

USER_PERMISSIONS = [
    (
        VIEW_USERS,
        "View Users",
        "View user list and roles",
        PermissionCategory.USERS,
    ),
    (
        MANAGE_PERMISSIONS,
        "Manage Permissions",
        "Grant and revoke role permissions and user overrides",
        PermissionCategory.USERS,
    ),
]


# -- SYSTEM --

SYSTEM_ADMIN = "SYSTEM_ADMIN"

SYSTEM_PERMISSIONS = [
    (
        SYSTEM_ADMIN,
        "System Administration",
        "Full administrative access",
        PermissionCategory.SYSTEM,
    ),
]


PERMISSION_DEFINITIONS = (
    COUNTING_PERMISSIONS
    + BOLETA_PERMISSIONS
    + USER_PERMISSIONS
    + SYSTEM_PERMISSIONS
)
