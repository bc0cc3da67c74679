# Overview: Default role -> permission assignments.

from .definitions import (
    PERMISSION_DEFINITIONS,
    COUNT_CONSIGNMENTS,
    MANAGE_COUNT_LOCKS,
    VIEW_BOLETAS,
    APPROVE_BOLETAS,
    SEND_BOLETAS,
    INVOICE_BOLETAS,
    CANCEL_BOLETAS,
)


DEFAULT_ROLES = [
    ("admin", "Full system access"),
    ("supervisor", "Boleta approvals, shipping, invoicing and lock management"),
    ("counter", "Counts consigned stock at client sites"),
]

DEFAULT_ROLE_PERMISSIONS = {
    # Admin gets ALL permissions
    "admin": [perm[0] for perm in PERMISSION_DEFINITIONS],
    "supervisor": [
        COUNT_CONSIGNMENTS,
        MANAGE_COUNT_LOCKS,
        VIEW_BOLETAS,
        APPROVE_BOLETAS,
        SEND_BOLETAS,
        INVOICE_BOLETAS,
        CANCEL_BOLETAS,
    ],
    "counter": [
        COUNT_CONSIGNMENTS,
        VIEW_BOLETAS,
    ],
}
