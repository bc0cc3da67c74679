# Overview: Permission category constants for grouping related permissions.


class PermissionCategory:
    """Permission categories for organization and display."""
    COUNTING = "COUNTING"
    BOLETAS = "BOLETAS"
    USERS = "USERS"
    SYSTEM = "SYSTEM"
