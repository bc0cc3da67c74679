# Overview: Lookups over the permission catalogue used by the CLI and override checks.

from .definitions import PERMISSION_DEFINITIONS


# code -> (code, name, description, category)
DEFINITIONS_BY_CODE = {definition[0]: definition for definition in PERMISSION_DEFINITIONS}


def get_permission_definition(code: str) -> dict | None:
    """Catalogue entry for a code as a dict, or None for unknown codes."""
    definition = DEFINITIONS_BY_CODE.get(code)
    if definition is None:
        return None

    code, name, description, category = definition
    return {"code": code, "name": name, "description": description, "category": category}


def get_permissions_by_category(category: str) -> list[tuple]:
    return [definition for definition in PERMISSION_DEFINITIONS if definition[3] == category]


def validate_permission_code(code: str) -> bool:
    return code in DEFINITIONS_BY_CODE
