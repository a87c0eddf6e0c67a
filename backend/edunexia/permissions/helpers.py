# Overview: Utility functions for permission lookups and validation.

from .definitions import PERMISSION_DEFINITIONS


def get_all_permission_codes():
    """Get list of all "resource:action" codes."""
    return [f"{perm[0]}:{perm[1]}" for perm in PERMISSION_DEFINITIONS]


def get_permissions_by_category(category):
    """Get all permissions in a category."""
    return [perm for perm in PERMISSION_DEFINITIONS if perm[3] == category]


def get_permission_definition(resource, action):
    """Get full definition for a (resource, action) pair."""
    for perm in PERMISSION_DEFINITIONS:
        if perm[0] == resource and perm[1] == action:
            return {
                "resource": perm[0],
                "action": perm[1],
                "description": perm[2],
                "category": perm[3],
            }
    return None


def parse_permission_code(code):
    """
    Split "resource:action" into its parts.

    Raises ValueError when the code is malformed.
    """
    if not code or code.count(":") != 1:
        raise ValueError(f"Invalid permission code '{code}', expected resource:action")
    resource, action = code.split(":")
    if not resource or not action:
        raise ValueError(f"Invalid permission code '{code}', expected resource:action")
    return resource, action
