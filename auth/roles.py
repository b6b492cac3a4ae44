"""
Role configuration for the console.
Defines the fixed roles, their permissions, and wildcard permission matching.
"""

from typing import Iterable, List

ROLES = {
    "admin": {
        "name": "Administrator",
        "description": "Full system access",
        "permissions": ["admin:*", "logs:*", "dashboards:*", "users:*"],
    },
    "analyst": {
        "name": "Analyst",
        "description": "Log analysis and dashboards",
        "permissions": ["logs:*", "dashboards:*", "search:*"],
    },
    "viewer": {
        "name": "Viewer",
        "description": "Read-only access",
        "permissions": ["logs:read", "dashboards:read"],
    },
}


def validate_role(role: str) -> bool:
    """Check if role exists"""
    return role in ROLES


def get_role_permissions(role: str) -> List[str]:
    """Get permissions for role"""
    return list(ROLES.get(role, {}).get("permissions", []))


def list_roles() -> List[dict]:
    return [
        {
            "id": key,
            "name": value["name"],
            "description": value["description"],
            "permissions": list(value["permissions"]),
        }
        for key, value in ROLES.items()
    ]


def permission_matches(granted: str, required: str) -> bool:
    """
    Match one granted permission against a required one.

    "*" grants everything; "logs:*" grants every "logs:" permission.
    """
    if granted == "*" or granted == required:
        return True
    if granted.endswith(":*"):
        return required.split(":", 1)[0] == granted[:-2]
    return False


def has_permission(granted: Iterable[str], required: str) -> bool:
    return any(permission_matches(p, required) for p in granted or [])
