"""
Access dependencies for the API routers.

Console routes authenticate with a bearer JWT and are gated by role or by
permission (wildcards as in auth.roles); the log intake endpoint
authenticates with an API key carrying a permission.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from loguru import logger

from auth.api_keys import api_key_manager
from auth.auth_manager import auth_manager
from auth.roles import has_permission

# ==================== TOKEN ====================

def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


async def verify_jwt_token(authorization: str = Header(None)) -> dict:
    """Resolve the bearer token into its payload or fail with 401."""
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    payload = auth_manager.verify_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return payload


async def get_optional_user(authorization: str = Header(None)) -> Optional[dict]:
    """Token payload when a valid bearer token is sent, otherwise None."""
    token = _bearer(authorization)
    return auth_manager.verify_token(token) if token else None


# ==================== ROLES ====================

def require_any_role(*roles: str):
    """Build a dependency admitting only users whose role is in ``roles``."""
    async def _check(user: dict = Depends(verify_jwt_token)) -> dict:
        if user.get("role") not in roles:
            logger.warning(
                f"[RBAC] {user.get('username')} ({user.get('role')}) refused, needs one of {list(roles)}"
            )
            raise HTTPException(status_code=403, detail=f"Requires role: {', '.join(roles)}")
        return user

    return _check


def require_role(role: str):
    return require_any_role(role)


require_admin = require_role("admin")
require_analyst = require_any_role("admin", "analyst")
require_viewer = require_any_role("admin", "analyst", "viewer")


# ==================== PERMISSIONS ====================

def require_permission(permission: str):
    """
    Build a dependency admitting users whose role grants ``permission``.

    The permissions come from the verified token payload, so a role change
    applies on the next request.
    """
    async def _check(user: dict = Depends(verify_jwt_token)) -> dict:
        if not has_permission(user.get("permissions"), permission):
            logger.warning(f"[RBAC] {user.get('username')} ({user.get('role')}) lacks {permission}")
            raise HTTPException(status_code=403, detail=f"Permission '{permission}' required")
        return user

    return _check


# ==================== API KEYS ====================

def verify_api_key(required_permission: str):
    """
    Dependency factory for machine clients.

    The key is read from ``X-API-Key`` or ``Authorization: ApiKey <key>``.
    A missing key is a 401; an unknown, inactive or under-privileged key is a 403.
    """
    async def _verify_api_key(
        x_api_key: str = Header(None),
        authorization: str = Header(None),
    ) -> dict:
        plaintext = (x_api_key or "").strip()
        if not plaintext and authorization and authorization.startswith("ApiKey "):
            plaintext = authorization[len("ApiKey "):].strip()
        if not plaintext:
            raise HTTPException(status_code=401, detail="Missing API key")

        key = api_key_manager.validate_key(plaintext, required_permission)
        if not key:
            raise HTTPException(status_code=403, detail="Invalid API key or insufficient permissions")

        return key

    return _verify_api_key
