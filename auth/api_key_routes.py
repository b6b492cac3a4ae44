"""
API key management endpoints (admin only).

The plaintext key is part of the response to create and regenerate only.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from auth.api_keys import api_key_manager
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_admin

router = APIRouter(prefix="/api/api-keys", tags=["api-keys"])


class CreateApiKeyRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    permissions: List[str] = Field(default_factory=list)
    expires_in_days: Optional[int] = Field(None, ge=1, le=3650)


class UpdateApiKeyRequest(BaseModel):
    is_active: Optional[bool] = None
    name: Optional[str] = Field(None, max_length=255)
    permissions: Optional[List[str]] = None


def _raise_for(result: dict):
    if "error" in result:
        raise HTTPException(status_code=result.get("status", 400), detail=result["error"])


@router.get("/permissions/templates")
async def permission_templates(user: dict = Depends(require_admin)):
    return {"success": True, "templates": api_key_manager.permission_templates()}


@router.get("")
async def list_api_keys(user: dict = Depends(require_admin)):
    keys = api_key_manager.list_keys()
    return {"success": True, "api_keys": keys, "total": len(keys)}


@router.post("")
async def create_api_key(data: CreateApiKeyRequest, request: Request, user: dict = Depends(require_admin)):
    try:
        result = api_key_manager.create_key(
            name=data.name,
            permissions=data.permissions,
            expires_in_days=data.expires_in_days,
            user=user,
            ip_address=get_client_ip(request),
        )
        _raise_for(result)

        result["message"] = "Store this key now; it will not be shown again"
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create API key error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{key_id}")
async def get_api_key(key_id: int, user: dict = Depends(require_admin)):
    key = api_key_manager.get_key(key_id)
    if not key:
        raise HTTPException(status_code=404, detail="API key not found")
    return {"success": True, "api_key": key}


@router.put("/{key_id}")
async def update_api_key(key_id: int, data: UpdateApiKeyRequest, request: Request,
                         user: dict = Depends(require_admin)):
    if data.is_active is None:
        raise HTTPException(status_code=400, detail="is_active is required")

    try:
        result = api_key_manager.update_key(
            key_id,
            is_active=data.is_active,
            name=data.name,
            permissions=data.permissions,
            user=user,
            ip_address=get_client_ip(request),
        )
        _raise_for(result)
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Update API key error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{key_id}")
async def delete_api_key(key_id: int, request: Request, user: dict = Depends(require_admin)):
    result = api_key_manager.delete_key(key_id, user=user, ip_address=get_client_ip(request))
    _raise_for(result)
    return result


@router.post("/{key_id}/regenerate")
async def regenerate_api_key(key_id: int, request: Request, user: dict = Depends(require_admin)):
    result = api_key_manager.regenerate_key(key_id, user=user, ip_address=get_client_ip(request))
    _raise_for(result)
    result["message"] = "Store this key now; it will not be shown again"
    return result


@router.post("/{key_id}/toggle")
async def toggle_api_key(key_id: int, request: Request, user: dict = Depends(require_admin)):
    result = api_key_manager.toggle_key(key_id, user=user, ip_address=get_client_ip(request))
    _raise_for(result)
    return result


@router.post("/{key_id}/test")
async def test_api_key(key_id: int, user: dict = Depends(require_admin)):
    result = api_key_manager.test_key(key_id)
    return {"success": True, **result}
