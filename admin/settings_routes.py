"""
Settings endpoints.

Reads are open to any authenticated user; changes need the admin role.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel

from admin.settings_manager import settings_manager
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_admin, require_viewer

router = APIRouter(prefix="/api/settings", tags=["settings"])


class UpdateSettingsRequest(BaseModel):
    category: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None


class UpdateSettingRequest(BaseModel):
    value: Any = None


class ImportSettingsRequest(BaseModel):
    settings: Optional[Dict[str, Any]] = None


class ResetSettingsRequest(BaseModel):
    category: Optional[str] = None


@router.get("")
async def get_settings(user: dict = Depends(require_viewer)):
    return {"success": True, "settings": settings_manager.get_all()}


@router.put("")
async def update_settings(data: UpdateSettingsRequest, request: Request, user: dict = Depends(require_admin)):
    if not data.category or data.settings is None:
        raise HTTPException(status_code=400, detail="category and settings are required")

    try:
        result = settings_manager.update_category(
            data.category, data.settings, user=user, ip_address=get_client_ip(request)
        )
        if "error" in result:
            raise HTTPException(status_code=400, detail=result["error"])
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Update settings error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/export")
async def export_settings(user: dict = Depends(require_admin)):
    return settings_manager.export()


@router.post("/import")
async def import_settings(data: ImportSettingsRequest, request: Request, user: dict = Depends(require_admin)):
    result = settings_manager.import_settings(data.settings, user=user, ip_address=get_client_ip(request))
    if "error" in result:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


@router.post("/reset")
async def reset_settings(request: Request, data: Optional[ResetSettingsRequest] = None,
                         user: dict = Depends(require_admin)):
    category = data.category if data else None
    result = settings_manager.reset(category, user=user, ip_address=get_client_ip(request))
    if "error" in result:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


@router.put("/key/{key}")
async def update_setting(key: str, data: UpdateSettingRequest, request: Request,
                         user: dict = Depends(require_admin)):
    if data.value is None:
        raise HTTPException(status_code=400, detail="value is required")

    result = settings_manager.update_key(key, data.value, user=user, ip_address=get_client_ip(request))
    if "error" in result:
        raise HTTPException(status_code=400, detail=result["error"])
    return result


@router.get("/{category}")
async def get_category(category: str, user: dict = Depends(require_viewer)):
    settings = settings_manager.get_category(category)
    if settings is None:
        raise HTTPException(status_code=404, detail=f"Unknown settings category: {category}")
    return {"success": True, "category": category, "settings": settings}
