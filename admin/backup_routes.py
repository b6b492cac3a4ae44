"""
Backup endpoints (admin only).
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse

from admin.backups import backup_manager
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_admin

router = APIRouter(prefix="/api/backups", tags=["backups"])


def _raise_for(result):
    if isinstance(result, dict) and "error" in result:
        raise HTTPException(status_code=result.get("status", 400), detail=result["error"])


@router.get("")
async def list_backups(user: dict = Depends(require_admin)):
    backups = backup_manager.list_backups()
    return {"success": True, "backups": backups, "total": len(backups)}


@router.post("/create")
async def create_backup(request: Request, user: dict = Depends(require_admin)):
    result = backup_manager.create_backup(user=user, ip_address=get_client_ip(request))
    _raise_for(result)
    return result


@router.get("/{filename}/download")
async def download_backup(filename: str, user: dict = Depends(require_admin)):
    path = backup_manager.resolve(filename)
    _raise_for(path)
    return FileResponse(path, media_type="application/octet-stream", filename=filename)


@router.post("/{filename}/restore")
async def restore_backup(filename: str, request: Request, user: dict = Depends(require_admin)):
    result = backup_manager.restore_backup(filename, user=user, ip_address=get_client_ip(request))
    _raise_for(result)
    return result


@router.delete("/{filename}")
async def delete_backup(filename: str, request: Request, user: dict = Depends(require_admin)):
    result = backup_manager.delete_backup(filename, user=user, ip_address=get_client_ip(request))
    _raise_for(result)
    return result
