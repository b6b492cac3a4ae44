"""
Rate limit administration endpoints (admin only).
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from auth.auth_manager import auth_manager
from auth.auth_routes import get_client_ip
from auth.rate_limiter import rate_limiter
from auth.rbac_dependencies import require_admin

router = APIRouter(prefix="/api/rate-limits", tags=["rate-limits"])


class BlockRequest(BaseModel):
    ip: Optional[str] = None
    reason: str = "Manual block"
    duration: int = Field(3600, ge=1)


class UnblockRequest(BaseModel):
    ip: Optional[str] = None


class RateLimitSettingsRequest(BaseModel):
    window: str
    window_ms: Optional[int] = None
    max: Optional[int] = None


@router.get("")
async def list_rate_limits(user: dict = Depends(require_admin)):
    limits = rate_limiter.list_limits()
    return {"success": True, "limits": limits, "total": len(limits)}


@router.get("/stats")
async def rate_limit_stats(user: dict = Depends(require_admin)):
    return {"success": True, "stats": rate_limiter.stats()}


@router.get("/blocked")
async def blocked_ips(user: dict = Depends(require_admin)):
    blocked = rate_limiter.blocked_list()
    return {"success": True, "blocked": blocked, "total": len(blocked)}


@router.get("/config")
async def rate_limit_config(user: dict = Depends(require_admin)):
    return {"success": True, "config": rate_limiter.config()}


@router.post("/block")
async def block_ip(data: BlockRequest, request: Request, user: dict = Depends(require_admin)):
    if not data.ip:
        raise HTTPException(status_code=400, detail="ip is required")
    if rate_limiter.is_whitelisted(data.ip):
        raise HTTPException(status_code=400, detail=f"{data.ip} is whitelisted")

    entry = rate_limiter.block(data.ip, reason=data.reason, duration=data.duration)
    auth_manager.log_activity(
        user.get("userId"), "ip_blocked",
        resource_type="ip", resource_id=data.ip,
        details={"reason": data.reason, "duration": data.duration},
        ip_address=get_client_ip(request), username=user.get("username"),
    )
    return {"success": True, "blocked": entry}


@router.post("/unblock")
async def unblock_ip(data: UnblockRequest, request: Request, user: dict = Depends(require_admin)):
    if not data.ip:
        raise HTTPException(status_code=400, detail="ip is required")
    if not rate_limiter.unblock(data.ip):
        raise HTTPException(status_code=404, detail=f"{data.ip} is not blocked")

    auth_manager.log_activity(
        user.get("userId"), "ip_unblocked",
        resource_type="ip", resource_id=data.ip,
        ip_address=get_client_ip(request), username=user.get("username"),
    )
    return {"success": True, "message": f"{data.ip} unblocked"}


@router.put("/settings")
async def update_rate_limit_settings(data: RateLimitSettingsRequest, request: Request,
                                     user: dict = Depends(require_admin)):
    try:
        result = rate_limiter.update_settings(data.window, window_ms=data.window_ms, max_requests=data.max)
        if "error" in result:
            raise HTTPException(status_code=400, detail=result["error"])

        auth_manager.log_activity(
            user.get("userId"), "rate_limit_updated",
            resource_type="rate_limit", resource_id=data.window,
            details=result["settings"],
            ip_address=get_client_ip(request), username=user.get("username"),
        )
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Rate limit settings error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/{ip}")
async def reset_ip(ip: str, user: dict = Depends(require_admin)):
    cleared = rate_limiter.reset(ip)
    return {"success": True, "ip": ip, "cleared": cleared}
