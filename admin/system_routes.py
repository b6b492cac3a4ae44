"""
System health, statistics and data retention endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from admin.retention import retention_manager
from admin.system_health import system_health, system_stats
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_admin, require_viewer

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
async def health():
    """Detailed health; 503 when the service is unhealthy."""
    try:
        report = system_health()
    except Exception as e:
        logger.error(f"Health check error: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": str(e)})

    return JSONResponse(status_code=503 if report["status"] == "unhealthy" else 200, content=report)


@router.get("/stats")
async def stats(user: dict = Depends(require_viewer)):
    try:
        return {"success": True, "stats": system_stats()}
    except Exception as e:
        logger.error(f"System stats error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/retention")
async def retention_status(user: dict = Depends(require_admin)):
    return {"success": True, "retention": retention_manager.status()}


@router.post("/retention/run")
async def run_retention(request: Request, user: dict = Depends(require_admin)):
    try:
        return retention_manager.run(user=user, ip_address=get_client_ip(request))
    except Exception as e:
        logger.error(f"Retention run error: {e}")
        raise HTTPException(status_code=500, detail=str(e))
