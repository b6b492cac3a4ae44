"""
Audit trail endpoints (admin only).

Exposed endpoints:
- GET /api/audit-trail - Filtered, paginated activity log
- GET /api/audit-trail/export - JSON or CSV export
- GET /api/audit-trail/stats - Volume, top actions/users, success rate
- GET /api/audit-trail/security-events - Security-relevant activity
- GET /api/audit-trail/compliance - Compliance report
- DELETE /api/audit-trail/cleanup - Remove old entries
- POST /api/audit-trail/search - Free-text search
"""

import json
import math
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from loguru import logger
from pydantic import BaseModel, Field

from admin.audit_trail import audit_trail, parse_period
from admin.settings_manager import settings_manager
from auth.auth_manager import auth_manager
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_admin
from store.models import utc_now
from store.repository import to_naive_utc

router = APIRouter(prefix="/api/audit-trail", tags=["audit-trail"])


class CleanupRequest(BaseModel):
    olderThan: int = Field(90, ge=1)


class SearchRequest(BaseModel):
    query: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


def _checked_date(name: str, value: Any):
    parsed = to_naive_utc(value)
    if value not in (None, "") and parsed is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    return parsed


def _filters(user: Optional[str], action: Optional[str], resource: Optional[str],
             start_date: Optional[str], end_date: Optional[str]) -> dict:
    start = _checked_date("startDate", start_date)
    end = _checked_date("endDate", end_date)
    return {"user": user, "action": action, "resource": resource, "start": start, "end": end}


@router.get("")
async def list_audit_entries(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    user: Optional[str] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    current_user: dict = Depends(require_admin),
):
    filters = _filters(user, action, resource, startDate, endDate)
    result = audit_trail.query(page=page, limit=limit, **filters)
    return {
        "success": True,
        "entries": result["entries"],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": result["total"],
            "pages": math.ceil(result["total"] / limit) if result["total"] else 0,
        },
    }


@router.get("/export")
async def export_audit_entries(
    format: str = "json",
    user: Optional[str] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    current_user: dict = Depends(require_admin),
):
    if format not in ("json", "csv"):
        raise HTTPException(status_code=400, detail="format must be json or csv")

    rows = audit_trail.export_rows(**_filters(user, action, resource, startDate, endDate))
    stamp = utc_now().strftime("%Y%m%d-%H%M%S")
    logger.info(f"[AUDIT] Export of {len(rows)} entries as {format} by {current_user.get('username')}")

    if format == "csv":
        return Response(
            content=audit_trail.to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="audit-trail-{stamp}.csv"'},
        )

    body = {"exported_at": utc_now().isoformat() + "Z", "total": len(rows), "entries": rows}
    return Response(
        content=json.dumps(body, default=str),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="audit-trail-{stamp}.json"'},
    )


@router.get("/stats")
async def audit_stats(current_user: dict = Depends(require_admin)):
    return {"success": True, "stats": audit_trail.stats()}


@router.get("/security-events")
async def security_events(
    hours: int = Query(24 * 7, ge=1, le=24 * 90),
    limit: int = Query(200, ge=1, le=1000),
    current_user: dict = Depends(require_admin),
):
    events = audit_trail.security_events(hours=hours, limit=limit)
    return {"success": True, "events": events, "total": len(events)}


@router.get("/compliance")
async def compliance_report(
    period: str = "30d",
    standard: str = "general",
    current_user: dict = Depends(require_admin),
):
    days = parse_period(period)
    if days is None:
        raise HTTPException(status_code=400, detail="period must look like 30d")

    report = audit_trail.compliance_report(days, standard=standard, settings=settings_manager.get_all())
    return {"success": True, "report": report}


@router.delete("/cleanup")
async def cleanup_audit_entries(request: Request, data: Optional[CleanupRequest] = None,
                                current_user: dict = Depends(require_admin)):
    older_than = data.olderThan if data else 90
    try:
        deleted = audit_trail.cleanup(older_than)
        auth_manager.log_activity(
            current_user.get("userId"), "audit_cleanup",
            resource_type="audit_trail", details={"older_than_days": older_than, "deleted": deleted},
            ip_address=get_client_ip(request), username=current_user.get("username"),
        )
        return {"success": True, "deleted": deleted, "olderThan": older_than}

    except Exception as e:
        logger.error(f"Audit cleanup error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/search")
async def search_audit_entries(data: SearchRequest, current_user: dict = Depends(require_admin)):
    filters = dict(data.filters)
    for key in ("startDate", "endDate"):
        filters[key] = _checked_date(key, filters.get(key))
    result = audit_trail.search(data.query, filters, data.limit, data.offset)
    return {
        "success": True,
        "entries": result["entries"],
        "total": result["total"],
        "limit": data.limit,
        "offset": data.offset,
    }
