"""
Log search and HTTP intake.

GET /api/logs needs a logged-in user; POST /api/logs needs an API key with
log:write.
"""

import math
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from loguru import logger
from sqlalchemy.orm import Session

from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_permission, verify_api_key
from ingestion.parsers import ParseError, now_iso, parse_json
from store.database import get_db
from store.repository import LogRepository, to_naive_utc

router = APIRouter(prefix="/api/logs", tags=["logs"])

MAX_BATCH = 1000


@router.get("")
async def search_logs(
    q: Optional[str] = None,
    level: Optional[str] = None,
    source: Optional[str] = None,
    protocol: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: dict = Depends(require_permission("logs:read")),
):
    start_dt, end_dt = to_naive_utc(start), to_naive_utc(end)
    if start and start_dt is None:
        raise HTTPException(status_code=400, detail="Invalid start")
    if end and end_dt is None:
        raise HTTPException(status_code=400, detail="Invalid end")

    rows, total = LogRepository.search(
        db, q=q, level=level, source=source, protocol=protocol,
        start=start_dt, end=end_dt, skip=(page - 1) * limit, limit=limit,
    )
    return {
        "success": True,
        "logs": [row.to_dict() for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@router.post("")
async def ingest_logs(
    request: Request,
    payload: Union[Dict[str, Any], List[Dict[str, Any]]] = Body(...),
    db: Session = Depends(get_db),
    api_key: dict = Depends(verify_api_key("log:write")),
):
    records = payload if isinstance(payload, list) else [payload]
    if not records:
        raise HTTPException(status_code=400, detail="No log entries supplied")
    if len(records) > MAX_BATCH:
        raise HTTPException(status_code=400, detail=f"At most {MAX_BATCH} entries per request")

    source_ip = get_client_ip(request)
    received_at = now_iso()
    entries = []
    for index, record in enumerate(records):
        try:
            entry = parse_json(record)
        except ParseError as e:
            raise HTTPException(status_code=400, detail=f"Entry {index}: {e}")
        entry.update({
            "protocol": "http",
            "transport": "http",
            "source_ip": source_ip,
            "received_at": received_at,
            "api_key_id": api_key.get("id"),
        })
        entries.append(entry)

    try:
        accepted = LogRepository.bulk_create(db, entries)
    except Exception as e:
        logger.error(f"[INGEST] HTTP intake failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to store log entries")

    logger.debug(f"[INGEST] Accepted {accepted} entries via API key {api_key.get('id')}")
    return {"success": True, "accepted": accepted}
