"""
Ingestion status and diagnostics endpoints.

Exposed endpoints:
- GET /api/ingestion/status - Listener status, counters and health
- POST /api/ingestion/test-parse - Parse a sample message (stored when valid)
- GET /api/ingestion/stats - Stored log statistics for a period
- GET /api/ingestion/ports-status - Which listener ports this process holds
"""

import time
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_permission
from ingestion.engine import ingestion_engine
from ingestion.parsers import FORMATS, ParseError, detect_format, parse
from store.database import get_db
from store.models import utc_now
from store.repository import LogRepository

router = APIRouter(prefix="/api/ingestion", tags=["ingestion"])

PERIOD_HOURS = {"1h": 1, "6h": 6, "24h": 24, "7d": 168, "30d": 720}
REQUIRED_FIELDS = ("timestamp", "message", "level", "source")
SUGGESTED_FIELDS = ["timestamp", "level", "component", "host"]
OPTIONAL_FIELDS = ("hostname", "app_name", "facility")


class TestParseRequest(BaseModel):
    message: Optional[str] = None
    format: str = "syslog"


def validate_entries(entries: list) -> list:
    errors = []
    for index, entry in enumerate(entries):
        prefix = f"entry {index}: " if len(entries) > 1 else ""
        for field in REQUIRED_FIELDS:
            if entry.get(field) in (None, ""):
                errors.append(f"{prefix}missing {field}")
    return errors


@router.get("/status")
async def ingestion_status(user: dict = Depends(require_permission("logs:read"))):
    return {"success": True, "status": ingestion_engine.status(), "stats": ingestion_engine.get_stats()}


@router.post("/test-parse")
async def test_parse(data: TestParseRequest, request: Request, db: Session = Depends(get_db),
                     user: dict = Depends(require_permission("logs:write"))):
    if not data.message:
        raise HTTPException(status_code=400, detail="message is required")
    if data.format != "auto" and data.format not in FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported format: {data.format}. Use one of: {', '.join(FORMATS + ('auto',))}",
        )

    started = time.perf_counter()
    fmt = detect_format(data.message) if data.format == "auto" else data.format

    try:
        result = parse(fmt, data.message)
        entries = result if isinstance(result, list) else [result]
        errors = validate_entries(entries)
    except ParseError as e:
        result, entries, errors = None, [], [str(e)]

    validation = {"valid": not errors, "errors": errors}
    stored = False
    if validation["valid"]:
        source_ip = get_client_ip(request)
        for entry in entries:
            entry.setdefault("protocol", fmt)
            entry.setdefault("transport", "test")
            entry.setdefault("source_ip", source_ip)
        try:
            stored = LogRepository.bulk_create(db, entries) > 0
        except Exception as e:
            logger.error(f"[INGEST] Failed to store test message: {e}")
            db.rollback()

    first = entries[0] if entries else {}
    suggested = SUGGESTED_FIELDS + [f for f in OPTIONAL_FIELDS if f not in first]

    return {
        "success": True,
        "format": fmt,
        "parsed": result,
        "validation": validation,
        "stored": stored,
        "suggested_fields": suggested,
        "processing_time": round((time.perf_counter() - started) * 1000, 3),
    }


@router.get("/stats")
async def ingestion_stats(period: str = "24h", db: Session = Depends(get_db),
                          user: dict = Depends(require_permission("logs:read"))):
    hours = PERIOD_HOURS.get(period)
    if hours is None:
        raise HTTPException(status_code=400, detail=f"period must be one of: {', '.join(PERIOD_HOURS)}")

    since = utc_now() - timedelta(hours=hours)
    total = LogRepository.count(db, since)
    hourly = LogRepository.hourly_counts(db, hours=24, by_level=True)

    return {
        "success": True,
        "stats": {
            "period": period,
            "total_messages": total,
            "successful": total,
            "failed": ingestion_engine.get_stats()["errors"],
            "by_protocol": LogRepository.protocol_counts(db, since),
            "by_hour": [
                {
                    "hour": bucket["hour"],
                    "messages": bucket["count"],
                    "errors": sum(
                        count for level, count in bucket["levels"].items()
                        if level in ("error", "critical", "alert", "emergency")
                    ),
                }
                for bucket in hourly
            ],
            "top_sources": [
                {"source": row["source"], "messages": row["count"]}
                for row in LogRepository.source_counts(db, since, limit=10)
            ],
        },
    }


@router.get("/ports-status")
async def ports_status(user: dict = Depends(require_permission("logs:read"))):
    return {"success": True, "ports": ingestion_engine.ports_status(), "mode": ingestion_engine.mode}
