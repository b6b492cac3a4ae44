"""
Tracing endpoints.
"""

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from auth.rbac_dependencies import require_permission
from tracing.engine import tracing_engine

router = APIRouter(prefix="/api/tracing", tags=["tracing"])


@router.get("/status")
async def tracing_status(user: dict = Depends(require_permission("logs:read"))):
    stats = tracing_engine.get_stats()
    return {
        "success": True,
        "enabled": tracing_engine.enabled,
        "stats": stats,
        "services": stats["services"],
    }


@router.get("/dependencies")
async def service_dependencies(user: dict = Depends(require_permission("logs:read"))):
    dependencies = tracing_engine.get_dependencies()
    return {"success": True, "dependencies": dependencies, "total": len(dependencies)}


@router.get("/search")
async def search_traces(
    service: Optional[str] = None,
    operation: Optional[str] = None,
    minDuration: Optional[float] = Query(None, ge=0),
    maxDuration: Optional[float] = Query(None, ge=0),
    status: Optional[str] = None,
    limit: int = Query(20, ge=1, le=500),
    user: dict = Depends(require_permission("logs:read")),
):
    if status and status not in ("ok", "error"):
        raise HTTPException(status_code=400, detail="status must be ok or error")

    traces = tracing_engine.search(
        service=service,
        operation=operation,
        min_duration=minDuration,
        max_duration=maxDuration,
        status=status,
        limit=limit,
    )
    return {"success": True, "traces": traces, "total": len(traces)}


@router.get("/trace/{trace_id}")
async def get_trace(trace_id: str, user: dict = Depends(require_permission("logs:read"))):
    trace = tracing_engine.get_trace(trace_id)
    if trace is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return {"success": True, "trace": trace}


class SpanModel(BaseModel):
    """Wire shape of an externally produced span; unknown keys are ignored."""
    trace_id: str = Field(..., min_length=1)
    span_id: str = Field(..., min_length=1)
    parent_span_id: Optional[str] = None
    operation_name: Optional[str] = None
    operation: Optional[str] = None
    service_name: Optional[str] = None
    service: Optional[str] = None
    start_time: Optional[Union[float, str]] = None
    end_time: Optional[Union[float, str]] = None
    duration: Optional[float] = Field(None, ge=0)
    status: Optional[str] = None
    tags: Optional[Dict[str, Any]] = None
    logs: Optional[List[Dict[str, Any]]] = None


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "span"
    return f"{location}: {first['msg']}"


@router.post("/spans")
async def ingest_spans(
    payload: Union[Dict[str, Any], List[Any]] = Body(...),
    user: dict = Depends(require_permission("logs:write")),
):
    spans = payload if isinstance(payload, list) else [payload]
    if not spans:
        raise HTTPException(status_code=400, detail="No spans supplied")

    validated = []
    for index, span in enumerate(spans):
        try:
            validated.append(SpanModel.model_validate(span).model_dump(exclude_none=True))
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Span {index}: {_validation_message(e)}")

    try:
        accepted = tracing_engine.add_spans(validated)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.debug(f"[TRACE] Accepted {len(accepted)} external spans from {user.get('username')}")
    return {"success": True, "accepted": len(accepted), "traces": sorted({s.trace_id for s in accepted})}
