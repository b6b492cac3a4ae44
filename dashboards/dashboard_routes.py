"""
Dashboard builder endpoints.

Static paths (widget-types, templates, data, widgets) are declared before
the /{dashboard_id} routes so they are never captured as ids.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from auth.auth_manager import auth_manager
from auth.auth_routes import get_client_ip
from auth.rbac_dependencies import require_permission
from dashboards.builder import dashboard_builder
from dashboards.widget_data import widget_data
from dashboards.widgets import MAX_ROWS, widget_type_list
from store.database import get_db

router = APIRouter(prefix="/api/dashboards", tags=["dashboards"])


class DashboardRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    is_public: Optional[bool] = None
    is_default: Optional[bool] = None
    refresh_interval: Optional[int] = Field(None, ge=5, le=3600)


class PositionModel(BaseModel):
    x: Optional[int] = None
    y: Optional[int] = Field(None, ge=0, le=MAX_ROWS)
    w: Optional[int] = None
    h: Optional[int] = Field(None, ge=1, le=MAX_ROWS)


class WidgetRequest(BaseModel):
    widget_type: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)
    config: Optional[Dict[str, Any]] = None
    position: Optional[PositionModel] = None


class LayoutItem(BaseModel):
    id: int
    x: Optional[int] = None
    y: Optional[int] = Field(None, ge=0, le=MAX_ROWS)
    w: Optional[int] = None
    h: Optional[int] = Field(None, ge=1, le=MAX_ROWS)


class LayoutRequest(BaseModel):
    widgets: List[LayoutItem]


class FromTemplateRequest(BaseModel):
    template_key: str
    title: Optional[str] = None


def _raise_for(result: dict):
    if "error" in result:
        raise HTTPException(status_code=result.get("status", 400), detail=result["error"])


def _position(position: Optional[PositionModel]) -> Optional[dict]:
    return position.model_dump(exclude_none=True) if position else None


# ==================== CATALOGUE ====================

@router.get("/widget-types")
async def widget_types(user: dict = Depends(require_permission("dashboards:read"))):
    types = widget_type_list()
    return {"success": True, "widget_types": types, "total": len(types)}


@router.get("/templates")
async def templates(user: dict = Depends(require_permission("dashboards:read"))):
    items = dashboard_builder.list_templates()
    return {"success": True, "templates": items, "total": len(items)}


@router.get("/data/{widget_type}")
async def get_widget_data(
    widget_type: str,
    timeRange: str = "24h",
    limit: int = Query(10, ge=1, le=500),
    query: Optional[str] = None,
    db: Session = Depends(get_db),
    user: dict = Depends(require_permission("dashboards:read")),
):
    try:
        config = {"query": query} if query else {}
        result = widget_data(db, widget_type, time_range=timeRange, limit=limit, config=config)
        _raise_for(result)
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Widget data error ({widget_type}): {e}")
        raise HTTPException(status_code=500, detail=str(e))


# ==================== WIDGETS ====================

@router.put("/widgets/{widget_id}")
async def update_widget(widget_id: int, data: WidgetRequest, user: dict = Depends(require_permission("dashboards:write"))):
    result = dashboard_builder.update_widget(
        widget_id, title=data.title, config=data.config, position=_position(data.position), user=user
    )
    _raise_for(result)
    return result


@router.delete("/widgets/{widget_id}")
async def delete_widget(widget_id: int, user: dict = Depends(require_permission("dashboards:write"))):
    result = dashboard_builder.delete_widget(widget_id, user=user)
    _raise_for(result)
    return result


# ==================== DASHBOARDS ====================

@router.get("")
async def list_dashboards(user: dict = Depends(require_permission("dashboards:read"))):
    dashboards = dashboard_builder.list_dashboards(user)
    return {"success": True, "dashboards": dashboards, "total": len(dashboards)}


@router.post("")
async def create_dashboard(data: DashboardRequest, request: Request, user: dict = Depends(require_permission("dashboards:write"))):
    try:
        fields = data.model_dump(exclude_none=True)
        name = fields.pop("name", None)
        result = dashboard_builder.create_dashboard(name, user=user, **fields)
        _raise_for(result)

        auth_manager.log_activity(
            user.get("userId"),
            "dashboard_created",
            resource_type="dashboard",
            resource_id=result["dashboard"]["id"],
            details={"name": result["dashboard"]["name"]},
            ip_address=get_client_ip(request),
            username=user.get("username"),
        )
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create dashboard error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{dashboard_id}")
async def get_dashboard(dashboard_id: int, user: dict = Depends(require_permission("dashboards:read"))):
    result = dashboard_builder.get_dashboard(dashboard_id, user=user)
    _raise_for(result)
    return result


@router.put("/{dashboard_id}")
async def update_dashboard(dashboard_id: int, data: DashboardRequest, user: dict = Depends(require_permission("dashboards:write"))):
    result = dashboard_builder.update_dashboard(dashboard_id, data.model_dump(exclude_unset=True), user=user)
    _raise_for(result)
    return result


@router.delete("/{dashboard_id}")
async def delete_dashboard(dashboard_id: int, request: Request, user: dict = Depends(require_permission("dashboards:write"))):
    result = dashboard_builder.delete_dashboard(dashboard_id, user=user)
    _raise_for(result)

    auth_manager.log_activity(
        user.get("userId"),
        "dashboard_deleted",
        resource_type="dashboard",
        resource_id=dashboard_id,
        ip_address=get_client_ip(request),
        username=user.get("username"),
    )
    return result


@router.put("/{dashboard_id}/layout")
async def save_layout(dashboard_id: int, data: LayoutRequest, user: dict = Depends(require_permission("dashboards:write"))):
    items = [item.model_dump(exclude_none=True) for item in data.widgets]
    result = dashboard_builder.save_layout(dashboard_id, items, user=user)
    _raise_for(result)
    return result


@router.post("/{dashboard_id}/widgets")
async def add_widget(dashboard_id: int, data: WidgetRequest, user: dict = Depends(require_permission("dashboards:write"))):
    if not data.widget_type:
        raise HTTPException(status_code=400, detail="widget_type is required")

    result = dashboard_builder.add_widget(
        dashboard_id,
        data.widget_type,
        title=data.title,
        config=data.config,
        position=_position(data.position),
        user=user,
    )
    _raise_for(result)
    return result


@router.post("/{dashboard_id}/widgets/from-template")
async def add_widget_from_template(dashboard_id: int, data: FromTemplateRequest,
                                   user: dict = Depends(require_permission("dashboards:write"))):
    result = dashboard_builder.create_from_template(data.template_key, dashboard_id, title=data.title, user=user)
    _raise_for(result)
    return result
