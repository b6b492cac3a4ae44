"""
Alert rule endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from pydantic import BaseModel, Field

from admin.alerts import alert_manager
from auth.rbac_dependencies import require_analyst, require_viewer

router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class AlertRuleRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    level: Optional[str] = None
    pattern: Optional[str] = Field(None, max_length=500)
    source: Optional[str] = None
    threshold: Optional[int] = None
    window_minutes: Optional[int] = None
    severity: Optional[str] = None
    enabled: Optional[bool] = None


def _raise_for(result: dict):
    if "error" in result:
        raise HTTPException(status_code=result.get("status", 400), detail=result["error"])


@router.get("/rules")
async def list_rules(user: dict = Depends(require_viewer)):
    rules = alert_manager.list_rules()
    return {"success": True, "rules": rules, "total": len(rules)}


@router.post("/rules")
async def create_rule(data: AlertRuleRequest, user: dict = Depends(require_analyst)):
    try:
        result = alert_manager.create_rule(data.model_dump(exclude_none=True), user=user)
        _raise_for(result)
        return result

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create alert rule error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/rules/{rule_id}")
async def get_rule(rule_id: int, user: dict = Depends(require_viewer)):
    rule = alert_manager.get_rule(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"success": True, "rule": rule}


@router.put("/rules/{rule_id}")
async def update_rule(rule_id: int, data: AlertRuleRequest, user: dict = Depends(require_analyst)):
    result = alert_manager.update_rule(rule_id, data.model_dump(exclude_unset=True))
    _raise_for(result)
    return result


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: int, user: dict = Depends(require_analyst)):
    result = alert_manager.delete_rule(rule_id)
    _raise_for(result)
    return result


@router.post("/rules/{rule_id}/toggle")
async def toggle_rule(rule_id: int, user: dict = Depends(require_analyst)):
    result = alert_manager.toggle_rule(rule_id)
    _raise_for(result)
    return result


@router.post("/evaluate")
async def evaluate_rules(user: dict = Depends(require_analyst)):
    result = alert_manager.evaluate()
    _raise_for(result)
    return result
