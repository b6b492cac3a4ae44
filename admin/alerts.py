"""
Alert rules and threshold evaluation against stored logs.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from store.database import get_db_session
from store.models import AlertRule, utc_now
from store.repository import LogRepository

SEVERITIES = ("low", "medium", "high", "critical")
MAX_WINDOW_MINUTES = 7 * 24 * 60
RULE_FIELDS = (
    "name", "description", "level", "pattern", "source",
    "threshold", "window_minutes", "severity", "enabled",
)


def window_start(now: datetime, minutes: int) -> datetime:
    try:
        return now - timedelta(minutes=minutes)
    except OverflowError:
        return datetime.min


class AlertManager:
    """CRUD for alert rules plus evaluation"""

    def _validate(self, fields: Dict[str, Any]) -> Optional[str]:
        if "name" in fields and not (fields["name"] or "").strip():
            return "Alert rule name is required"
        if fields.get("threshold") is not None and fields["threshold"] < 1:
            return "threshold must be at least 1"
        window = fields.get("window_minutes")
        if window is not None and not 1 <= window <= MAX_WINDOW_MINUTES:
            return f"window_minutes must be between 1 and {MAX_WINDOW_MINUTES}"
        if fields.get("severity") is not None and fields["severity"] not in SEVERITIES:
            return f"severity must be one of: {', '.join(SEVERITIES)}"
        return None

    def list_rules(self) -> List[dict]:
        session = get_db_session()
        try:
            return [r.to_dict() for r in session.query(AlertRule).order_by(AlertRule.id).all()]
        finally:
            session.close()

    def get_rule(self, rule_id: int) -> Optional[dict]:
        session = get_db_session()
        try:
            rule = session.get(AlertRule, rule_id)
            return rule.to_dict() if rule else None
        finally:
            session.close()

    def create_rule(self, fields: Dict[str, Any], user: dict = None) -> dict:
        if not (fields.get("name") or "").strip():
            return {"error": "Alert rule name is required"}
        error = self._validate(fields)
        if error:
            return {"error": error}

        session = get_db_session()
        try:
            values = {k: v for k, v in fields.items() if k in RULE_FIELDS and v is not None}
            values["name"] = values["name"].strip()
            rule = AlertRule(created_by=(user or {}).get("userId"), **values)
            session.add(rule)
            session.commit()
            logger.info(f"[ALERTS] Created rule {rule.id} ({rule.name})")
            return {"success": True, "rule": rule.to_dict()}
        except Exception as e:
            logger.error(f"[ALERTS] Create error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def update_rule(self, rule_id: int, fields: Dict[str, Any]) -> dict:
        error = self._validate(fields)
        if error:
            return {"error": error}

        session = get_db_session()
        try:
            rule = session.get(AlertRule, rule_id)
            if not rule:
                return {"error": "Alert rule not found", "status": 404}
            for key, value in fields.items():
                if key in RULE_FIELDS:
                    setattr(rule, key, value.strip() if key == "name" else value)
            session.commit()
            return {"success": True, "rule": rule.to_dict()}
        except Exception as e:
            logger.error(f"[ALERTS] Update error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def toggle_rule(self, rule_id: int) -> dict:
        session = get_db_session()
        try:
            rule = session.get(AlertRule, rule_id)
            if not rule:
                return {"error": "Alert rule not found", "status": 404}
            rule.enabled = not rule.enabled
            session.commit()
            logger.info(f"[ALERTS] Rule {rule_id} {'enabled' if rule.enabled else 'disabled'}")
            return {"success": True, "rule": rule.to_dict()}
        finally:
            session.close()

    def delete_rule(self, rule_id: int) -> dict:
        session = get_db_session()
        try:
            rule = session.get(AlertRule, rule_id)
            if not rule:
                return {"error": "Alert rule not found", "status": 404}
            session.delete(rule)
            session.commit()
            return {"success": True, "message": f"Alert rule {rule_id} deleted"}
        finally:
            session.close()

    # ==================== EVALUATION ====================

    def evaluate(self, now: datetime = None) -> dict:
        """Count matching logs in each enabled rule's window and fire rules at threshold"""
        now = now or utc_now()
        session = get_db_session()
        try:
            results = []
            for rule in session.query(AlertRule).filter(AlertRule.enabled == True).all():  # noqa: E712
                try:
                    count = LogRepository.count_matching(
                        session,
                        q=rule.pattern,
                        level=rule.level,
                        source=rule.source,
                        start=window_start(now, rule.window_minutes or 5),
                    )
                except Exception as e:
                    logger.error(f"[ALERTS] Rule '{rule.name}' could not be evaluated: {type(e).__name__}: {e}")
                    results.append({
                        "rule_id": rule.id,
                        "name": rule.name,
                        "severity": rule.severity,
                        "count": None,
                        "threshold": rule.threshold,
                        "triggered": False,
                        "error": str(e),
                    })
                    continue

                triggered = count >= (rule.threshold or 1)
                if triggered:
                    rule.last_triggered = now
                    rule.trigger_count = (rule.trigger_count or 0) + 1
                    logger.warning(f"[ALERTS] Rule '{rule.name}' triggered: {count} matches")
                results.append({
                    "rule_id": rule.id,
                    "name": rule.name,
                    "severity": rule.severity,
                    "count": count,
                    "threshold": rule.threshold,
                    "triggered": triggered,
                })
            session.commit()
            return {
                "success": True,
                "evaluated": len(results),
                "triggered": sum(1 for r in results if r["triggered"]),
                "results": results,
            }
        except Exception as e:
            logger.error(f"[ALERTS] Evaluation error: {type(e).__name__}: {e}")
            session.rollback()
            return {"error": str(e)}
        finally:
            session.close()

    def summary(self) -> dict:
        """Rule counts and trigger totals for the alert_summary widget"""
        rules = self.list_rules()
        return {
            "total_rules": len(rules),
            "enabled_rules": sum(1 for r in rules if r["enabled"]),
            "total_triggers": sum(r["trigger_count"] for r in rules),
            "by_severity": {
                severity: sum(1 for r in rules if r["severity"] == severity) for severity in SEVERITIES
            },
            "rules": sorted(rules, key=lambda r: r["trigger_count"], reverse=True)[:10],
        }


# Global instance
alert_manager = AlertManager()
