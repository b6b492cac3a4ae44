"""
Audit trail reporting: statistics, security events, compliance and export
over the activity_log table.
"""

import csv
import io
import re
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from store.database import get_db_session
from store.models import utc_now
from store.repository import ActivityRepository

EXPORT_COLUMNS = [
    "id", "created_at", "user_id", "username", "action", "resource_type",
    "resource_id", "status", "ip_address", "user_agent", "details",
]

SECURITY_ACTIONS = {
    "login_failed": "medium",
    "api_key_*": "medium",
    "ip_blocked": "medium",
    "user_deleted": "high",
    "password_changed": "low",
    "settings_import": "medium",
}

SEVERITY_OVERRIDES = {
    "api_key_created": "low",
    "api_key_deleted": "high",
}

LOGIN_FAILURE_THRESHOLD = 5

PERIOD_PATTERN = re.compile(r"^(\d{1,4})d$")


def parse_period(period: str) -> Optional[int]:
    """'30d' -> 30; None for anything else"""
    match = PERIOD_PATTERN.match(period or "")
    if not match or int(match.group(1)) == 0:
        return None
    return int(match.group(1))


def _severity(action: str) -> str:
    if action in SEVERITY_OVERRIDES:
        return SEVERITY_OVERRIDES[action]
    if action.startswith("api_key_"):
        return SECURITY_ACTIONS["api_key_*"]
    return SECURITY_ACTIONS.get(action, "low")


def _percentage(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


class AuditTrail:
    """Read-side reports over the activity log"""

    def query(self, **filters) -> dict:
        session = get_db_session()
        try:
            entries, total = ActivityRepository.query(session, **filters)
            return {"entries": [e.to_dict() for e in entries], "total": total}
        finally:
            session.close()

    def search(self, text: str, filters: dict, limit: int, offset: int) -> dict:
        session = get_db_session()
        try:
            entries, total = ActivityRepository.search(session, text, filters, limit=limit, offset=offset)
            return {"entries": [e.to_dict() for e in entries], "total": total}
        finally:
            session.close()

    # ==================== EXPORT ====================

    def export_rows(self, **filters) -> List[dict]:
        session = get_db_session()
        try:
            entries, _ = ActivityRepository.query(session, page=1, limit=100000, **filters)
            return [e.to_dict() for e in entries]
        finally:
            session.close()

    @staticmethod
    def to_csv(rows: List[dict]) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            row = dict(row)
            row["details"] = "" if not row.get("details") else str(row["details"])
            writer.writerow(row)
        return buffer.getvalue()

    # ==================== STATISTICS ====================

    def stats(self) -> Dict[str, Any]:
        now = utc_now()
        session = get_db_session()
        try:
            total = ActivityRepository.count_since(session)
            failures = ActivityRepository.count_since(session, status="failure")
            top_actions = ActivityRepository.action_counts(session, limit=10)
            top_users = ActivityRepository.user_counts(session, limit=10)
            security_events = len(
                ActivityRepository.recent_by_actions(
                    session, list(SECURITY_ACTIONS), since=now - timedelta(days=30), limit=100000
                )
            )

            return {
                "totalEntries": total,
                "entriesLast24h": ActivityRepository.count_since(session, now - timedelta(hours=24)),
                "entriesLast7d": ActivityRepository.count_since(session, now - timedelta(days=7)),
                "entriesLast30d": ActivityRepository.count_since(session, now - timedelta(days=30)),
                "topActions": [
                    {"action": action, "count": count, "percentage": _percentage(count, total)}
                    for action, count in top_actions
                ],
                "topUsers": [
                    {"username": username, "entries": count, "percentage": _percentage(count, total)}
                    for username, count in top_users
                ],
                "successRate": _percentage(total - failures, total),
                "failureRate": _percentage(failures, total),
                "securityEvents": security_events,
            }
        finally:
            session.close()

    # ==================== SECURITY EVENTS ====================

    def security_events(self, hours: int = 24 * 7, limit: int = 200) -> List[Dict[str, Any]]:
        """
        Security-relevant rows, newest first, with repeated login failures
        from one IP in the last 24h collapsed into a summary event.
        """
        now = utc_now()
        session = get_db_session()
        try:
            rows = ActivityRepository.recent_by_actions(
                session, list(SECURITY_ACTIONS), since=now - timedelta(hours=hours), limit=limit
            )
            events = []
            failures_by_ip: Dict[str, List[Any]] = defaultdict(list)
            for row in rows:
                event = row.to_dict()
                event["severity"] = _severity(row.action)
                events.append(event)
                if row.action == "login_failed" and row.created_at >= now - timedelta(hours=24):
                    failures_by_ip[row.ip_address or "unknown"].append(row)

            summaries = []
            for ip, failures in failures_by_ip.items():
                if len(failures) < LOGIN_FAILURE_THRESHOLD:
                    continue
                usernames = sorted({(f.details or {}).get("username") or f.username or "unknown" for f in failures})
                summaries.append({
                    "action": "multiple_login_failures",
                    "severity": "high",
                    "ip_address": ip,
                    "count": len(failures),
                    "usernames": usernames,
                    "first_seen": min(f.created_at for f in failures).isoformat(),
                    "created_at": max(f.created_at for f in failures).isoformat(),
                })
            if summaries:
                logger.warning(f"[AUDIT] {len(summaries)} IP(s) with repeated login failures")
            return summaries + events
        finally:
            session.close()

    # ==================== COMPLIANCE ====================

    def compliance_report(self, days: int, standard: str = "general",
                          settings: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
        settings = settings or {}
        now = utc_now()
        since = now - timedelta(days=days)
        session = get_db_session()
        try:
            logins = len(ActivityRepository.recent_by_actions(session, ["user_login"], since=since, limit=100000))
            failed = len(ActivityRepository.recent_by_actions(session, ["login_failed"], since=since, limit=100000))
            changes = len(ActivityRepository.recent_by_actions(session, ["settings_*"], since=since, limit=100000))
            inactive = [u.username for u in ActivityRepository.inactive_users(session, days=90)]
            total_entries = ActivityRepository.count_since(session, since)
        finally:
            session.close()

        findings = []

        attempts = logins + failed
        failure_ratio = failed / attempts if attempts else 0.0
        if failure_ratio < 0.1:
            status, score = "compliant", 100
        elif failure_ratio < 0.25:
            status, score = "warning", 70
        else:
            status, score = "non_compliant", 40
        findings.append({
            "category": "access_control",
            "status": status,
            "score": score,
            "details": {
                "successful_logins": logins,
                "failed_logins": failed,
                "failure_ratio": round(failure_ratio, 4),
            },
        })

        findings.append({
            "category": "user_management",
            "status": "compliant" if not inactive else "warning",
            "score": 100 if not inactive else 75,
            "details": {"inactive_users": inactive, "inactive_threshold_days": 90},
        })

        audit_logging = settings.get("security", {}).get("audit_logging", True)
        findings.append({
            "category": "system_changes",
            "status": "compliant" if audit_logging else "non_compliant",
            "score": 100 if audit_logging else 30,
            "details": {"settings_changes": changes, "audit_logging": audit_logging},
        })

        retention_days = settings.get("system", {}).get("retention_days")
        findings.append({
            "category": "data_retention",
            "status": "compliant" if retention_days else "non_compliant",
            "score": 100 if retention_days else 40,
            "details": {"retention_days": retention_days},
        })

        recommendations = []
        if failure_ratio >= 0.1:
            recommendations.append("Review failed login attempts and consider blocking abusive IPs")
        if inactive:
            recommendations.append(f"Disable or remove {len(inactive)} user(s) inactive for 90+ days")
        if not audit_logging:
            recommendations.append("Enable audit logging for configuration changes")
        if not retention_days:
            recommendations.append("Configure a log retention period")

        overall = round(sum(f["score"] for f in findings) / len(findings), 1)
        return {
            "standard": standard,
            "period": f"{days}d",
            "generated_at": now.isoformat() + "Z",
            "total_entries": total_entries,
            "overall_score": overall,
            "status": "compliant" if overall >= 90 else "warning" if overall >= 70 else "non_compliant",
            "findings": findings,
            "recommendations": recommendations,
        }

    def cleanup(self, older_than_days: int) -> int:
        session = get_db_session()
        try:
            return ActivityRepository.delete_older_than(session, older_than_days)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global instance
audit_trail = AuditTrail()
