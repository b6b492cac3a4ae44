"""
Data providers for dashboard widgets, one per widget type.

Each provider takes (db, since, hours, limit, config) and returns a
JSON-ready dict.
"""

from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from admin.alerts import alert_manager
from admin.system_health import check_cpu, check_database, check_ingestion, check_memory
from ingestion.engine import ingestion_engine
from store.models import utc_now
from store.repository import LogRepository

TIME_RANGES = {"1h": 1, "6h": 6, "24h": 24, "7d": 168}
ERROR_LEVELS = ["error", "critical"]


def _log_timeline(db: Session, since, hours, limit, config):
    buckets = LogRepository.hourly_counts(db, hours=hours, by_level=True)
    return {"buckets": buckets, "total": sum(b["count"] for b in buckets)}


def _log_levels_pie(db: Session, since, hours, limit, config):
    counts = LogRepository.level_counts(db, since)
    return {
        "levels": [{"level": level, "count": count} for level, count in sorted(counts.items(), key=lambda kv: -kv[1])],
        "total": sum(counts.values()),
    }


def _source_breakdown(db: Session, since, hours, limit, config):
    return {"sources": LogRepository.source_counts(db, since, limit)}


def _error_trending(db: Session, since, hours, limit, config):
    buckets = LogRepository.hourly_counts(db, hours=hours, levels=ERROR_LEVELS, by_level=True)
    for bucket in buckets:
        bucket["error"] = bucket["levels"].get("error", 0)
        bucket["critical"] = bucket["levels"].get("critical", 0)
    return {"buckets": buckets, "total_errors": sum(b["count"] for b in buckets)}


def _real_time_feed(db: Session, since, hours, limit, config):
    return {"logs": [row.to_dict() for row in LogRepository.recent(db, limit)]}


def _alert_summary(db: Session, since, hours, limit, config):
    return alert_manager.summary()


def _system_status(db: Session, since, hours, limit, config):
    database = check_database()
    ingestion = check_ingestion()
    healthy = database["status"] == "healthy" and ingestion["status"] != "down"
    return {
        "status": "healthy" if healthy else "degraded",
        "database": database,
        "ingestion": ingestion,
    }


def _performance_gauge(db: Session, since, hours, limit, config):
    return {"cpu": check_cpu(), "memory": check_memory()}


def _metrics_chart(db: Session, since, hours, limit, config):
    stats = ingestion_engine.get_stats()
    return {
        "live": stats["messagesByProtocol"],
        "stored": LogRepository.protocol_counts(db, since),
        "totalMessages": stats["totalMessages"],
        "errors": stats["errors"],
    }


def _custom_query(db: Session, since, hours, limit, config):
    rows, total = LogRepository.search(
        db,
        q=config.get("query") or None,
        level=config.get("level"),
        source=config.get("source"),
        protocol=config.get("protocol"),
        start=since,
        limit=limit,
    )
    return {"logs": [row.to_dict() for row in rows], "total": total, "query": config.get("query", "")}


def _geo_map(db: Session, since, hours, limit, config):
    return {"points": LogRepository.column_counts(db, "source_ip", since, limit)}


def _correlation_matrix(db: Session, since, hours, limit, config):
    matrix = LogRepository.source_level_matrix(db, since, limit)
    levels = sorted({level for row in matrix.values() for level in row})
    return {"sources": list(matrix), "levels": levels, "matrix": matrix}


PROVIDERS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "log_timeline": _log_timeline,
    "metrics_chart": _metrics_chart,
    "alert_summary": _alert_summary,
    "system_status": _system_status,
    "log_levels_pie": _log_levels_pie,
    "source_breakdown": _source_breakdown,
    "error_trending": _error_trending,
    "performance_gauge": _performance_gauge,
    "geo_map": _geo_map,
    "correlation_matrix": _correlation_matrix,
    "real_time_feed": _real_time_feed,
    "custom_query": _custom_query,
}


def widget_data(db: Session, widget_type: str, time_range: str = "24h", limit: int = 10,
                config: Optional[Dict[str, Any]] = None) -> dict:
    """Run the provider for `widget_type`; unknown types give 404, bad ranges 400"""
    provider = PROVIDERS.get(widget_type)
    if provider is None:
        return {"error": f"Unknown widget type: {widget_type}", "status": 404}
    hours = TIME_RANGES.get(time_range)
    if hours is None:
        return {"error": f"timeRange must be one of: {', '.join(TIME_RANGES)}"}

    since = utc_now() - timedelta(hours=hours)
    data = provider(db, since, hours, limit, config or {})
    return {
        "success": True,
        "widget_type": widget_type,
        "timeRange": time_range,
        "data": data,
        "generated_at": utc_now().isoformat() + "Z",
    }
