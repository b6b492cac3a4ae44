"""
Host and service health checks (database, memory, cpu, storage, ingestion).
"""

import os
import time
from datetime import timedelta
from typing import Any, Dict

import psutil
from loguru import logger

from apps import __version__
from ingestion.engine import ingestion_engine
from store.database import DatabaseManager, get_db_session
from store.models import ApiKey, Dashboard, User, utc_now
from store.repository import LogRepository

WARNING_PERCENT = 90.0


def _percent_check(percent: float, **extra) -> Dict[str, Any]:
    return {
        "status": "warning" if percent > WARNING_PERCENT else "healthy",
        "percent": round(percent, 1),
        **extra,
    }


def check_database() -> Dict[str, Any]:
    started = time.perf_counter()
    if not DatabaseManager.health_check():
        return {"status": "unhealthy", "response_time_ms": None, "log_count": None}

    session = get_db_session()
    try:
        log_count = LogRepository.count(session)
    except Exception as e:
        logger.error(f"[HEALTH] Log count failed: {e}")
        return {"status": "unhealthy", "response_time_ms": None, "log_count": None, "error": str(e)}
    finally:
        session.close()

    return {
        "status": "healthy",
        "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
        "log_count": log_count,
    }


def check_memory() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    process = psutil.Process(os.getpid())
    return _percent_check(
        memory.percent,
        total_mb=round(memory.total / (1024 * 1024), 1),
        available_mb=round(memory.available / (1024 * 1024), 1),
        process_rss_mb=round(process.memory_info().rss / (1024 * 1024), 1),
    )


def check_cpu() -> Dict[str, Any]:
    return _percent_check(psutil.cpu_percent(interval=None), cores=psutil.cpu_count())


def check_storage() -> Dict[str, Any]:
    path = DatabaseManager.get_database_path()
    target = os.path.dirname(path) if path else os.getcwd()
    disk = psutil.disk_usage(target)
    return _percent_check(
        disk.percent,
        path=target,
        free_gb=round(disk.free / (1024 ** 3), 2),
        total_gb=round(disk.total / (1024 ** 3), 2),
    )


def check_ingestion() -> Dict[str, Any]:
    return {"status": ingestion_engine.health(), "mode": ingestion_engine.mode}


def system_health() -> Dict[str, Any]:
    checks = {
        "database": check_database(),
        "memory": check_memory(),
        "cpu": check_cpu(),
        "storage": check_storage(),
        "ingestion": check_ingestion(),
    }

    if checks["database"]["status"] == "unhealthy":
        status = "unhealthy"
    elif any(checks[name]["status"] == "warning" for name in ("memory", "cpu", "storage")):
        status = "degraded"
    elif ingestion_engine.mode == "running" and checks["ingestion"]["status"] != "healthy":
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "uptime": round(time.time() - psutil.Process(os.getpid()).create_time(), 1),
        "version": __version__,
        "timestamp": utc_now().isoformat() + "Z",
        "checks": checks,
    }


def system_stats() -> Dict[str, Any]:
    session = get_db_session()
    try:
        since = utc_now() - timedelta(hours=24)
        return {
            "logs_last_24h": LogRepository.level_counts(session, since),
            "total_logs": LogRepository.count(session),
            "users": session.query(User).count(),
            "dashboards": session.query(Dashboard).count(),
            "api_keys": session.query(ApiKey).count(),
        }
    finally:
        session.close()
