"""
Health checks for the admin dashboard and the health-check cron job.

Each check returns {"status": "pass" | "warning" | "fail", "message", ...}
and never raises.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Any

import psutil

from tekbreed.database.app_db import get_app_db
from tekbreed.services.log_retention import get_log_statistics, estimate_log_space_usage
from tekbreed.utils.audit_logger import get_audit_logger, SystemAction, AuditSeverity

MAX_LOG_ROWS = 1_000_000
MAX_LOG_SIZE_MB = 1000
MAX_RSS_MB = 1000


def _log_check(name: str, status: str, error: str = None):
    severity = {
        "pass": AuditSeverity.INFO,
        "warning": AuditSeverity.WARNING,
    }.get(status, AuditSeverity.ERROR)
    metadata = {"status": status, "timestamp": datetime.now(timezone.utc).isoformat()}
    if error:
        metadata["error"] = error
    get_audit_logger().log_system_event(
        SystemAction.SYSTEM_MAINTENANCE,
        f"{name} check completed - Status: {status}",
        severity=severity,
        metadata=metadata
    )


def check_db_connection() -> Dict[str, Any]:
    print("[Health] 🔌 Checking database connectivity...")
    try:
        get_app_db().ping()
    except Exception as e:
        _log_check("Database connection", "fail", str(e))
        return {"status": "fail", "message": str(e)}

    _log_check("Database connection", "pass")
    return {"status": "pass", "message": "Database connection is healthy"}


def check_log_table() -> Dict[str, Any]:
    print("[Health] 📊 Checking log table health...")
    try:
        stats = get_log_statistics()
        space_usage = estimate_log_space_usage()
    except Exception as e:
        _log_check("Log table", "fail", str(e))
        return {"status": "fail", "message": str(e)}

    status, message = "pass", "Log table is healthy"
    if stats["total_logs"] > MAX_LOG_ROWS:
        status, message = "warning", "High volume of logs detected"
    if space_usage["estimated_size_mb"] > MAX_LOG_SIZE_MB:
        status, message = "warning", "Log table size is large"

    _log_check("Log table", status)
    return {
        "status": status,
        "message": message,
        "details": {
            "total_logs": stats["total_logs"],
            "estimated_size_mb": space_usage["estimated_size_mb"],
            "date_range_days": stats["date_range_days"],
        },
    }


def check_system_resources() -> Dict[str, Any]:
    print("[Health] 💾 Checking system resources...")
    try:
        process = psutil.Process()
        memory = process.memory_info()
        details = {
            "rss": round(memory.rss / 1024 / 1024),
            "vms": round(memory.vms / 1024 / 1024),
            "percent": round(process.memory_percent(), 2),
        }
    except Exception as e:
        _log_check("System resources", "fail", str(e))
        return {"status": "fail", "message": str(e)}

    if details["rss"] > MAX_RSS_MB:
        _log_check("System resources", "warning")
        return {"status": "warning", "message": "High memory usage detected", "details": details}

    _log_check("System resources", "pass")
    return {"status": "pass", "message": "Memory usage is normal", "details": details}


async def run_health_checks() -> Dict[str, Any]:
    """Run all checks concurrently in worker threads."""
    db_connection, log_table, system_resources = await asyncio.gather(
        asyncio.to_thread(check_db_connection),
        asyncio.to_thread(check_log_table),
        asyncio.to_thread(check_system_resources),
    )
    return {
        "db_connection": db_connection,
        "log_table": log_table,
        "system_resources": system_resources,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def run_health_checks_sync() -> Dict[str, Any]:
    """Entry point for the scheduler thread, which has no running loop."""
    return asyncio.run(run_health_checks())


def health_indicator(error_count: int) -> str:
    if error_count == 0:
        return "🟢"
    if error_count < 5:
        return "🟡"
    return "🔴"
