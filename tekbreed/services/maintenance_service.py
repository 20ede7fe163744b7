"""
Maintenance tasks triggered from the admin API or the cron scheduler.
"""

from datetime import datetime, timezone
from typing import Dict, Any

from tekbreed.database.app_db import get_app_db
from tekbreed.database.audit_log_db import get_audit_log_storage
from tekbreed.services.log_retention import cleanup_expired_logs
from tekbreed.utils.audit_logger import get_audit_logger, SystemAction, AuditSeverity

MAINTENANCE_TASKS = ("cleanup-logs", "cleanup-sessions", "database-maintenance")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def cleanup_expired_sessions(dry_run: bool = False) -> Dict[str, Any]:
    """Delete sessions whose expiration date has passed."""
    logger = get_audit_logger()
    db = get_app_db()

    print("[Maintenance] 🔍 Checking expired sessions...")
    stats = db.get_session_stats()
    print(
        f"[Maintenance] Session statistics: total={stats['total_count']}, "
        f"expired={stats['expired_count']}"
    )

    if stats["expired_count"] == 0:
        logger.log_system_event(
            SystemAction.SYSTEM_MAINTENANCE,
            "Session cleanup completed - no expired sessions found",
            metadata={
                "total_sessions": stats["total_count"],
                "expired_sessions": stats["expired_count"],
            }
        )
        return {
            "success": True,
            "message": "No expired sessions to clean up",
            "stats": stats,
            "timestamp": _timestamp(),
        }

    if dry_run:
        print(f"[Maintenance] DRY RUN: Would delete {stats['expired_count']} expired sessions")
        return {
            "success": True,
            "dry_run": True,
            "deleted_count": 0,
            "stats": stats,
            "timestamp": _timestamp(),
        }

    print(f"[Maintenance] 🧹 Cleaning up {stats['expired_count']} expired sessions...")
    deleted_count = db.delete_expired_sessions()

    logger.log_system_event(
        SystemAction.SYSTEM_MAINTENANCE,
        f"Session cleanup completed - {deleted_count} sessions deleted",
        metadata={
            "total_sessions": stats["total_count"],
            "expired_sessions": stats["expired_count"],
            "deleted_sessions": deleted_count,
        }
    )
    print(f"[Maintenance] ✅ Cleaned up {deleted_count} expired sessions")
    return {
        "success": True,
        "deleted_count": deleted_count,
        "stats": stats,
        "timestamp": _timestamp(),
    }


def maintain_db() -> Dict[str, Any]:
    """Refresh planner statistics and report table sizes."""
    logger = get_audit_logger()
    print("[Maintenance] 🗄️ Starting database maintenance...")

    try:
        app_db = get_app_db()
        audit_storage = get_audit_log_storage()

        app_db.analyze()
        audit_storage.analyze()

        counts = {
            "audit_logs": audit_storage.count(),
            "users": app_db.count_rows("users"),
            "subscriptions": app_db.count_rows("subscriptions"),
        }
        print(
            f"[Maintenance] Table counts: audit_logs={counts['audit_logs']}, "
            f"users={counts['users']}, subscriptions={counts['subscriptions']}"
        )

        logger.log_system_event(
            SystemAction.SYSTEM_UPDATE,
            "Database maintenance completed",
            metadata={"table_counts": counts}
        )
        return {"message": "Database maintenance completed", "table_counts": counts}

    except Exception as e:
        print(f"[Maintenance] ❌ Database maintenance failed: {e}")
        logger.log_system_event(
            SystemAction.SYSTEM_ERROR,
            "Database maintenance failed",
            severity=AuditSeverity.ERROR,
            metadata={"error": str(e)}
        )
        raise


def run_maintenance_task(task: str, dry_run: bool = False) -> Dict[str, Any]:
    """
    Run one named maintenance task.

    Returns {success: False, error} for unknown tasks and failures instead
    of raising, so a cron caller can record the outcome.
    """
    logger = get_audit_logger()
    print(f"[Maintenance] 🚀 Starting maintenance task: {task} (dry_run={dry_run})")

    try:
        if task == "cleanup-logs":
            result = cleanup_expired_logs(
                dry_run=dry_run,
                batch_size=1000,
                archive_to_storage=True,
                compress_archives=True
            ).to_dict()
        elif task == "cleanup-sessions":
            result = cleanup_expired_sessions(dry_run=dry_run)
        elif task == "database-maintenance":
            result = maintain_db()
        else:
            return {
                "success": False,
                "error": f"Unknown maintenance task: {task}",
                "timestamp": _timestamp(),
            }

        logger.log_system_event(
            SystemAction.SYSTEM_MAINTENANCE,
            f"Maintenance task '{task}' completed",
            metadata={"task": task, "dry_run": dry_run, "result": result}
        )
        print(f"[Maintenance] ✅ Maintenance task '{task}' completed")
        return {
            "success": True,
            "task": task,
            "dry_run": dry_run,
            "result": result,
            "timestamp": _timestamp(),
        }

    except Exception as e:
        print(f"[Maintenance] ❌ Maintenance task '{task}' failed: {e}")
        logger.log_system_event(
            SystemAction.SYSTEM_ERROR,
            f"Maintenance task '{task}' failed",
            severity=AuditSeverity.ERROR,
            metadata={"task": task, "error": str(e)}
        )
        return {
            "success": False,
            "error": str(e),
            "timestamp": _timestamp(),
        }
