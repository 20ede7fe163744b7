"""
Audit log retention: cleanup, archival and space statistics.

Used by the maintenance endpoint, the cron scheduler and the log table
health check.
"""

import gzip
import json
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional

from tekbreed.config import Config
from tekbreed.database.audit_log_db import get_audit_log_storage
from tekbreed.utils.audit_logger import get_audit_logger, SystemAction, AuditSeverity


@dataclass
class CleanupResult:
    deleted_count: int = 0
    archived_count: int = 0
    errors: List[str] = field(default_factory=list)
    space_freed: Optional[int] = None  # bytes

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _expiry_cutoff() -> str:
    return (datetime.now(timezone.utc) - timedelta(days=Config.LOG_RETENTION_DAYS)).isoformat()


def archive_logs_to_storage(
    logs: List[Dict[str, Any]],
    archive_dir: Optional[str] = None,
    compress: bool = True
) -> int:
    """Write logs as JSON lines into the archive directory. Returns rows written."""
    if not logs:
        return 0

    directory = Path(archive_dir or Config.LOG_ARCHIVE_DIR)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    payload = "\n".join(json.dumps(log, default=str) for log in logs) + "\n"

    if compress:
        path = directory / f"audit-logs-{stamp}.jsonl.gz"
        with gzip.open(path, "wt", encoding="utf-8") as f:
            f.write(payload)
    else:
        path = directory / f"audit-logs-{stamp}.jsonl"
        with open(path, "w", encoding="utf-8") as f:
            f.write(payload)

    print(f"[LogRetention] Archived {len(logs)} logs to {path}")
    return len(logs)


def cleanup_expired_logs(
    dry_run: bool = False,
    batch_size: int = 1000,
    archive_to_storage: bool = False,
    archive_dir: Optional[str] = None,
    compress_archives: bool = True
) -> CleanupResult:
    """
    Delete audit logs older than the retention window, oldest first.

    Never raises: failures are collected in `errors` and logged as an
    ERROR system event.
    """
    result = CleanupResult()
    logger = get_audit_logger()

    try:
        storage = get_audit_log_storage()
        expired_logs = storage.find_older_than(_expiry_cutoff(), batch_size)

        if not expired_logs:
            print("[LogRetention] No expired logs found for cleanup")
            return result

        print(f"[LogRetention] Found {len(expired_logs)} expired logs for cleanup")
        if dry_run:
            print(f"[LogRetention] DRY RUN: Would delete/archive {len(expired_logs)} logs")
            result.deleted_count = len(expired_logs)
            return result

        if archive_to_storage:
            result.archived_count = archive_logs_to_storage(
                expired_logs,
                archive_dir=archive_dir,
                compress=compress_archives
            )

        result.space_freed = sum(len(json.dumps(log, default=str)) for log in expired_logs)
        result.deleted_count = storage.delete_by_ids([log["id"] for log in expired_logs])

        logger.log_system_event(
            SystemAction.SYSTEM_MAINTENANCE,
            f"Cleaned up {result.deleted_count} expired audit logs",
            metadata={
                "deleted_count": result.deleted_count,
                "archived_count": result.archived_count,
                "batch_size": batch_size,
                "dry_run": dry_run,
            }
        )
        print(f"[LogRetention] Successfully cleaned up {result.deleted_count} logs")
        return result

    except Exception as e:
        error_message = f"Failed to cleanup logs: {e}"
        print(f"[LogRetention] {error_message}")
        result.errors.append(error_message)
        logger.log_system_event(
            SystemAction.SYSTEM_ERROR,
            "Log cleanup failed",
            severity=AuditSeverity.ERROR,
            metadata={"error": str(e)}
        )
        return result


def get_log_statistics() -> Dict[str, Any]:
    """Totals, per-severity and per-module counts, and the covered date range."""
    storage = get_audit_log_storage()
    bounds = storage.get_date_bounds()

    date_range_days = 0
    if bounds["oldest"] and bounds["newest"]:
        oldest = datetime.fromisoformat(bounds["oldest"])
        newest = datetime.fromisoformat(bounds["newest"])
        date_range_days = math.ceil((newest - oldest).total_seconds() / 86400)

    return {
        "total_logs": storage.count(),
        "logs_by_severity": storage.count_by("severity"),
        "logs_by_module": storage.count_by("module"),
        "oldest_log": bounds["oldest"],
        "newest_log": bounds["newest"],
        "date_range_days": date_range_days,
    }


def estimate_log_space_usage() -> Dict[str, Any]:
    """Estimate audit log size from a 100-row sample."""
    storage = get_audit_log_storage()
    total_logs = storage.count()

    if total_logs == 0:
        return {"estimated_size_mb": 0, "average_log_size_bytes": 0, "total_logs": 0}

    sample = storage.sample(100)
    average = sum(len(json.dumps(log, default=str)) for log in sample) / len(sample)
    estimated_size_mb = (total_logs * average) / (1024 * 1024)

    return {
        "estimated_size_mb": round(estimated_size_mb, 2),
        "average_log_size_bytes": round(average),
        "total_logs": total_logs,
    }


def scheduled_log_cleanup() -> Dict[str, Any]:
    """Cron entry point: report stats, then clean up a large batch with archiving."""
    print("[LogRetention] Starting scheduled log cleanup...")
    stats = get_log_statistics()
    space_usage = estimate_log_space_usage()

    print(
        f"[LogRetention] Current log statistics: total={stats['total_logs']}, "
        f"size={space_usage['estimated_size_mb']}MB, range={stats['date_range_days']}d"
    )

    result = cleanup_expired_logs(
        dry_run=False,
        batch_size=5000,
        archive_to_storage=True,
        compress_archives=True
    )
    print(f"[LogRetention] Cleanup completed: {result}")
    return {**result.to_dict(), "stats": stats, "space_usage": space_usage}
