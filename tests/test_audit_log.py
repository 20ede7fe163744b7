"""Audit log storage, the audit logger and log retention."""
import gzip
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conftest import test_case
from tekbreed.config import Config
from tekbreed.database.audit_log_db import get_audit_log_storage
from tekbreed.services.log_retention import (
    cleanup_expired_logs,
    estimate_log_space_usage,
    get_log_statistics,
    scheduled_log_cleanup,
)
from tekbreed.utils.audit_logger import (
    get_audit_logger, AuditCategory, AuditModule, AuditSeverity, EntityType, SystemAction
)


def _days_ago(days: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def _insert(storage, description="event", severity="INFO", module="SYSTEM", created_at=None):
    return storage.insert_event(
        action="SYSTEM_UPDATE",
        category="SYSTEM",
        module=module,
        description=description,
        entity_type="SYSTEM",
        severity=severity,
        created_at=created_at,
    )


def _all_rows(storage):
    """Every stored row, oldest first, metadata decoded."""
    return storage.find_older_than("9999", 1000)


@pytest.fixture
def storage():
    return get_audit_log_storage()


# ══════════════════════════════════════════════════════════════════════════════
# STORAGE
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-AUDIT-001",
    priority="High",
    module="Audit Log",
    title="Recent events hide file paths and line numbers",
)
def test_recent_events_are_sanitized(storage):
    _insert(storage, "Crash in /srv/tekbreed/services/rag.py at line 42", severity="ERROR")
    _insert(storage, "x" * 300)

    events = storage.get_recent_events(hours=1)
    descriptions = {event["severity"]: event["description"] for event in events}

    assert descriptions["ERROR"] == "Crash in [path] at line X"
    assert descriptions["INFO"] == "x" * 200 + "..."
    assert "metadata" not in events[0]
    assert "actor_id" not in events[0]


def test_recent_events_filter_by_severity_and_module(storage):
    _insert(storage, "billing failed", severity="ERROR", module="SUBSCRIPTION")
    _insert(storage, "billing ok", module="SUBSCRIPTION")
    _insert(storage, "old failure", severity="ERROR", created_at=_days_ago(3))

    errors = storage.get_recent_events(hours=24, severity="error")
    assert [e["description"] for e in errors] == ["billing failed"]

    billing = storage.get_recent_events(hours=24, module="subscription")
    assert {e["description"] for e in billing} == {"billing failed", "billing ok"}


def test_count_recent_errors_only_counts_window(storage):
    _insert(storage, "boom", severity="ERROR")
    _insert(storage, "worse", severity="CRITICAL")
    _insert(storage, "fine")
    _insert(storage, "stale", severity="ERROR", created_at=_days_ago(1))

    assert storage.count_recent_errors(hours=1) == 2
    assert storage.count() == 4


def test_count_by_rejects_unknown_column(storage):
    _insert(storage, severity="WARNING")
    assert storage.count_by("severity") == {"WARNING": 1}
    with pytest.raises(ValueError):
        storage.count_by("description")


# ══════════════════════════════════════════════════════════════════════════════
# LOGGER
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-AUDIT-002",
    priority="High",
    module="Audit Log",
    title="Audit logger persists enum-valued events",
)
def test_log_event_persists_row(storage):
    get_audit_logger().log_event(
        action="CONTENT_REPORTED",
        category=AuditCategory.USER_ACTION,
        module=AuditModule.CONTENT,
        description="User reported a comment",
        entity_type=EntityType.COMMENT,
        actor_id="user-1",
        entity_id="comment-1",
        metadata={"reason": "spam"},
    )

    row = _all_rows(storage)[0]
    assert row["module"] == "CONTENT"
    assert row["category"] == "USER_ACTION"
    assert row["severity"] == "INFO"
    assert row["metadata"] == {"reason": "spam"}
    assert row["retention_days"] == Config.LOG_RETENTION_DAYS


def test_log_error_attaches_stack_trace(storage):
    try:
        raise RuntimeError("database locked")
    except RuntimeError:
        get_audit_logger().log_error("Maintenance", "Vacuum failed", {"table": "users"}, exc_info=True)

    row = _all_rows(storage)[0]
    assert row["action"] == SystemAction.SYSTEM_ERROR.value
    assert row["description"] == "[Maintenance] Vacuum failed"
    assert row["metadata"]["table"] == "users"
    assert "RuntimeError: database locked" in row["metadata"]["stack_trace"]


def test_log_event_survives_storage_failure(capsys):
    class BrokenStorage:
        def insert_event(self, **kwargs):
            raise OSError("disk full")

    logger = get_audit_logger()
    logger._storage = BrokenStorage()
    logger.log_system_event(SystemAction.SYSTEM_UPDATE, "still running", severity=AuditSeverity.WARNING)

    output = capsys.readouterr().out
    assert "Failed to log event to database: disk full" in output
    assert "still running" in output


# ══════════════════════════════════════════════════════════════════════════════
# RETENTION
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-AUDIT-003",
    priority="Critical",
    module="Log Retention",
    title="Only logs past the retention window are deleted and archived",
    steps=[
        {"step": "Insert one fresh and two expired logs", "expected": "3 rows"},
        {"step": "Run cleanup with archiving", "expected": "2 deleted, 2 archived"},
        {"step": "Read the gzip archive", "expected": "Two JSON lines"},
    ]
)
def test_cleanup_deletes_and_archives_expired_logs(storage):
    fresh_id = _insert(storage, "fresh")
    _insert(storage, "expired one", created_at=_days_ago(90))
    _insert(storage, "expired two", created_at=_days_ago(61))

    result = cleanup_expired_logs(archive_to_storage=True)

    assert result.errors == []
    assert result.deleted_count == 2
    assert result.archived_count == 2
    assert result.space_freed > 0

    remaining = _all_rows(storage)
    remaining_ids = [row["id"] for row in remaining]
    assert fresh_id in remaining_ids
    assert all(row["description"] not in ("expired one", "expired two") for row in remaining)

    archives = list(Path(Config.LOG_ARCHIVE_DIR).glob("audit-logs-*.jsonl.gz"))
    assert len(archives) == 1
    with gzip.open(archives[0], "rt", encoding="utf-8") as f:
        lines = [json.loads(line) for line in f if line.strip()]
    assert {line["description"] for line in lines} == {"expired one", "expired two"}


def test_cleanup_dry_run_keeps_rows(storage):
    _insert(storage, "expired", created_at=_days_ago(120))

    result = cleanup_expired_logs(dry_run=True)

    assert result.deleted_count == 1
    assert storage.count() == 1


def test_cleanup_with_nothing_expired(storage):
    _insert(storage, "fresh")
    result = cleanup_expired_logs()
    assert result.to_dict() == {"deleted_count": 0, "archived_count": 0, "errors": [], "space_freed": None}


def test_cleanup_collects_errors_instead_of_raising(storage, monkeypatch):
    def broken(cutoff, limit):
        raise RuntimeError("no such table")

    monkeypatch.setattr(storage, "find_older_than", broken)
    result = cleanup_expired_logs()

    assert result.errors == ["Failed to cleanup logs: no such table"]
    assert storage.count_recent_errors(hours=1) == 1


def test_log_statistics_and_space_usage(storage):
    assert estimate_log_space_usage() == {"estimated_size_mb": 0, "average_log_size_bytes": 0, "total_logs": 0}

    _insert(storage, "old", severity="WARNING", created_at=_days_ago(10))
    _insert(storage, "new", severity="ERROR", module="CHAT")

    stats = get_log_statistics()
    assert stats["total_logs"] == 2
    assert stats["logs_by_severity"] == {"WARNING": 1, "ERROR": 1}
    assert stats["logs_by_module"] == {"SYSTEM": 1, "CHAT": 1}
    assert stats["date_range_days"] in (10, 11)

    usage = estimate_log_space_usage()
    assert usage["total_logs"] == 2
    assert usage["average_log_size_bytes"] > 0


def test_scheduled_cleanup_reports_stats(storage):
    _insert(storage, "expired", created_at=_days_ago(70))

    result = scheduled_log_cleanup()

    assert result["deleted_count"] == 1
    assert result["archived_count"] == 1
    assert result["stats"]["total_logs"] == 1
