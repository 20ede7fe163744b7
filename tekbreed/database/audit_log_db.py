"""
Audit Log Storage - SQLite Database for TekBreed audit events

Stores system and administrative events:
- Maintenance runs (log cleanup, session cleanup, database maintenance)
- Health check outcomes
- Subscription webhooks and portal access
- Content moderation actions
"""

import re
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

from tekbreed.config import Config


class AuditLogStorage:
    """
    SQLite-based storage for the audit log.

    Tables:
    - audit_logs: one row per event, with retention metadata
    """

    def __init__(self, db_path: str = None):
        self.db_path = Path(db_path or Config.AUDIT_LOG_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()
        print(f"✅ Audit log storage initialized: {self.db_path}")

    def _get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connect(self):
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    id TEXT PRIMARY KEY,
                    action TEXT NOT NULL,
                    severity TEXT NOT NULL DEFAULT 'INFO',
                    category TEXT NOT NULL,
                    module TEXT NOT NULL,
                    description TEXT NOT NULL,
                    retention_days INTEGER,
                    metadata TEXT,
                    ip_address TEXT,
                    user_agent TEXT,
                    actor_id TEXT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_module ON audit_logs(module)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_logs(action)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_category ON audit_logs(category)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_logs(actor_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_logs(entity_type, entity_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_logs(created_at)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_module_created ON audit_logs(module, created_at)")

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_event(
        self,
        action: str,
        category: str,
        module: str,
        description: str,
        entity_type: str,
        severity: str = "INFO",
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        retention_days: Optional[int] = None,
        created_at: Optional[str] = None
    ) -> str:
        """Insert one audit event and return its id."""
        event_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO audit_logs (
                    id, action, severity, category, module, description,
                    retention_days, metadata, ip_address, user_agent,
                    actor_id, entity_type, entity_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event_id, action, severity, category, module, description,
                retention_days,
                json.dumps(metadata, default=str) if metadata is not None else None,
                ip_address, user_agent, actor_id, entity_type, entity_id,
                created_at or datetime.now(timezone.utc).isoformat()
            ))
        return event_id

    def delete_by_ids(self, ids: List[str]) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            cursor = conn.execute(f"DELETE FROM audit_logs WHERE id IN ({placeholders})", ids)
            return cursor.rowcount

    def analyze(self):
        with self._connect() as conn:
            conn.execute("ANALYZE audit_logs")

    # =========================================================================
    # Reads
    # =========================================================================

    def find_older_than(self, cutoff: str, limit: int) -> List[Dict[str, Any]]:
        """Rows created before `cutoff`, oldest first."""
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT * FROM audit_logs
                WHERE created_at < ?
                ORDER BY created_at ASC
                LIMIT ?
            """, (cutoff, limit))
            return [self._row_to_dict(row) for row in cursor.fetchall()]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) AS count FROM audit_logs").fetchone()["count"]

    def count_by(self, column: str) -> Dict[str, int]:
        """Group counts by severity or module."""
        if column not in ("severity", "module", "category"):
            raise ValueError(f"Cannot group audit logs by {column}")
        with self._connect() as conn:
            cursor = conn.execute(f"SELECT {column} AS key, COUNT(*) AS count FROM audit_logs GROUP BY {column}")
            return {row["key"]: row["count"] for row in cursor.fetchall()}

    def get_date_bounds(self) -> Dict[str, Optional[str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MIN(created_at) AS oldest, MAX(created_at) AS newest FROM audit_logs"
            ).fetchone()
        return {"oldest": row["oldest"], "newest": row["newest"]}

    def sample(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Sample rows for size estimation (id, description, metadata only)."""
        with self._connect() as conn:
            rows = conn.execute("SELECT id, description, metadata FROM audit_logs LIMIT ?", (limit,)).fetchall()
        return [
            {
                "id": row["id"],
                "description": row["description"],
                "metadata": json.loads(row["metadata"]) if row["metadata"] else None
            }
            for row in rows
        ]

    def count_recent_errors(self, hours: int = 1) -> int:
        start_time = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
        with self._connect() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS count FROM audit_logs
                WHERE created_at >= ? AND severity IN ('ERROR', 'CRITICAL')
            """, (start_time,)).fetchone()
        return row["count"]

    def get_recent_events(
        self,
        hours: int = 24,
        limit: int = 50,
        severity: Optional[str] = None,
        module: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Recent events, sanitized for admin display."""
        start_time = (datetime.now(timezone.utc) - timedelta(hours=hours)).isoformat()
        query = "SELECT * FROM audit_logs WHERE created_at >= ?"
        params: List[Any] = [start_time]
        if severity:
            query += " AND severity = ?"
            params.append(severity.upper())
        if module:
            query += " AND module = ?"
            params.append(module.upper())
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        events = []
        for row in rows:
            events.append({
                "id": row["id"],
                "timestamp": row["created_at"],
                "action": row["action"],
                "severity": row["severity"],
                "module": row["module"],
                "entity_type": row["entity_type"],
                "entity_id": row["entity_id"],
                "description": self._sanitize_error(row["description"])
            })
        return events

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["metadata"] = json.loads(data["metadata"]) if data.get("metadata") else None
        return data

    def _sanitize_error(self, message: str) -> Optional[str]:
        """
        Sanitize a message for safe display.
        Removes file paths and line numbers, truncates length.
        """
        if not message:
            return None

        sanitized = re.sub(r'[A-Za-z]:\\[^\s]+', '[path]', message)
        sanitized = re.sub(r'/[^\s]+/[^\s]+', '[path]', sanitized)
        sanitized = re.sub(r'line \d+', 'line X', sanitized)

        if len(sanitized) > 200:
            sanitized = sanitized[:200] + "..."

        return sanitized


# Singleton instance
_audit_log_storage = None


def get_audit_log_storage() -> AuditLogStorage:
    """Get or create the audit log storage instance."""
    global _audit_log_storage
    if _audit_log_storage is None:
        _audit_log_storage = AuditLogStorage()
    return _audit_log_storage
