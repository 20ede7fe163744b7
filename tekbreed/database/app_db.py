# database/app_db.py
"""
Relational store for TekBreed: users, sessions, CMS-backed content,
comments, likes, bookmarks/tags, content reports, subscriptions and
assistant conversations.
"""
import sqlite3
import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Dict, Optional, Any

from tekbreed.config import Config


CONTENT_TYPES = ("ARTICLE", "TUTORIAL", "COURSE", "PROGRAM")
REPORT_STATUSES = ("PENDING", "REVIEWED", "RESOLVED", "DISMISSED")
DEFAULT_TAG_COLOR = "#3B82F6"
SESSION_LIFETIME_DAYS = 30
COUNTABLE_TABLES = (
    "users", "subscriptions", "sessions", "content", "comments",
    "content_reports", "conversations", "messages",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AppDatabase:
    def __init__(self, db_path: str = None):
        self.db_path = Path(db_path or Config.APP_DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connect(self):
        """Connection scoped to one unit of work: commit, or roll back and re-raise."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database tables"""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT,
                    name TEXT,
                    polar_customer_id TEXT UNIQUE,
                    is_subscribed INTEGER DEFAULT 0,
                    total_tokens_used INTEGER DEFAULT 0,
                    monthly_tokens INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notification_settings (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    content_update INTEGER DEFAULT 1,
                    promotions INTEGER DEFAULT 0,
                    community_events INTEGER DEFAULT 0,
                    all_notifications INTEGER DEFAULT 0,
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    expiration_date TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS teams (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS team_members (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT DEFAULT 'member',
                    UNIQUE (team_id, user_id),
                    FOREIGN KEY (team_id) REFERENCES teams (id) ON DELETE CASCADE,
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS content (
                    id TEXT PRIMARY KEY,
                    sanity_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    views INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    UNIQUE (sanity_id, type)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    body TEXT NOT NULL,
                    content_id TEXT NOT NULL,
                    author_id TEXT NOT NULL,
                    parent_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (content_id) REFERENCES content (id) ON DELETE CASCADE,
                    FOREIGN KEY (author_id) REFERENCES users (id) ON DELETE CASCADE,
                    FOREIGN KEY (parent_id) REFERENCES comments (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS likes (
                    id TEXT PRIMARY KEY,
                    count INTEGER DEFAULT 0,
                    user_id TEXT NOT NULL,
                    content_id TEXT,
                    comment_id TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (content_id, user_id),
                    UNIQUE (comment_id, user_id),
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
                    FOREIGN KEY (content_id) REFERENCES content (id) ON DELETE CASCADE,
                    FOREIGN KEY (comment_id) REFERENCES comments (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bookmarks (
                    id TEXT PRIMARY KEY,
                    notes TEXT,
                    user_id TEXT NOT NULL,
                    content_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (content_id, user_id),
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
                    FOREIGN KEY (content_id) REFERENCES content (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS tags (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    color TEXT DEFAULT '#3B82F6',
                    is_system INTEGER DEFAULT 0,
                    user_id TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (name, user_id),
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bookmark_tags (
                    id TEXT PRIMARY KEY,
                    bookmark_id TEXT NOT NULL,
                    tag_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (bookmark_id, tag_id),
                    FOREIGN KEY (bookmark_id) REFERENCES bookmarks (id) ON DELETE CASCADE,
                    FOREIGN KEY (tag_id) REFERENCES tags (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS content_reports (
                    id TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    details TEXT,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    admin_notes TEXT,
                    resolved_at TEXT,
                    user_id TEXT NOT NULL,
                    resolved_by_id TEXT,
                    content_id TEXT,
                    comment_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (content_id, user_id),
                    UNIQUE (comment_id, user_id),
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
                    FOREIGN KEY (resolved_by_id) REFERENCES users (id) ON DELETE SET NULL,
                    FOREIGN KEY (content_id) REFERENCES content (id) ON DELETE CASCADE,
                    FOREIGN KEY (comment_id) REFERENCES comments (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    subscription_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'active',
                    type TEXT NOT NULL DEFAULT 'individual',
                    plan TEXT NOT NULL DEFAULT 'basic',
                    current_period_start TEXT,
                    current_period_end TEXT,
                    user_id TEXT UNIQUE,
                    team_id TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    document_id TEXT,
                    title TEXT,
                    total_input_tokens INTEGER DEFAULT 0,
                    total_output_tokens INTEGER DEFAULT 0,
                    total_tokens INTEGER DEFAULT 0,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    input_tokens INTEGER DEFAULT 0,
                    output_tokens INTEGER DEFAULT 0,
                    total_tokens INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (conversation_id) REFERENCES conversations (id) ON DELETE CASCADE
                )
            """)

            # Indexes
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_session_user ON sessions(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_session_expiration ON sessions(expiration_date)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_comment_content ON comments(content_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_comment_parent ON comments(parent_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_bookmark_user ON bookmarks(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_report_status ON content_reports(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_report_user ON content_reports(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_conversation_user ON conversations(user_id, document_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_message_conversation ON messages(conversation_id)")

    # =========================================================================
    # Users
    # =========================================================================

    def upsert_user(self, user_id: str, email: str = None, name: str = None) -> Dict:
        """Create the user row on first sight; fill in email/name when given."""
        now = _now()
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO users (id, email, name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = COALESCE(excluded.email, users.email),
                    name = COALESCE(users.name, excluded.name),
                    updated_at = excluded.updated_at
            """, (user_id, email, name, now, now))
            cursor.execute("""
                INSERT OR IGNORE INTO notification_settings (id, user_id) VALUES (?, ?)
            """, (str(uuid.uuid4()), user_id))
            row = cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row)

    def get_user(self, user_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    def get_user_by_polar_customer_id(self, customer_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE polar_customer_id = ?", (customer_id,)).fetchone()
        return dict(row) if row else None

    def _update_user(self, user_id: str, column: str, value) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE users SET {column} = ?, updated_at = ? WHERE id = ?",
                (value, _now(), user_id)
            )
            return cursor.rowcount > 0

    def update_user_name(self, user_id: str, name: str) -> bool:
        return self._update_user(user_id, "name", name)

    def set_polar_customer_id(self, user_id: str, customer_id: str) -> bool:
        return self._update_user(user_id, "polar_customer_id", customer_id)

    def set_subscribed(self, user_id: str, is_subscribed: bool) -> bool:
        return self._update_user(user_id, "is_subscribed", 1 if is_subscribed else 0)

    def delete_user(self, user_id: str) -> bool:
        """Delete a user; sessions, comments, likes, bookmarks, reports cascade."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    def delete_user_by_polar_customer_id(self, customer_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE polar_customer_id = ?", (customer_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # Notification settings
    # =========================================================================

    def get_notification_settings(self, user_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM notification_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
        if not row:
            return None
        return {
            "content_update": bool(row["content_update"]),
            "promotions": bool(row["promotions"]),
            "community_events": bool(row["community_events"]),
            "all_notifications": bool(row["all_notifications"]),
        }

    def update_notification_settings(
        self,
        user_id: str,
        content_update: bool,
        promotions: bool,
        community_events: bool,
        all_notifications: bool
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE notification_settings
                SET content_update = ?, promotions = ?, community_events = ?, all_notifications = ?
                WHERE user_id = ?
            """, (int(content_update), int(promotions), int(community_events), int(all_notifications), user_id))
            return cursor.rowcount > 0

    # =========================================================================
    # Sessions
    # =========================================================================

    def create_session(self, user_id: str, expiration_date: str = None) -> Dict:
        session_id = str(uuid.uuid4())
        now = _now()
        expires = expiration_date or (
            datetime.now(timezone.utc) + timedelta(days=SESSION_LIFETIME_DAYS)
        ).isoformat()

        with self._connect() as conn:
            conn.execute("""
                INSERT INTO sessions (id, user_id, expiration_date, created_at)
                VALUES (?, ?, ?, ?)
            """, (session_id, user_id, expires, now))

        return {"id": session_id, "user_id": user_id, "expiration_date": expires, "created_at": now}

    def get_session(self, session_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return dict(row) if row else None

    def count_active_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS count FROM sessions
                WHERE user_id = ? AND expiration_date > ?
            """, (user_id, _now())).fetchone()
        return row["count"]

    def delete_other_sessions(self, user_id: str, keep_session_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sessions WHERE user_id = ? AND id != ?",
                (user_id, keep_session_id)
            )
            return cursor.rowcount

    def get_session_stats(self) -> Dict[str, int]:
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) AS count FROM sessions").fetchone()["count"]
            expired = conn.execute(
                "SELECT COUNT(*) AS count FROM sessions WHERE expiration_date < ?", (_now(),)
            ).fetchone()["count"]
        return {"total_count": total, "expired_count": expired}

    def delete_expired_sessions(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE expiration_date < ?", (_now(),))
            return cursor.rowcount

    # =========================================================================
    # Teams
    # =========================================================================

    def create_team(self, name: str) -> Dict:
        team_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute("INSERT INTO teams (id, name, created_at) VALUES (?, ?, ?)", (team_id, name, _now()))
        return {"id": team_id, "name": name}

    def add_team_member(self, team_id: str, user_id: str, role: str = "member") -> None:
        with self._connect() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO team_members (id, team_id, user_id, role) VALUES (?, ?, ?, ?)
            """, (str(uuid.uuid4()), team_id, user_id, role))

    def get_team_id_for_user(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT team_id FROM team_members WHERE user_id = ? LIMIT 1", (user_id,)
            ).fetchone()
        return row["team_id"] if row else None

    # =========================================================================
    # Content
    # =========================================================================

    def upsert_content(self, sanity_id: str, content_type: str, count_view: bool = False) -> Dict:
        """Create the content row for a CMS document, optionally counting a view."""
        with self._connect() as conn:
            cursor = conn.cursor()
            if count_view:
                cursor.execute("""
                    INSERT INTO content (id, sanity_id, type, views, created_at)
                    VALUES (?, ?, ?, 1, ?)
                    ON CONFLICT(sanity_id, type) DO UPDATE SET views = content.views + 1
                """, (str(uuid.uuid4()), sanity_id, content_type, _now()))
            else:
                cursor.execute("""
                    INSERT OR IGNORE INTO content (id, sanity_id, type, views, created_at)
                    VALUES (?, ?, ?, 0, ?)
                """, (str(uuid.uuid4()), sanity_id, content_type, _now()))

            row = cursor.execute(
                "SELECT * FROM content WHERE sanity_id = ? AND type = ?", (sanity_id, content_type)
            ).fetchone()
        return dict(row)

    def get_content_by_sanity_id(self, sanity_id: str, content_type: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM content WHERE sanity_id = ? AND type = ?", (sanity_id, content_type)
            ).fetchone()
        return dict(row) if row else None

    def get_content(self, content_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM content WHERE id = ?", (content_id,)).fetchone()
        return dict(row) if row else None

    # =========================================================================
    # Comments
    # =========================================================================

    def create_comment(self, content_id: str, author_id: str, body: str, parent_id: str = None) -> Dict:
        comment_id = str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO comments (id, body, content_id, author_id, parent_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (comment_id, body, content_id, author_id, parent_id, now, now))
        return {"id": comment_id}

    def get_comment(self, comment_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
        return dict(row) if row else None

    def update_comment_body(self, comment_id: str, body: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE comments SET body = ?, updated_at = ? WHERE id = ?", (body, _now(), comment_id)
            )
            return cursor.rowcount > 0

    def delete_comment(self, comment_id: str) -> bool:
        """Delete a comment; replies, likes and reports cascade."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM comments WHERE id = ?", (comment_id,))
            return cursor.rowcount > 0

    def list_comments(self, content_id: str, parent_id: Optional[str] = None, limit: int = 20) -> List[Dict]:
        """Top-level comments (parent_id None) or replies of a comment, newest first."""
        query = """
            SELECT c.*, u.name AS author_name
            FROM comments c
            LEFT JOIN users u ON u.id = c.author_id
            WHERE c.content_id = ? AND {parent_clause}
            ORDER BY c.created_at DESC
            LIMIT ?
        """
        with self._connect() as conn:
            if parent_id is None:
                cursor = conn.execute(query.format(parent_clause="c.parent_id IS NULL"), (content_id, limit))
            else:
                cursor = conn.execute(query.format(parent_clause="c.parent_id = ?"), (content_id, parent_id, limit))
            return [dict(row) for row in cursor.fetchall()]

    def count_comments(self, content_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM comments WHERE content_id = ?", (content_id,)
            ).fetchone()
        return row["count"]

    # =========================================================================
    # Likes
    # =========================================================================

    def upsert_like(self, user_id: str, content_id: str = None, comment_id: str = None) -> Dict:
        """Create a like with count 1, or increment the existing one."""
        if bool(content_id) == bool(comment_id):
            raise ValueError("Exactly one of content_id or comment_id is required")

        target_column = "content_id" if content_id else "comment_id"
        target_id = content_id or comment_id

        with self._connect() as conn:
            conn.execute(f"""
                INSERT INTO likes (id, count, user_id, {target_column}, created_at)
                VALUES (?, 1, ?, ?, ?)
                ON CONFLICT({target_column}, user_id) DO UPDATE SET count = likes.count + 1
            """, (str(uuid.uuid4()), user_id, target_id, _now()))
            row = conn.execute(
                f"SELECT id, count FROM likes WHERE {target_column} = ? AND user_id = ?",
                (target_id, user_id)
            ).fetchone()
        return dict(row)

    def get_likes(self, content_id: str = None, comment_id: str = None) -> List[Dict]:
        column = "content_id" if content_id else "comment_id"
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT count, user_id FROM likes WHERE {column} = ?", (content_id or comment_id,)
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Content reports (flags)
    # =========================================================================

    def create_report(
        self,
        user_id: str,
        reason: str,
        details: Optional[str] = None,
        content_id: Optional[str] = None,
        comment_id: Optional[str] = None
    ) -> Dict:
        """Insert a PENDING report. Raises sqlite3.IntegrityError on a duplicate."""
        report_id = str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO content_reports (
                    id, reason, details, status, user_id, content_id, comment_id, created_at, updated_at
                ) VALUES (?, ?, ?, 'PENDING', ?, ?, ?, ?, ?)
            """, (report_id, reason, details, user_id, content_id, comment_id, now, now))
        return {"id": report_id, "status": "PENDING"}

    def get_report(self, report_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM content_reports WHERE id = ?", (report_id,)).fetchone()
        return dict(row) if row else None

    def resolve_report(
        self,
        report_id: str,
        status: str,
        resolved_by_id: str,
        admin_notes: Optional[str] = None
    ) -> bool:
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE content_reports
                SET status = ?, admin_notes = ?, resolved_by_id = ?, resolved_at = ?, updated_at = ?
                WHERE id = ?
            """, (status, admin_notes, resolved_by_id, now, now, report_id))
            return cursor.rowcount > 0

    def get_flagger_ids(self, comment_id: str) -> List[str]:
        with self._connect() as conn:
            cursor = conn.execute("SELECT user_id FROM content_reports WHERE comment_id = ?", (comment_id,))
            return [row["user_id"] for row in cursor.fetchall()]

    def list_reports(self, user_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> List[Dict]:
        """Reports newest first with their content and comment, filtered by reporter or status."""
        query = """
            SELECT r.*, c.sanity_id AS content_sanity_id, c.type AS content_type,
                   cm.body AS comment_body
            FROM content_reports r
            LEFT JOIN content c ON c.id = r.content_id
            LEFT JOIN comments cm ON cm.id = r.comment_id
            WHERE 1 = 1
        """
        params: List[Any] = []
        if user_id:
            query += " AND r.user_id = ?"
            params.append(user_id)
        if status:
            query += " AND r.status = ?"
            params.append(status)
        query += " ORDER BY r.created_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        reports = []
        for row in rows:
            reports.append({
                "id": row["id"],
                "reason": row["reason"],
                "details": row["details"],
                "status": row["status"],
                "admin_notes": row["admin_notes"],
                "created_at": row["created_at"],
                "resolved_at": row["resolved_at"],
                "user_id": row["user_id"],
                "content": {
                    "id": row["content_id"],
                    "sanity_id": row["content_sanity_id"],
                    "type": row["content_type"],
                } if row["content_id"] else None,
                "comment": {
                    "id": row["comment_id"],
                    "body": row["comment_body"],
                } if row["comment_id"] else None,
            })
        return reports

    # =========================================================================
    # Bookmarks and tags
    # =========================================================================

    def get_bookmark(self, bookmark_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,)).fetchone()
        return dict(row) if row else None

    def find_bookmark(self, content_id: str, user_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bookmarks WHERE content_id = ? AND user_id = ?", (content_id, user_id)
            ).fetchone()
        return dict(row) if row else None

    def create_bookmark(self, user_id: str, content_id: str, notes: Optional[str] = None) -> Dict:
        bookmark_id = str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO bookmarks (id, notes, user_id, content_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (bookmark_id, notes, user_id, content_id, now, now))
        return {"id": bookmark_id}

    def update_bookmark_notes(self, bookmark_id: str, notes: Optional[str]) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE bookmarks SET notes = ?, updated_at = ? WHERE id = ?", (notes, _now(), bookmark_id)
            )
            return cursor.rowcount > 0

    def delete_bookmark(self, bookmark_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
            return cursor.rowcount > 0

    def get_or_create_tag(self, user_id: str, name: str, color: Optional[str] = None) -> Dict:
        with self._connect() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO tags (id, name, color, is_system, user_id, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
            """, (str(uuid.uuid4()), name, color or DEFAULT_TAG_COLOR, user_id, _now()))
            row = conn.execute(
                "SELECT * FROM tags WHERE name = ? AND user_id = ?", (name, user_id)
            ).fetchone()
        return dict(row)

    def create_system_tag(self, name: str, color: Optional[str] = None, description: Optional[str] = None) -> Dict:
        tag_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO tags (id, name, description, color, is_system, user_id, created_at)
                VALUES (?, ?, ?, ?, 1, NULL, ?)
            """, (tag_id, name, description, color or DEFAULT_TAG_COLOR, _now()))
        return {"id": tag_id, "name": name}

    def get_tag(self, tag_id: str) -> Optional[Dict]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
        return dict(row) if row else None

    def list_tags(self, user_id: str) -> List[Dict]:
        """User-owned tags plus system tags."""
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT id, name, description, color, is_system, user_id
                FROM tags WHERE user_id = ? OR is_system = 1
                ORDER BY is_system DESC, name ASC
            """, (user_id,))
            rows = [dict(row) for row in cursor.fetchall()]
        for data in rows:
            data["is_system"] = bool(data["is_system"])
        return rows

    def delete_tag(self, tag_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM tags WHERE id = ? AND is_system = 0", (tag_id,))
            return cursor.rowcount > 0

    def set_bookmark_tags(self, bookmark_id: str, tag_ids: List[str]) -> None:
        """Replace the bookmark's tag set."""
        now = _now()
        with self._connect() as conn:
            conn.execute("DELETE FROM bookmark_tags WHERE bookmark_id = ?", (bookmark_id,))
            for tag_id in tag_ids:
                conn.execute("""
                    INSERT OR IGNORE INTO bookmark_tags (id, bookmark_id, tag_id, created_at)
                    VALUES (?, ?, ?, ?)
                """, (str(uuid.uuid4()), bookmark_id, tag_id, now))

    def list_bookmarks(self, user_id: str) -> List[Dict]:
        """Bookmarks newest first, with content and tags."""
        bookmarks = []
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT b.id, b.notes, b.created_at,
                       c.id AS content_id, c.sanity_id, c.type, c.views
                FROM bookmarks b
                JOIN content c ON c.id = b.content_id
                WHERE b.user_id = ?
                ORDER BY b.created_at DESC
            """, (user_id,)).fetchall()
            for row in rows:
                tag_rows = conn.execute("""
                    SELECT t.name, t.color FROM bookmark_tags bt
                    JOIN tags t ON t.id = bt.tag_id
                    WHERE bt.bookmark_id = ?
                    ORDER BY t.name ASC
                """, (row["id"],)).fetchall()
                bookmarks.append({
                    "id": row["id"],
                    "notes": row["notes"],
                    "created_at": row["created_at"],
                    "content": {
                        "id": row["content_id"],
                        "sanity_id": row["sanity_id"],
                        "type": row["type"],
                        "views": row["views"],
                    },
                    "tags": [{"name": t["name"], "color": t["color"]} for t in tag_rows],
                })
        return bookmarks

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def upsert_subscription(
        self,
        subscription_id: str,
        status: str,
        sub_type: str,
        plan: str,
        user_id: str,
        team_id: Optional[str] = None,
        current_period_start: Optional[str] = None,
        current_period_end: Optional[str] = None
    ) -> Dict:
        """Insert or update by provider subscription id. A user keeps one subscription."""
        now = _now()
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM subscriptions WHERE user_id = ? AND subscription_id != ?",
                (user_id, subscription_id)
            )
            conn.execute("""
                INSERT INTO subscriptions (
                    id, subscription_id, status, type, plan,
                    current_period_start, current_period_end,
                    user_id, team_id, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(subscription_id) DO UPDATE SET
                    status = excluded.status,
                    type = excluded.type,
                    plan = excluded.plan,
                    current_period_start = COALESCE(excluded.current_period_start, subscriptions.current_period_start),
                    current_period_end = COALESCE(excluded.current_period_end, subscriptions.current_period_end),
                    user_id = excluded.user_id,
                    team_id = excluded.team_id,
                    updated_at = excluded.updated_at
            """, (
                str(uuid.uuid4()), subscription_id, status, sub_type, plan,
                current_period_start, current_period_end,
                user_id, team_id, now, now
            ))
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE subscription_id = ?", (subscription_id,)
            ).fetchone()
        return dict(row)

    def get_subscription_by_user(self, user_id: str, status: Optional[str] = None) -> Optional[Dict]:
        query = "SELECT * FROM subscriptions WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return dict(row) if row else None

    # =========================================================================
    # Assistant conversations
    # =========================================================================

    def find_conversation(self, user_id: str, document_id: Optional[str]) -> Optional[Dict]:
        with self._connect() as conn:
            if document_id is None:
                row = conn.execute(
                    "SELECT * FROM conversations WHERE user_id = ? AND document_id IS NULL "
                    "ORDER BY created_at ASC LIMIT 1",
                    (user_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM conversations WHERE user_id = ? AND document_id = ? "
                    "ORDER BY created_at ASC LIMIT 1",
                    (user_id, document_id)
                ).fetchone()
        if not row:
            return None
        data = dict(row)
        data["metadata"] = json.loads(data["metadata"]) if data["metadata"] else {}
        return data

    def create_conversation(self, user_id: str, document_id: Optional[str] = None, title: Optional[str] = None) -> Dict:
        conversation_id = str(uuid.uuid4())
        now = _now()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO conversations (id, user_id, document_id, title, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (conversation_id, user_id, document_id, title, json.dumps({}), now, now))
        return {
            "id": conversation_id,
            "user_id": user_id,
            "document_id": document_id,
            "title": title,
            "total_input_tokens": 0,
            "total_output_tokens": 0,
            "total_tokens": 0,
            "created_at": now,
        }

    def record_exchange(
        self,
        conversation_id: str,
        user_id: str,
        question: str,
        answer: str,
        input_tokens: int = 0,
        output_tokens: int = 0
    ) -> None:
        """
        Save the user question and assistant answer, then bump token totals on
        the conversation and the user in one transaction.
        """
        total_tokens = input_tokens + output_tokens
        now = _now()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO messages (id, conversation_id, role, content, created_at)
                VALUES (?, ?, 'user', ?, ?)
            """, (str(uuid.uuid4()), conversation_id, question, now))
            conn.execute("""
                INSERT INTO messages (
                    id, conversation_id, role, content,
                    input_tokens, output_tokens, total_tokens, created_at
                ) VALUES (?, ?, 'assistant', ?, ?, ?, ?, ?)
            """, (str(uuid.uuid4()), conversation_id, answer, input_tokens, output_tokens, total_tokens, now))
            conn.execute("""
                UPDATE conversations
                SET total_input_tokens = total_input_tokens + ?,
                    total_output_tokens = total_output_tokens + ?,
                    total_tokens = total_tokens + ?,
                    updated_at = ?
                WHERE id = ?
            """, (input_tokens, output_tokens, total_tokens, now, conversation_id))
            conn.execute("""
                UPDATE users
                SET total_tokens_used = total_tokens_used + ?,
                    monthly_tokens = monthly_tokens + ?
                WHERE id = ?
            """, (total_tokens, total_tokens, user_id))

    def get_conversation_messages(self, conversation_id: str) -> List[Dict]:
        with self._connect() as conn:
            cursor = conn.execute("""
                SELECT role, content, created_at FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, rowid ASC
            """, (conversation_id,))
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Maintenance
    # =========================================================================

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def analyze(self) -> None:
        with self._connect() as conn:
            for table in ("users", "subscriptions", "sessions", "content", "comments"):
                conn.execute(f"ANALYZE {table}")

    def count_rows(self, table: str) -> int:
        if table not in COUNTABLE_TABLES:
            raise ValueError(f"Unknown table: {table}")
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
        return row["count"]


# Singleton instance
_app_db = None


def get_app_db() -> AppDatabase:
    """Get or create the application database instance."""
    global _app_db
    if _app_db is None:
        _app_db = AppDatabase()
    return _app_db
