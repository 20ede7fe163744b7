"""
Audit Logger - Structured event logging backed by the audit log table

Every event is persisted and echoed to the console. Logging never raises:
when the database write fails the event is printed instead.
"""

import sys
import json
import traceback
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from tekbreed.config import Config
from tekbreed.database.audit_log_db import get_audit_log_storage


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditCategory(str, Enum):
    SYSTEM = "SYSTEM"
    USER_ACTION = "USER_ACTION"
    ADMIN_ACTION = "ADMIN_ACTION"
    BILLING = "BILLING"
    SECURITY = "SECURITY"


class AuditModule(str, Enum):
    SYSTEM = "SYSTEM"
    CONTENT = "CONTENT"
    COMMENT = "COMMENT"
    PROFILE = "PROFILE"
    SUBSCRIPTION = "SUBSCRIPTION"
    EMAIL = "EMAIL"
    CHAT = "CHAT"


class EntityType(str, Enum):
    USER = "USER"
    TEAM = "TEAM"
    SYSTEM = "SYSTEM"
    CONTENT = "CONTENT"
    COMMENT = "COMMENT"
    LIKE = "LIKE"
    REVIEW = "REVIEW"
    ENROLLMENT = "ENROLLMENT"
    CERTIFICATE = "CERTIFICATE"
    SUBSCRIPTION = "SUBSCRIPTION"


class SystemAction(str, Enum):
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    SYSTEM_UPDATE = "SYSTEM_UPDATE"
    SYSTEM_ERROR = "SYSTEM_ERROR"


def _value(item):
    return item.value if isinstance(item, Enum) else item


class AuditLogger:
    """Logger for TekBreed audit events."""

    def __init__(self):
        self._storage = None

    @property
    def storage(self):
        """Lazy-load storage to avoid import-time database creation."""
        if self._storage is None:
            self._storage = get_audit_log_storage()
        return self._storage

    # =========================================================================
    # Generic events
    # =========================================================================

    def log_event(
        self,
        action: str,
        category,
        module,
        description: str,
        entity_type,
        severity=AuditSeverity.INFO,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        retention_days: int = Config.LOG_RETENTION_DAYS
    ):
        """Persist an audit event and echo it to the console."""
        entry = {
            "action": _value(action),
            "category": _value(category),
            "module": _value(module),
            "description": description,
            "severity": _value(severity),
            "actor_id": actor_id,
            "entity_type": _value(entity_type),
            "entity_id": entity_id,
            "metadata": metadata,
        }
        try:
            self.storage.insert_event(
                ip_address=ip_address,
                user_agent=user_agent,
                retention_days=retention_days,
                **entry
            )
        except Exception as e:
            print(f"[AuditLog] Failed to log event to database: {e}")
            print(f"[AuditLog] Event details: {json.dumps(entry, default=str)}")
            return

        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
        line = f"[AuditLog] {json.dumps(entry, default=str)}"
        if entry["severity"] in (AuditSeverity.ERROR.value, AuditSeverity.CRITICAL.value):
            print(line, file=sys.stderr)
        else:
            print(line)

    def log_system_event(
        self,
        action,
        description: str,
        severity=AuditSeverity.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ):
        """Log an event raised by the platform itself (no actor)."""
        self.log_event(
            action=action,
            category=AuditCategory.SYSTEM,
            module=AuditModule.SYSTEM,
            description=description,
            entity_type=EntityType.SYSTEM,
            severity=severity,
            metadata=metadata
        )

    # =========================================================================
    # Simple logging methods (component-scoped)
    # =========================================================================

    def log_info(self, component: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.log_system_event(
            SystemAction.SYSTEM_UPDATE,
            f"[{component}] {message}",
            AuditSeverity.INFO,
            metadata
        )

    def log_warning(self, component: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        self.log_system_event(
            SystemAction.SYSTEM_UPDATE,
            f"[{component}] {message}",
            AuditSeverity.WARNING,
            metadata
        )

    def log_error(
        self,
        component: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc_info: bool = False
    ):
        metadata = dict(metadata or {})
        if exc_info:
            metadata["stack_trace"] = traceback.format_exc()
        self.log_system_event(
            SystemAction.SYSTEM_ERROR,
            f"[{component}] {message}",
            AuditSeverity.ERROR,
            metadata
        )


# Singleton instance
_audit_logger = None


def get_audit_logger() -> AuditLogger:
    """Get or create the audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
