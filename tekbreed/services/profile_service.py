"""
Profile Service - account actions dispatched by intent, plus the loaders
behind the profile page.
"""

from typing import Optional, Dict, Any, List

from tekbreed.database.app_db import get_app_db
from tekbreed.services.polar_client import get_polar_client
from tekbreed.utils.audit_logger import (
    get_audit_logger, AuditCategory, AuditModule, EntityType
)
from tekbreed.utils.errors import invariant, invariant_response, NotFoundError, ValidationError

ACCOUNT_INFORMATION_INTENT = "update-account-information"
UPDATE_NOTIFICATIONS_INTENT = "update-notifications"
SIGNOUT_SESSIONS_INTENT = "signout-sessions"
DELETE_USER_INTENT = "delete-user"

NOTIFICATION_FIELDS = {
    "contentUpdate": "content_update",
    "promotions": "promotions",
    "communityEvents": "community_events",
    "allNotifications": "all_notifications",
}


class ProfileService:

    @property
    def db(self):
        return get_app_db()

    def handle_intent(
        self,
        intent: str,
        user_id: str,
        data: Dict[str, Any],
        session_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if intent == ACCOUNT_INFORMATION_INTENT:
            return self.update_account_information(user_id, data.get("name"))
        if intent == UPDATE_NOTIFICATIONS_INTENT:
            return self.update_notifications(user_id, data)
        if intent == SIGNOUT_SESSIONS_INTENT:
            return self.signout_other_sessions(user_id, session_id)
        if intent == DELETE_USER_INTENT:
            return self.delete_user(user_id)
        raise ValidationError("Invalid Intent")

    def update_account_information(self, user_id: str, name: Optional[str]) -> Dict[str, Any]:
        invariant(name and name.strip(), "Name is required")
        if not self.db.update_user_name(user_id, name.strip()):
            raise ValidationError("Failed to save changes, please try again.")
        return {"intent": ACCOUNT_INFORMATION_INTENT, "user": {"id": user_id, "name": name.strip()}}

    def update_notifications(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        settings = {column: bool(data.get(field, False)) for field, column in NOTIFICATION_FIELDS.items()}
        if not self.db.update_notification_settings(user_id, **settings):
            raise ValidationError("Failed to save changes, please try again.")
        return {"intent": UPDATE_NOTIFICATIONS_INTENT, "notification_settings": settings}

    def signout_other_sessions(self, user_id: str, session_id: Optional[str]) -> Dict[str, Any]:
        invariant_response(
            session_id,
            "You must be authenticated to sign out of other sessions",
            status_code=401
        )
        deleted = self.db.delete_other_sessions(user_id, session_id)
        return {"intent": SIGNOUT_SESSIONS_INTENT, "deleted_sessions": deleted}

    def delete_user(self, user_id: str) -> Dict[str, Any]:
        if not self.db.delete_user(user_id):
            raise NotFoundError("User not found")
        get_audit_logger().log_event(
            action="USER_DELETED",
            category=AuditCategory.USER_ACTION,
            module=AuditModule.PROFILE,
            description="User deleted their account",
            entity_type=EntityType.USER,
            actor_id=user_id,
            entity_id=user_id,
        )
        return {"intent": DELETE_USER_INTENT, "deleted": True}

    # =========================================================================
    # Loaders
    # =========================================================================

    def get_user_profile(self, user_id: str) -> Dict[str, Any]:
        user = self.db.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return {
            "id": user["id"],
            "name": user["name"],
            "email": user["email"],
            "is_subscribed": bool(user["is_subscribed"]),
            "notification_settings": self.db.get_notification_settings(user_id),
            "active_sessions": self.db.count_active_sessions(user_id),
        }

    def get_bookmarks(self, user_id: str) -> List[Dict[str, Any]]:
        return self.db.list_bookmarks(user_id)

    def get_reports(self, user_id: str) -> List[Dict[str, Any]]:
        reports = self.db.list_reports(user_id=user_id)
        for report in reports:
            report.pop("admin_notes", None)
            report.pop("user_id", None)
        return reports

    def get_subscription(self, user_id: str) -> Optional[Dict[str, Any]]:
        subscription = self.db.get_subscription_by_user(user_id)
        if not subscription:
            return None
        return get_polar_client().get_subscription(subscription["subscription_id"])


# Singleton instance
_profile_service = None


def get_profile_service() -> ProfileService:
    global _profile_service
    if _profile_service is None:
        _profile_service = ProfileService()
    return _profile_service
