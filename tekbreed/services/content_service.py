"""
Content Service - comments, replies, upvotes, views, flags and bookmarks
for CMS-backed content.

`item_id` is the Sanity document id for content-level operations and the
comment id for comment-level ones. Content rows are created lazily the
first time anyone interacts with a document.
"""

import sqlite3
from typing import Optional, Dict, Any, List

from tekbreed.database.app_db import get_app_db, CONTENT_TYPES, REPORT_STATUSES
from tekbreed.middleware.rbac import has_permission
from tekbreed.middleware.jwt_middleware import user_id_from_claims
from tekbreed.utils.audit_logger import (
    get_audit_logger, AuditCategory, AuditModule, AuditSeverity, EntityType
)
from tekbreed.utils.errors import (
    invariant, invariant_response, NotFoundError, ConflictError, ValidationError
)
from tekbreed.utils.markdown_converter import to_markdown, to_html

# intent -> (target, content type)
FLAG_INTENTS = {
    "flag-article": ("content", "ARTICLE"),
    "flag-tutorial": ("content", "TUTORIAL"),
    "flag-comment": ("comment", None),
    "flag-reply": ("reply", None),
}


def normalize_content_type(content_type: str) -> str:
    normalized = (content_type or "").upper()
    invariant(normalized in CONTENT_TYPES, f"Invalid content type: {content_type}")
    return normalized


class ContentService:

    @property
    def db(self):
        return get_app_db()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_comment(self, comment_id: str, label: str = "Comment") -> Dict[str, Any]:
        comment = self.db.get_comment(comment_id) if comment_id else None
        if not comment:
            raise NotFoundError(f"{label} not found")
        return comment

    def _get_reply(self, reply_id: str) -> Dict[str, Any]:
        reply = self._get_comment(reply_id, "Reply")
        invariant(reply["parent_id"], "This is not a reply")
        return reply

    def _require_permission(self, current_user: dict, permission: str, owner_id: str, message: str):
        invariant_response(
            has_permission(current_user, permission, owner_id),
            message,
            status_code=403
        )

    def _log_moderation(self, current_user: dict, action: str, entity_type: EntityType, entity_id: str, owner_id: str):
        """Record edits/deletes performed on someone else's comment."""
        actor_id = user_id_from_claims(current_user)
        if str(actor_id) == str(owner_id):
            return
        get_audit_logger().log_event(
            action=action,
            category=AuditCategory.ADMIN_ACTION,
            module=AuditModule.COMMENT,
            description=f"{action} by moderator on content owned by {owner_id}",
            entity_type=entity_type,
            actor_id=actor_id,
            entity_id=entity_id,
            severity=AuditSeverity.WARNING,
        )

    # =========================================================================
    # Comments and replies
    # =========================================================================

    def add_comment(self, item_id: str, body: str, user_id: str, content_type: str = "TUTORIAL") -> Dict[str, Any]:
        invariant(body, "Comment body is required to add a comment")
        invariant(item_id, "Item ID is required to add a comment")
        content = self.db.upsert_content(item_id, normalize_content_type(content_type))
        return self.db.create_comment(content["id"], user_id, to_markdown(body))

    def add_reply(
        self,
        item_id: str,
        body: str,
        user_id: str,
        parent_id: str,
        content_type: str = "TUTORIAL"
    ) -> Dict[str, Any]:
        invariant(parent_id, "Parent ID is required to reply to a comment")
        invariant(body, "Reply content is required to add a reply")
        invariant(item_id, "Item ID is required to reply to a comment")
        invariant(user_id, "User ID is required to reply to a comment")

        content = self.db.upsert_content(item_id, normalize_content_type(content_type))
        parent = self._get_comment(parent_id, "Parent comment")
        invariant(parent["content_id"] == content["id"], "Parent comment belongs to different content")

        return self.db.create_comment(content["id"], user_id, to_markdown(body), parent_id=parent_id)

    def update_comment(self, current_user: dict, item_id: str, body: str) -> Dict[str, Any]:
        invariant(body, "Comment body is required")
        comment = self._get_comment(item_id)
        self._require_permission(
            current_user, "UPDATE:COMMENT:OWN", comment["author_id"],
            "Unauthorized: You don't have permission to update this comment"
        )
        self.db.update_comment_body(item_id, to_markdown(body))
        self._log_moderation(current_user, "COMMENT_UPDATED", EntityType.COMMENT, item_id, comment["author_id"])
        return {"id": item_id}

    def delete_comment(self, current_user: dict, item_id: str) -> Dict[str, Any]:
        comment = self._get_comment(item_id)
        self._require_permission(
            current_user, "DELETE:COMMENT:OWN", comment["author_id"],
            "Unauthorized: You don't have permission to delete this comment"
        )
        self.db.delete_comment(item_id)
        self._log_moderation(current_user, "COMMENT_DELETED", EntityType.COMMENT, item_id, comment["author_id"])
        return {"success": True}

    def update_reply(self, current_user: dict, item_id: str, body: str) -> Dict[str, Any]:
        invariant(body, "Reply body is required")
        reply = self._get_reply(item_id)
        self._require_permission(
            current_user, "UPDATE:REPLY:OWN", reply["author_id"],
            "Unauthorized: You don't have permission to update this reply"
        )
        self.db.update_comment_body(item_id, to_markdown(body))
        self._log_moderation(current_user, "REPLY_UPDATED", EntityType.COMMENT, item_id, reply["author_id"])
        return {"id": item_id}

    def delete_reply(self, current_user: dict, item_id: str) -> Dict[str, Any]:
        reply = self._get_reply(item_id)
        self._require_permission(
            current_user, "DELETE:REPLY:OWN", reply["author_id"],
            "Unauthorized: You don't have permission to delete this reply"
        )
        self.db.delete_comment(item_id)
        self._log_moderation(current_user, "REPLY_DELETED", EntityType.COMMENT, item_id, reply["author_id"])
        return {"success": True}

    # =========================================================================
    # Upvotes and views
    # =========================================================================

    def upvote_comment(self, item_id: str, user_id: str) -> Dict[str, Any]:
        invariant(item_id, "Item ID is required")
        invariant(user_id, "User ID is required")
        self._get_comment(item_id)
        return self.db.upsert_like(user_id, comment_id=item_id)

    def upvote_reply(self, item_id: str, user_id: str) -> Dict[str, Any]:
        invariant(item_id, "Item ID is required")
        invariant(user_id, "User ID is required")
        self._get_reply(item_id)
        return self.db.upsert_like(user_id, comment_id=item_id)

    def upvote_content(self, item_id: str, user_id: str, content_type: str) -> Dict[str, Any]:
        invariant(item_id, "Item ID is required")
        invariant(user_id, "User ID is required")
        content = self.db.upsert_content(item_id, normalize_content_type(content_type))
        return self.db.upsert_like(user_id, content_id=content["id"])

    def track_page_view(self, item_id: str, content_type: str) -> Dict[str, Any]:
        invariant(item_id, "Item ID is required")
        content = self.db.upsert_content(item_id, normalize_content_type(content_type), count_view=True)
        return {"id": content["id"], "views": content["views"]}

    def get_content_metrics(self, item_id: str, content_type: str) -> Optional[Dict[str, Any]]:
        content = self.db.get_content_by_sanity_id(item_id, normalize_content_type(content_type))
        if not content:
            return None
        likes = self.db.get_likes(content_id=content["id"])
        return {
            "id": content["id"],
            "views": content["views"],
            "likes": likes,
            "like_count": len(likes),
            "comment_count": self.db.count_comments(content["id"]),
        }

    # =========================================================================
    # Comment listing
    # =========================================================================

    def _present_comment(self, comment: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": comment["id"],
            "body": comment["body"],
            "markdown": comment["body"],
            "html": to_html(comment["body"]),
            "created_at": comment["created_at"],
            "author_id": comment["author_id"],
            "parent_id": comment["parent_id"],
            "content_id": comment["content_id"],
            "author": {"id": comment["author_id"], "name": comment.get("author_name")},
            "likes": self.db.get_likes(comment_id=comment["id"]),
            "flags": self.db.get_flagger_ids(comment["id"]),
        }

    def get_comments(
        self,
        item_id: str,
        content_type: str,
        comment_take: int = 10,
        reply_take: int = 5
    ) -> List[Dict[str, Any]]:
        """Top-level comments newest first, each with its newest replies."""
        content = self.db.get_content_by_sanity_id(item_id, normalize_content_type(content_type))
        if not content:
            return []

        comments = []
        for comment in self.db.list_comments(content["id"], limit=comment_take):
            item = self._present_comment(comment)
            item["replies"] = [
                self._present_comment(reply)
                for reply in self.db.list_comments(content["id"], parent_id=comment["id"], limit=reply_take)
            ]
            comments.append(item)
        return comments

    # =========================================================================
    # Flags / reports
    # =========================================================================

    def flag_content(
        self,
        intent: str,
        item_id: str,
        user_id: str,
        reason: str,
        details: Optional[str] = None
    ) -> Dict[str, Any]:
        invariant(intent in FLAG_INTENTS, f"Invalid flag intent: {intent}")
        invariant(item_id, "Item ID is required")
        invariant(reason and reason.strip(), "A reason is required to report content")

        target, content_type = FLAG_INTENTS[intent]
        if target == "content":
            content = self.db.upsert_content(item_id, content_type)
            label = content_type.lower()
            kwargs = {"content_id": content["id"]}
        elif target == "reply":
            self._get_reply(item_id)
            label = "reply"
            kwargs = {"comment_id": item_id}
        else:
            self._get_comment(item_id)
            label = "comment"
            kwargs = {"comment_id": item_id}

        try:
            report = self.db.create_report(user_id, reason.strip(), details, **kwargs)
        except sqlite3.IntegrityError:
            raise ConflictError(f"You have already reported this {label}")

        get_audit_logger().log_event(
            action="CONTENT_REPORTED",
            category=AuditCategory.USER_ACTION,
            module=AuditModule.CONTENT,
            description=f"User reported a {label}",
            entity_type=EntityType.CONTENT if target == "content" else EntityType.COMMENT,
            actor_id=user_id,
            entity_id=kwargs.get("content_id") or kwargs.get("comment_id"),
            metadata={"reason": reason.strip(), "report_id": report["id"]},
        )
        return report

    def resolve_report(
        self,
        report_id: str,
        resolver_id: str,
        status: str,
        admin_notes: Optional[str] = None
    ) -> Dict[str, Any]:
        status = (status or "").upper()
        invariant(status in REPORT_STATUSES and status != "PENDING", f"Invalid report status: {status}")
        report = self.db.get_report(report_id)
        if not report:
            raise NotFoundError("Report not found")

        self.db.resolve_report(report_id, status, resolver_id, admin_notes)
        get_audit_logger().log_event(
            action="REPORT_RESOLVED",
            category=AuditCategory.ADMIN_ACTION,
            module=AuditModule.CONTENT,
            description=f"Report marked {status}",
            entity_type=EntityType.CONTENT,
            actor_id=resolver_id,
            entity_id=report_id,
            metadata={"status": status},
        )
        return {"id": report_id, "status": status}

    # =========================================================================
    # Bookmarks and tags
    # =========================================================================

    def _resolve_tag_ids(self, user_id: str, tags: Optional[List[str]]) -> List[str]:
        tag_ids = []
        for name in tags or []:
            name = name.strip()
            if name:
                tag_ids.append(self.db.get_or_create_tag(user_id, name)["id"])
        return tag_ids

    def toggle_bookmark(
        self,
        item_id: str,
        content_type: str,
        user_id: str,
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Create a bookmark for the content, or remove it if it already exists."""
        invariant(item_id, "Item ID is required")
        content = self.db.upsert_content(item_id, normalize_content_type(content_type))

        existing = self.db.find_bookmark(content["id"], user_id)
        if existing:
            self.db.delete_bookmark(existing["id"])
            return {"bookmarked": False, "id": existing["id"]}

        bookmark = self.db.create_bookmark(user_id, content["id"], notes)
        tag_ids = self._resolve_tag_ids(user_id, tags)
        if tag_ids:
            self.db.set_bookmark_tags(bookmark["id"], tag_ids)
        return {"bookmarked": True, "id": bookmark["id"]}

    def update_bookmark(
        self,
        bookmark_id: str,
        user_id: str,
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        bookmark = self.db.get_bookmark(bookmark_id)
        if not bookmark:
            raise NotFoundError("Bookmark not found")
        invariant_response(
            str(bookmark["user_id"]) == str(user_id),
            "Unauthorized: You don't have permission to update this bookmark",
            status_code=403
        )

        self.db.update_bookmark_notes(bookmark_id, notes)
        self.db.set_bookmark_tags(bookmark_id, self._resolve_tag_ids(user_id, tags))
        return {"id": bookmark_id}

    def list_tags(self, user_id: str) -> List[Dict[str, Any]]:
        return self.db.list_tags(user_id)

    def create_tag(self, user_id: str, name: str, color: Optional[str] = None) -> Dict[str, Any]:
        invariant(name and name.strip(), "Tag name is required")
        return self.db.get_or_create_tag(user_id, name.strip(), color)

    def delete_tag(self, current_user: dict, tag_id: str) -> Dict[str, Any]:
        tag = self.db.get_tag(tag_id)
        if not tag:
            raise NotFoundError("Tag not found")
        if tag["is_system"]:
            raise ValidationError("System tags cannot be deleted")
        self._require_permission(
            current_user, "DELETE:TAG:OWN", tag["user_id"],
            "Unauthorized: You don't have permission to delete this tag"
        )
        self.db.delete_tag(tag_id)
        return {"success": True}


# Singleton instance
_content_service = None


def get_content_service() -> ContentService:
    global _content_service
    if _content_service is None:
        _content_service = ContentService()
    return _content_service
