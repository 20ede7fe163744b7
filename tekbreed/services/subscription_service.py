"""
Subscription Service - checkout, Polar webhooks and the customer portal

Webhook deliveries are signed with the Standard Webhooks scheme: the
`webhook-signature` header carries `v1,<base64 hmac-sha256>` entries over
"<webhook-id>.<webhook-timestamp>.<raw body>".
"""

import base64
import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable

from tekbreed.database.app_db import get_app_db
from tekbreed.services.polar_client import get_polar_client
from tekbreed.utils.audit_logger import (
    get_audit_logger, AuditCategory, AuditModule, AuditSeverity, EntityType
)
from tekbreed.utils.errors import invariant, NotFoundError, ValidationError
from tekbreed.utils.retry import with_retry

WEBHOOK_TOLERANCE_SECONDS = 5 * 60

PLAN_MAP = {
    "basic": "basic",
    "premium": "premium",
    "pro": "pro",
    "team_starter": "team_starter",
    "team_pro": "team_pro",
    "team_enterprise": "team_enterprise",
}

SUBSCRIPTION_EVENTS = (
    "subscription.created",
    "subscription.updated",
    "subscription.active",
    "subscription.canceled",
    "subscription.uncanceled",
    "subscription.revoked",
)


class WebhookVerificationError(Exception):
    """Raised when a webhook delivery fails signature verification."""


def _signing_key(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        return base64.b64decode(secret[len("whsec_"):])
    return secret.encode("utf-8")


def verify_webhook_signature(
    body: bytes,
    headers: Dict[str, str],
    secret: str,
    now: Optional[float] = None
) -> None:
    """
    Verify a Standard Webhooks delivery.

    Raises:
        WebhookVerificationError: missing headers, stale timestamp or bad signature
    """
    if not secret:
        raise WebhookVerificationError("Webhook secret is not configured")

    lowered = {k.lower(): v for k, v in headers.items()}
    msg_id = lowered.get("webhook-id")
    timestamp = lowered.get("webhook-timestamp")
    signature_header = lowered.get("webhook-signature")
    if not (msg_id and timestamp and signature_header):
        raise WebhookVerificationError("Missing required webhook headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookVerificationError("Invalid webhook timestamp")

    current = int(now if now is not None else time.time())
    if abs(current - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
        raise WebhookVerificationError("Webhook timestamp is outside the tolerance window")

    signed_content = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(
        hmac.new(_signing_key(secret), signed_content, hashlib.sha256).digest()
    ).decode("utf-8")

    for entry in signature_header.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return

    raise WebhookVerificationError("No matching webhook signature")


def plan_from_product_name(product_name: str) -> str:
    """'Team Pro' -> 'team_pro'. Unknown names fall back to basic."""
    key = product_name.lower().strip().replace(" ", "_", 1)
    return PLAN_MAP.get(key, "basic")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# In-memory delivery metrics (per process)
_webhook_metrics = {
    "total_received": 0,
    "successful": 0,
    "failed": 0,
    "last_processed_at": _now_iso(),
}

_portal_metrics = {
    "total_accesses": 0,
    "successful_accesses": 0,
    "failed_accesses": 0,
    "last_accessed_at": _now_iso(),
}


def get_webhook_metrics() -> Dict[str, Any]:
    return dict(_webhook_metrics)


def get_portal_metrics() -> Dict[str, Any]:
    return dict(_portal_metrics)


class SubscriptionService:
    """Billing flows on top of the Polar API and the local subscriptions table."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    @property
    def db(self):
        return get_app_db()

    @property
    def polar(self):
        return get_polar_client()

    # =========================================================================
    # Checkout
    # =========================================================================

    def create_checkout(self, user: Dict[str, Any], products: List[str], group: str, domain_url: str) -> Dict[str, Any]:
        invariant(products and group, "Products and group are required")
        invariant(group in ("individual", "team"), f"Invalid subscription group: {group}")

        is_team = group == "team"
        team_id = self.db.get_team_id_for_user(user["id"]) if is_team else None

        session = self.polar.create_checkout_session(
            products=products,
            success_url=f"{domain_url}/subscription/success?checkout_id={{CHECKOUT_ID}}",
            customer_email=user.get("email"),
            customer_name=user.get("name"),
            is_business_customer=is_team,
            user_id=user["id"],
            team_id=team_id,
        )
        print(f"[Subscription] Checkout created for user {user['id']} ({group})")
        return {"url": session["url"], "checkout_id": session.get("id")}

    # =========================================================================
    # Webhooks
    # =========================================================================

    def _record_webhook(self, event: str, data: Any, success: bool, error: Optional[Exception] = None):
        entity_id = data.get("id") if isinstance(data, dict) else None
        get_audit_logger().log_event(
            action=f"WEBHOOK_{event.upper()}",
            category=AuditCategory.BILLING,
            module=AuditModule.SUBSCRIPTION,
            description=f"Webhook {event} {'processed' if success else 'failed'}",
            entity_type=EntityType.SUBSCRIPTION,
            entity_id=entity_id,
            severity=AuditSeverity.INFO if success else AuditSeverity.ERROR,
            metadata={"event": event, "success": success, "error": str(error) if error else None},
        )

        _webhook_metrics["total_received"] += 1
        if success:
            _webhook_metrics["successful"] += 1
        else:
            _webhook_metrics["failed"] += 1
        _webhook_metrics["last_processed_at"] = _now_iso()

    def _retry(self, operation, name: str):
        return with_retry(operation, name, sleep=self.sleep)

    def handle_webhook(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch a verified webhook payload. Handler errors are re-raised."""
        event_type = event.get("type")
        data = event.get("data") or {}

        self._record_webhook("payload_received", data, True)
        print(f"[Subscription] Webhook received: {event_type} {data.get('id')}")

        if event_type in SUBSCRIPTION_EVENTS:
            self.on_subscription_updated(data)
        elif event_type == "customer.created":
            self.on_customer_created(data)
        elif event_type == "customer.deleted":
            self.on_customer_deleted(data)

        return {"received": True, "type": event_type}

    def on_subscription_updated(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            invariant(data.get("id"), "Subscription ID is required")
            product = data.get("product") or {}
            invariant(product.get("name"), "Product name is required")

            metadata = data.get("metadata") or {}
            user_id = metadata.get("userId")
            team_id = metadata.get("teamId") or None
            invariant(user_id, "User ID is required")

            status = data.get("status", "active")
            row = self._retry(
                lambda: self.db.upsert_subscription(
                    subscription_id=data["id"],
                    status=status,
                    sub_type="team" if team_id else "individual",
                    plan=plan_from_product_name(product["name"]),
                    user_id=user_id,
                    team_id=team_id,
                    current_period_start=data.get("current_period_start"),
                    current_period_end=data.get("current_period_end"),
                ),
                f"subscription upsert for {data['id']}"
            )
            self.db.set_subscribed(user_id, status == "active")

            self._record_webhook("subscription_updated", data, True)
            print(f"[Subscription] Subscription updated successfully: {data['id']}")
            return row
        except Exception as e:
            self._record_webhook("subscription_updated", data, False, e)
            print(f"[Subscription] Error updating subscription: {e}")
            raise

    def on_customer_created(self, data: Dict[str, Any]) -> None:
        try:
            invariant(data.get("id"), "Customer ID is required")
            invariant(data.get("external_id"), "Customer external ID is required")

            def link_customer():
                if not self.db.set_polar_customer_id(data["external_id"], data["id"]):
                    raise NotFoundError(f"User {data['external_id']} not found")

            self._retry(link_customer, f"customer created for {data['id']}")

            self._record_webhook("customer_created", data, True)
            print(f"[Subscription] Updated user with Polar customer ID: {data['id']}")
        except Exception as e:
            self._record_webhook("customer_created", data, False, e)
            print(f"[Subscription] Error updating user with Polar customer ID: {e}")
            raise

    def on_customer_deleted(self, data: Dict[str, Any]) -> None:
        try:
            invariant(data.get("id"), "Customer ID is required")

            def delete_customer():
                if not self.db.delete_user_by_polar_customer_id(data["id"]):
                    raise NotFoundError(f"No user with Polar customer ID {data['id']}")

            self._retry(delete_customer, f"customer deleted for {data['id']}")

            self._record_webhook("customer_deleted", data, True)
            print(f"[Subscription] Customer deleted successfully: {data['id']}")
        except Exception as e:
            self._record_webhook("customer_deleted", data, False, e)
            print(f"[Subscription] Error deleting customer: {e}")
            raise

    # =========================================================================
    # Customer portal
    # =========================================================================

    def _record_portal_access(self, user_id: str, success: bool, error: Optional[Exception] = None):
        get_audit_logger().log_event(
            action="PORTAL_ACCESS",
            category=AuditCategory.BILLING,
            module=AuditModule.SUBSCRIPTION,
            description=f"Customer portal access {'granted' if success else 'failed'}",
            entity_type=EntityType.USER,
            actor_id=user_id,
            entity_id=user_id,
            severity=AuditSeverity.INFO if success else AuditSeverity.WARNING,
            metadata={"success": success, "error": str(error) if error else None},
        )

        _portal_metrics["total_accesses"] += 1
        if success:
            _portal_metrics["successful_accesses"] += 1
        else:
            _portal_metrics["failed_accesses"] += 1
        _portal_metrics["last_accessed_at"] = _now_iso()

    def create_portal_session(self, user_id: str) -> Dict[str, Any]:
        try:
            subscription = self.db.get_subscription_by_user(user_id, status="active")
            if not subscription:
                raise ValidationError("No active subscription found")

            user = self.db.get_user(user_id)
            if not user or not user.get("polar_customer_id"):
                raise ValidationError("No Polar customer ID found")

            session = self.polar.create_customer_session(user["polar_customer_id"])
        except Exception as e:
            self._record_portal_access(user_id, False, e)
            raise

        self._record_portal_access(user_id, True)
        return {"url": session.get("customer_portal_url") or session.get("url")}


# Singleton instance
_subscription_service = None


def get_subscription_service() -> SubscriptionService:
    global _subscription_service
    if _subscription_service is None:
        _subscription_service = SubscriptionService()
    return _subscription_service
