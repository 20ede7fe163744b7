"""Checkout, Polar webhooks and the customer portal."""
import asyncio
import base64
import hashlib
import hmac
import json
import time

import pytest

from conftest import test_case, USER_ID, TEST_WEBHOOK_SECRET
from tekbreed.database.app_db import get_app_db
from tekbreed.services.subscription_service import (
    get_subscription_service,
    get_webhook_metrics,
    get_portal_metrics,
    plan_from_product_name,
    verify_webhook_signature,
    WebhookVerificationError,
)

SIGNING_KEY = b"tekbreed-webhook-secret"


def _sign(body: bytes, msg_id: str, timestamp: str, key: bytes = SIGNING_KEY) -> str:
    digest = hmac.new(key, f"{msg_id}.{timestamp}.".encode("utf-8") + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def _webhook_headers(body: bytes, msg_id: str = "msg_1", timestamp: int = None) -> dict:
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return {
        "webhook-id": msg_id,
        "webhook-timestamp": ts,
        "webhook-signature": f"v1,{_sign(body, msg_id, ts)}",
        "content-type": "application/json",
    }


def _post_webhook(client, event: dict):
    body = json.dumps(event).encode("utf-8")
    return client.post("/subscription/webhook", content=body, headers=_webhook_headers(body))


def _subscription_event(event_type="subscription.updated", status="active", user_id=USER_ID, **overrides):
    data = {
        "id": "sub_123",
        "status": status,
        "product": {"name": "Team Pro"},
        "metadata": {"userId": user_id},
        "current_period_start": "2026-10-01T00:00:00+00:00",
        "current_period_end": "2026-11-01T00:00:00+00:00",
    }
    data.update(overrides)
    return {"type": event_type, "data": data}


# ══════════════════════════════════════════════════════════════════════════════
# SIGNATURES
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-SUB-001",
    priority="Critical",
    module="Subscription",
    title="Webhook signatures are verified over id, timestamp and raw body",
)
def test_verify_webhook_signature_accepts_valid_delivery():
    body = b'{"type":"subscription.created"}'
    headers = _webhook_headers(body, timestamp=1_700_000_000)
    verify_webhook_signature(body, headers, TEST_WEBHOOK_SECRET, now=1_700_000_100)


def test_verify_webhook_signature_accepts_any_matching_entry():
    body = b"{}"
    headers = _webhook_headers(body, timestamp=1_700_000_000)
    headers["webhook-signature"] = "v1,bm90LXRoaXMtb25l " + headers["webhook-signature"]
    verify_webhook_signature(body, headers, TEST_WEBHOOK_SECRET, now=1_700_000_000)


def test_verify_webhook_signature_with_plain_secret():
    body = b"{}"
    headers = {
        "Webhook-Id": "msg_9",
        "Webhook-Timestamp": "1700000000",
        "Webhook-Signature": "v1," + _sign(body, "msg_9", "1700000000", key=b"plain-secret"),
    }
    verify_webhook_signature(body, headers, "plain-secret", now=1_700_000_000)


@pytest.mark.parametrize("mutate, message", [
    (lambda h: h.pop("webhook-id"), "Missing required webhook headers"),
    (lambda h: h.update({"webhook-timestamp": "yesterday"}), "Invalid webhook timestamp"),
    (lambda h: h.update({"webhook-signature": "v1,AAAA"}), "No matching webhook signature"),
])
def test_verify_webhook_signature_rejects(mutate, message):
    body = b"{}"
    headers = _webhook_headers(body, timestamp=1_700_000_000)
    mutate(headers)
    with pytest.raises(WebhookVerificationError, match=message):
        verify_webhook_signature(body, headers, TEST_WEBHOOK_SECRET, now=1_700_000_000)


def test_verify_webhook_signature_rejects_stale_timestamp():
    body = b"{}"
    headers = _webhook_headers(body, timestamp=1_700_000_000)
    with pytest.raises(WebhookVerificationError, match="tolerance"):
        verify_webhook_signature(body, headers, TEST_WEBHOOK_SECRET, now=1_700_000_000 + 301)


def test_verify_webhook_signature_requires_secret():
    with pytest.raises(WebhookVerificationError):
        verify_webhook_signature(b"{}", _webhook_headers(b"{}"), "")


@pytest.mark.parametrize("name, plan", [
    ("Team Pro", "team_pro"),
    ("Premium", "premium"),
    ("team enterprise", "team_enterprise"),
    ("Lifetime Deal", "basic"),
])
def test_plan_from_product_name(name, plan):
    assert plan_from_product_name(name) == plan


# ══════════════════════════════════════════════════════════════════════════════
# WEBHOOK ROUTE
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-SUB-002",
    priority="Critical",
    module="Subscription",
    title="Subscription webhook upserts the subscription and marks the user subscribed",
    steps=[
        {"step": "POST a signed subscription.updated webhook", "expected": "202 Accepted"},
        {"step": "Load the subscription row", "expected": "Plan team_pro, status active"},
        {"step": "Load the user", "expected": "is_subscribed set"},
    ]
)
def test_subscription_webhook_updates_subscription(client):
    get_app_db().upsert_user(USER_ID, "learner@tekbreed.com", "Regular User")

    response = _post_webhook(client, _subscription_event())

    assert response.status_code == 202
    assert response.json() == {"success": True, "received": True, "type": "subscription.updated"}

    subscription = get_app_db().get_subscription_by_user(USER_ID)
    assert subscription["subscription_id"] == "sub_123"
    assert subscription["plan"] == "team_pro"
    assert subscription["type"] == "individual"
    assert subscription["current_period_end"] == "2026-11-01T00:00:00+00:00"
    assert get_app_db().get_user(USER_ID)["is_subscribed"] == 1

    metrics = get_webhook_metrics()
    assert metrics["total_received"] == 2
    assert metrics["successful"] == 2
    assert metrics["failed"] == 0


def test_canceled_subscription_clears_subscribed_flag(client):
    get_app_db().upsert_user(USER_ID)
    _post_webhook(client, _subscription_event())
    _post_webhook(client, _subscription_event("subscription.canceled", status="canceled"))

    assert get_app_db().get_user(USER_ID)["is_subscribed"] == 0
    assert get_app_db().get_subscription_by_user(USER_ID)["status"] == "canceled"


def test_webhook_rejects_bad_signature(client):
    body = json.dumps(_subscription_event()).encode("utf-8")
    headers = _webhook_headers(body)
    headers["webhook-signature"] = "v1,Zm9yZ2Vk"

    response = client.post("/subscription/webhook", content=body, headers=headers)

    assert response.status_code == 403
    assert get_webhook_metrics()["total_received"] == 0


def test_webhook_rejects_unparseable_body(client):
    body = b"not json"
    response = client.post("/subscription/webhook", content=body, headers=_webhook_headers(body))
    assert response.status_code == 400


def test_webhook_handler_failure_returns_500(client):
    event = _subscription_event(metadata={})

    response = _post_webhook(client, event)

    assert response.status_code == 500
    assert response.json()["detail"] == "User ID is required"
    assert get_webhook_metrics()["failed"] == 1


@pytest.mark.parametrize("payload", [
    [1, 2, 3],
    "subscription.created",
    {"type": "subscription.created", "data": ["sub_123"]},
])
def test_webhook_rejects_signed_non_object_payload(client, payload):
    body = json.dumps(payload).encode("utf-8")

    response = client.post("/subscription/webhook", content=body, headers=_webhook_headers(body))

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid webhook payload"
    assert get_webhook_metrics()["total_received"] == 0


@test_case(
    test_id="TC-SUB-004",
    priority="Critical",
    module="Subscription",
    title="Webhook retries run off the event loop and leave the database writable",
    steps=[
        {"step": "POST a subscription webhook for an unknown user", "expected": "Retried 3 times, then 500"},
        {"step": "Inspect where the retry sleeps ran", "expected": "Worker thread, no running event loop"},
        {"step": "POST a valid webhook", "expected": "202, subscription stored"},
    ]
)
def test_failing_webhook_retries_off_event_loop(client):
    sleeps = []

    def record_sleep(seconds):
        try:
            asyncio.get_running_loop()
            on_event_loop = True
        except RuntimeError:
            on_event_loop = False
        sleeps.append((seconds, on_event_loop))

    get_subscription_service().sleep = record_sleep
    get_app_db().upsert_user(USER_ID, "learner@tekbreed.com", "Regular User")

    failed = _post_webhook(client, _subscription_event(metadata={"userId": "ghost"}))

    assert failed.status_code == 500
    assert "FOREIGN KEY constraint failed" in failed.json()["detail"]
    assert sleeps == [(1, False), (5, False), (15, False)]

    ok = _post_webhook(client, _subscription_event())
    assert ok.status_code == 202
    assert get_app_db().get_subscription_by_user(USER_ID)["subscription_id"] == "sub_123"


def test_unknown_event_is_acknowledged(client):
    response = _post_webhook(client, {"type": "order.created", "data": {"id": "ord_1"}})
    assert response.status_code == 202
    assert response.json()["type"] == "order.created"


@test_case(
    test_id="TC-SUB-003",
    priority="High",
    module="Subscription",
    title="Customer webhooks link and delete local users",
)
def test_customer_webhooks(client):
    get_app_db().upsert_user(USER_ID, "learner@tekbreed.com")

    created = _post_webhook(client, {"type": "customer.created", "data": {"id": "cus_1", "external_id": USER_ID}})
    assert created.status_code == 202
    assert get_app_db().get_user(USER_ID)["polar_customer_id"] == "cus_1"

    deleted = _post_webhook(client, {"type": "customer.deleted", "data": {"id": "cus_1"}})
    assert deleted.status_code == 202
    assert get_app_db().get_user(USER_ID) is None


def test_customer_created_for_unknown_user_retries_then_fails():
    sleeps = []
    service = get_subscription_service()
    service.sleep = sleeps.append

    with pytest.raises(Exception, match="User ghost not found"):
        service.on_customer_created({"id": "cus_9", "external_id": "ghost"})

    assert sleeps == [1, 5, 15]


# ══════════════════════════════════════════════════════════════════════════════
# CHECKOUT AND PRODUCTS
# ══════════════════════════════════════════════════════════════════════════════

def test_list_products(client, polar_api):
    polar_api.respond("GET", "/v1/products/", body={"items": [{"id": "prod_1", "name": "Pro"}]})

    response = client.get("/subscription/products")

    assert response.status_code == 200
    assert response.json()["products"] == [{"id": "prod_1", "name": "Pro"}]
    assert polar_api.requests[-1].url.params["limit"] == "6"


@test_case(
    test_id="TC-SUB-004",
    priority="Critical",
    module="Subscription",
    title="Checkout passes the user id as Polar metadata",
)
def test_individual_checkout(client, user_headers, polar_api):
    polar_api.respond("POST", "/v1/checkouts/", body={"id": "chk_1", "url": "https://polar.test/checkout/chk_1"})

    response = client.post(
        "/subscription/checkout", json={"products": ["prod_1"], "group": "Individual"}, headers=user_headers
    )

    assert response.status_code == 200
    assert response.json() == {"success": True, "url": "https://polar.test/checkout/chk_1", "checkout_id": "chk_1"}

    payload = polar_api.last_json()
    assert payload["metadata"] == {"userId": USER_ID}
    assert payload["external_customer_id"] == USER_ID
    assert payload["customer_email"] == "learner@tekbreed.com"
    assert payload["is_business_customer"] is False
    assert payload["success_url"] == "https://tekbreed.test/subscription/success?checkout_id={CHECKOUT_ID}"


def test_team_checkout_includes_team_id(client, user_headers, polar_api):
    polar_api.respond("POST", "/v1/checkouts/", body={"id": "chk_2", "url": "https://polar.test/checkout/chk_2"})
    client.get("/profile", headers=user_headers)
    team = get_app_db().create_team("Acme")
    get_app_db().add_team_member(team["id"], USER_ID, role="owner")

    client.post("/subscription/checkout", json={"products": ["prod_team"], "group": "team"}, headers=user_headers)

    payload = polar_api.last_json()
    assert payload["metadata"] == {"userId": USER_ID, "teamId": team["id"]}
    assert payload["is_business_customer"] is True


def test_checkout_validation_and_upstream_errors(client, user_headers, polar_api):
    invalid = client.post("/subscription/checkout", json={"products": ["p"], "group": "family"}, headers=user_headers)
    assert invalid.status_code == 422

    polar_api.respond("POST", "/v1/checkouts/", body={"detail": "Product archived"}, status_code=422)
    upstream = client.post("/subscription/checkout", json={"products": ["p"], "group": "individual"}, headers=user_headers)
    assert upstream.status_code == 502
    assert "Product archived" in upstream.json()["detail"]


def test_get_checkout_status(client, user_headers, polar_api):
    polar_api.respond("GET", "/v1/checkouts/chk_1", body={
        "id": "chk_1", "status": "succeeded", "customer_email": "learner@tekbreed.com", "client_secret": "hidden",
    })

    response = client.get("/subscription/checkout/chk_1", headers=user_headers)

    assert response.json()["checkout"] == {
        "id": "chk_1", "status": "succeeded", "customer_email": "learner@tekbreed.com",
    }


# ══════════════════════════════════════════════════════════════════════════════
# CUSTOMER PORTAL
# ══════════════════════════════════════════════════════════════════════════════

def test_portal_requires_active_subscription(client, user_headers):
    response = client.post("/subscription/portal", headers=user_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "No active subscription found"
    assert get_portal_metrics()["failed_accesses"] == 1


@test_case(
    test_id="TC-SUB-005",
    priority="High",
    module="Subscription",
    title="Portal session returns the Polar customer portal URL",
)
def test_portal_session(client, user_headers, admin_headers, polar_api):
    client.get("/profile", headers=user_headers)
    db = get_app_db()
    db.upsert_subscription("sub_123", "active", "individual", "pro", USER_ID)
    polar_api.respond("POST", "/v1/customer-sessions/", body={"customer_portal_url": "https://polar.test/portal"})

    missing_customer = client.post("/subscription/portal", headers=user_headers)
    assert missing_customer.json()["detail"] == "No Polar customer ID found"

    db.set_polar_customer_id(USER_ID, "cus_1")
    response = client.post("/subscription/portal", headers=user_headers)
    assert response.status_code == 200
    assert response.json() == {"success": True, "url": "https://polar.test/portal"}
    assert polar_api.last_json() == {"customer_id": "cus_1"}

    metrics = client.get("/subscription/metrics", headers=admin_headers).json()
    assert metrics["portal"]["total_accesses"] == 2
    assert metrics["portal"]["successful_accesses"] == 1


def test_metrics_are_admin_only(client, user_headers):
    assert client.get("/subscription/metrics", headers=user_headers).status_code == 403
