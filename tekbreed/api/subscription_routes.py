# api/subscription_routes.py
import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator
from typing import List

from tekbreed.api.dependencies import get_registered_user
from tekbreed.config import Config
from tekbreed.database.app_db import get_app_db
from tekbreed.middleware.jwt_middleware import user_id_from_claims
from tekbreed.middleware.rbac import require_admin
from tekbreed.services.polar_client import get_polar_client
from tekbreed.services.subscription_service import (
    get_subscription_service,
    verify_webhook_signature,
    get_webhook_metrics,
    get_portal_metrics,
    WebhookVerificationError,
)
from tekbreed.utils.errors import TekBreedError, to_http_exception

subscription_router = APIRouter(prefix='/subscription', tags=['subscription'])


class CheckoutRequest(BaseModel):
    products: List[str] = Field(..., min_length=1)
    group: str = Field(..., min_length=1)

    @field_validator('group')
    @classmethod
    def validate_group(cls, v):
        v = v.strip().lower()
        if v not in ("individual", "team"):
            raise ValueError("group must be 'individual' or 'team'")
        return v


@subscription_router.get('/products')
async def list_products():
    try:
        products = get_polar_client().list_products()
        return {'success': True, 'products': (products or {}).get('items', [])}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[SubscriptionRoutes] Error listing products: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@subscription_router.post('/checkout')
async def create_checkout(request: CheckoutRequest, current_user: dict = Depends(get_registered_user)):
    """Start a Polar checkout and return the hosted checkout URL."""
    try:
        user_id = user_id_from_claims(current_user)
        user = get_app_db().get_user(user_id) or {"id": user_id}
        checkout = get_subscription_service().create_checkout(
            user=user,
            products=request.products,
            group=request.group,
            domain_url=Config.DOMAIN_URL
        )
        return {'success': True, **checkout}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[SubscriptionRoutes] Error creating checkout: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@subscription_router.get('/checkout/{checkout_id}')
async def get_checkout(checkout_id: str, current_user: dict = Depends(get_registered_user)):
    """Checkout status for the success page."""
    try:
        checkout = get_polar_client().get_checkout_session(checkout_id)
        return {
            'success': True,
            'checkout': {
                'id': checkout.get('id'),
                'status': checkout.get('status'),
                'customer_email': checkout.get('customer_email'),
            }
        }
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[SubscriptionRoutes] Error loading checkout: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@subscription_router.post('/webhook', status_code=status.HTTP_202_ACCEPTED)
async def polar_webhook(request: Request):
    """
    Polar webhook receiver.

    The signature covers the raw body, so it is verified before parsing.
    Handler failures surface as 500 so Polar redelivers.
    """
    body = await request.body()
    try:
        verify_webhook_signature(body, dict(request.headers), Config.POLAR_WEBHOOK_SECRET)
    except WebhookVerificationError as e:
        print(f"[SubscriptionRoutes] ❌ Webhook rejected: {e}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")
    if not isinstance(event, dict) or not isinstance(event.get("data") or {}, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")

    try:
        # Retries sleep between attempts; keep them off the event loop
        result = await asyncio.to_thread(get_subscription_service().handle_webhook, event)
        return {'success': True, **result}
    except Exception as e:
        print(f"[SubscriptionRoutes] Webhook handler failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@subscription_router.post('/portal')
async def customer_portal(current_user: dict = Depends(get_registered_user)):
    try:
        session = get_subscription_service().create_portal_session(user_id_from_claims(current_user))
        return {'success': True, **session}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[SubscriptionRoutes] Error creating portal session: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@subscription_router.get('/metrics')
async def get_metrics(current_user: dict = Depends(require_admin)):
    return {
        'webhooks': get_webhook_metrics(),
        'portal': get_portal_metrics(),
    }
