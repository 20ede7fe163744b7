"""
Polar Client - HTTP client for the Polar payments API

Covers the calls TekBreed makes for billing:
1. Checkout sessions and the product catalog
2. Customer sessions for the customer portal
3. Customer and subscription lookups, deletion and revocation
"""

import httpx
from typing import Optional, Dict, Any, List

from tekbreed.config import Config
from tekbreed.utils.errors import ExternalServiceError

POLAR_API_URLS = {
    "sandbox": "https://sandbox-api.polar.sh/v1",
    "production": "https://api.polar.sh/v1",
}


class PolarClient:
    """Synchronous Polar API client with bearer auth."""

    def __init__(
        self,
        access_token: str = None,
        server: str = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.access_token = access_token or Config.POLAR_ACCESS_TOKEN
        self.server = server or Config.POLAR_SERVER
        self.base_url = POLAR_API_URLS.get(self.server, POLAR_API_URLS["production"])
        self.timeout = timeout
        self.transport = transport
        self._client = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            if not self.access_token:
                raise ExternalServiceError("Polar", "POLAR_ACCESS_TOKEN is not configured")
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
                transport=self.transport,
            )
        return self._client

    def close(self):
        if self._client:
            self._client.close()
            self._client = None

    def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise ExternalServiceError("Polar", f"Request failed: {e}")

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail") or response.text
            except ValueError:
                detail = response.text
            raise ExternalServiceError(
                "Polar",
                f"{method} {path} returned {response.status_code}: {detail}",
                upstream_status=response.status_code
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # Checkouts and products
    # =========================================================================

    def create_checkout_session(
        self,
        products: List[str],
        success_url: str,
        customer_email: Optional[str],
        customer_name: Optional[str],
        is_business_customer: bool,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
        discount_id: Optional[str] = None
    ) -> Dict[str, Any]:
        metadata = {}
        if user_id:
            metadata["userId"] = user_id
        if team_id:
            metadata["teamId"] = team_id

        payload = {
            "products": products,
            "success_url": success_url,
            "customer_email": customer_email,
            "customer_name": customer_name,
            "is_business_customer": is_business_customer,
            "external_customer_id": user_id or team_id,
            "allow_discount_codes": True,
            "metadata": metadata,
        }
        if discount_id:
            payload["discount_id"] = discount_id

        return self._request("POST", "/checkouts/", json=payload)

    def get_checkout_session(self, checkout_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/checkouts/{checkout_id}")

    def list_products(self) -> Dict[str, Any]:
        return self._request(
            "GET",
            "/products/",
            params={
                "limit": 6,
                "is_archived": "false",
                "organization_id": Config.POLAR_ORGANIZATION_ID,
            }
        )

    # =========================================================================
    # Customers and subscriptions
    # =========================================================================

    def create_customer_session(self, customer_id: str) -> Dict[str, Any]:
        return self._request("POST", "/customer-sessions/", json={"customer_id": customer_id})

    def get_customer(self, external_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/customers/external/{external_id}")

    def delete_customer(self, external_id: str) -> None:
        self._request("DELETE", f"/customers/external/{external_id}")

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Revoke the subscription immediately."""
        return self._request("DELETE", f"/subscriptions/{subscription_id}")


# Singleton instance
_polar_client = None


def get_polar_client() -> PolarClient:
    global _polar_client
    if _polar_client is None:
        _polar_client = PolarClient()
    return _polar_client
