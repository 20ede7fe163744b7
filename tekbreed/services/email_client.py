"""
Email Client - Resend API integration for transactional mail and the
newsletter audience.

Calls never raise: results are tagged {"status": "success", "data": ...}
or {"status": "error", "error": ...}.
"""

import httpx
from typing import Optional, Dict, Any

from tekbreed.config import Config

RESEND_URL = "https://api.resend.com"
DEFAULT_SENDER = "TekBreed <info@tekbreed.com>"


class EmailClient:
    def __init__(
        self,
        api_key: str = None,
        audience_id: str = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.api_key = api_key or Config.RESEND_API_KEY
        self.audience_id = audience_id or Config.RESEND_AUDIENCE_ID
        self.timeout = timeout
        self.transport = transport

    def _call(self, endpoint: str, data: Dict[str, Any], fallback_error: str) -> Dict[str, Any]:
        try:
            with httpx.Client(base_url=RESEND_URL, timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    endpoint,
                    json=data,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            print(f"[Email] {fallback_error}: {e}")
            return {"status": "error", "error": fallback_error}

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_success:
            return {"status": "success", "data": body}

        print(f"[Email] Resend API Error: {response.status_code} {response.reason_phrase} {body}")
        message = body.get("message") if isinstance(body, dict) else None
        return {"status": "error", "error": message or response.reason_phrase}

    def send_email(self, to: str, subject: str, html: str) -> Dict[str, Any]:
        return self._call(
            "/emails",
            {"from": DEFAULT_SENDER, "to": to, "subject": subject, "html": html},
            "Failed to send email",
        )

    def subscribe_user(self, email: str, name: Optional[str] = None) -> Dict[str, Any]:
        """Add a contact to the newsletter audience."""
        parts = (name or "").split()
        first_name = parts[0] if parts else None
        last_name = " ".join(parts[1:]) or None

        data: Dict[str, Any] = {"email": email}
        if first_name:
            data["first_name"] = first_name
        if last_name:
            data["last_name"] = last_name
        data["unsubscribed"] = False

        return self._call(
            f"/audiences/{self.audience_id}/contacts",
            data,
            "Failed to subscribe user",
        )


# Singleton instance
_email_client = None


def get_email_client() -> EmailClient:
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
