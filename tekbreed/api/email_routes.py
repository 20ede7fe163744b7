# api/email_routes.py
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field, TypeAdapter, ValidationError
from typing import Optional

from tekbreed.api.dependencies import check_honeypot
from tekbreed.middleware.rbac import require_admin
from tekbreed.services.email_client import get_email_client

email_router = APIRouter(prefix='/email', tags=['email'])

_email_adapter = TypeAdapter(EmailStr)


class NewsletterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    name: Optional[str] = Field(None, max_length=100)
    name__confirm: Optional[str] = None


class SendEmailRequest(BaseModel):
    to: EmailStr
    subject: str = Field(..., min_length=1, max_length=200)
    html: str = Field(..., min_length=1)


@email_router.post('/newsletter')
async def subscribe_newsletter(request: NewsletterRequest):
    """Add the visitor to the newsletter audience."""
    check_honeypot(request.name__confirm)

    try:
        email = _email_adapter.validate_python(request.email.strip())
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email address")

    print(f"[EmailRoutes] Subscribing user: {email}")
    response = get_email_client().subscribe_user(email, request.name)
    if response["status"] != "success":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid credentials.")

    return {'success': True, 'response': response}


@email_router.post('/send')
async def send_email(request: SendEmailRequest, current_user: dict = Depends(require_admin)):
    """Send a one-off transactional email (admin only)."""
    response = get_email_client().send_email(request.to, request.subject, request.html)
    if response["status"] != "success":
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=response["error"])
    return {'success': True, 'response': response}
