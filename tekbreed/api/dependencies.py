"""Shared route dependencies and request guards."""

from typing import Optional

from fastapi import Depends, HTTPException, status

from tekbreed.database.app_db import get_app_db
from tekbreed.middleware.jwt_middleware import get_current_user, user_id_from_claims

HONEYPOT_FIELD = "name__confirm"


async def get_registered_user(current_user: dict = Depends(get_current_user)) -> dict:
    """
    Verified JWT claims, with the caller's row upserted into `users`.

    Comments, likes and bookmarks reference `users.id`, so any write on
    behalf of a caller goes through this dependency first.
    """
    user_id = user_id_from_claims(current_user)
    get_app_db().upsert_user(user_id, current_user.get("email"), current_user.get("name"))
    return current_user


def session_id_from_claims(current_user: dict) -> Optional[str]:
    return current_user.get("session_id") or current_user.get("sid")


def check_honeypot(value: Optional[str]):
    """Bots fill every field; humans never see this one."""
    if value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Form submission rejected"
        )
