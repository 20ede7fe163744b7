# api/profile_routes.py
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from typing import Optional

from tekbreed.api.dependencies import get_registered_user, session_id_from_claims
from tekbreed.middleware.jwt_middleware import user_id_from_claims
from tekbreed.services.profile_service import get_profile_service
from tekbreed.utils.errors import TekBreedError, to_http_exception

profile_router = APIRouter(prefix='/profile', tags=['profile'])


class ProfileActionRequest(BaseModel):
    intent: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, max_length=100)
    contentUpdate: bool = False
    promotions: bool = False
    communityEvents: bool = False
    allNotifications: bool = False

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        return v.strip() if v is not None else v


@profile_router.get('')
async def get_profile(current_user: dict = Depends(get_registered_user)):
    """Profile page loader: account, notification settings and session count."""
    try:
        profile = get_profile_service().get_user_profile(user_id_from_claims(current_user))
        return {'success': True, 'profile': profile}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[ProfileRoutes] Error loading profile: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@profile_router.post('')
async def profile_action(
    request: ProfileActionRequest,
    current_user: dict = Depends(get_registered_user)
):
    """Dispatch a profile form submission by its intent."""
    try:
        result = get_profile_service().handle_intent(
            request.intent,
            user_id_from_claims(current_user),
            request.model_dump(),
            session_id=session_id_from_claims(current_user)
        )
        return {'success': True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[ProfileRoutes] Error handling '{request.intent}': {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@profile_router.get('/bookmarks')
async def get_bookmarks(current_user: dict = Depends(get_registered_user)):
    try:
        bookmarks = get_profile_service().get_bookmarks(user_id_from_claims(current_user))
        return {'success': True, 'bookmarks': bookmarks, 'total': len(bookmarks)}
    except Exception as e:
        print(f"[ProfileRoutes] Error loading bookmarks: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@profile_router.get('/reports')
async def get_reports(current_user: dict = Depends(get_registered_user)):
    try:
        reports = get_profile_service().get_reports(user_id_from_claims(current_user))
        return {'success': True, 'reports': reports, 'total': len(reports)}
    except Exception as e:
        print(f"[ProfileRoutes] Error loading reports: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@profile_router.get('/subscription')
async def get_subscription(current_user: dict = Depends(get_registered_user)):
    try:
        subscription = get_profile_service().get_subscription(user_id_from_claims(current_user))
        return {'success': True, 'subscription': subscription}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[ProfileRoutes] Error loading subscription: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
