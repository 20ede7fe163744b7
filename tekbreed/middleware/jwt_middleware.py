"""JWT middleware for authentication using tokens issued by the TekBreed auth server."""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from typing import Optional

from tekbreed.config import Config

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def decode_jwt(token: str) -> dict:
    """
    Decode a JWT without raising.

    Returns:
        dict: Decoded payload, or empty dict if the token is invalid
    """
    try:
        return jwt.decode(token, Config.JWT_SECRET_KEY, algorithms=["HS256"])
    except JWTError as e:
        print(f"[JWT] Failed to decode token: {str(e)}")
        return {}


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer token with the shared secret.

    Raises:
        HTTPException: 401 if the token is invalid, expired or has no user id
    """
    try:
        payload = jwt.decode(
            token,
            Config.JWT_SECRET_KEY,
            algorithms=["HS256"]
        )
    except JWTError as e:
        print(f"[JWT] Authentication failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id") or payload.get("sub")
    if not user_id:
        print(f"[JWT] Token missing 'user_id' or 'sub' claim. Available claims: {list(payload.keys())}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user ID in token (sub or user_id claim)"
        )

    print(f"[JWT] Authenticated user: {user_id}")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    FastAPI dependency to extract and verify the bearer token.

    Usage:
        @router.get("/protected")
        async def protected_route(current_user: dict = Depends(get_current_user)):
            ...
    """
    return verify_jwt_token(credentials.credentials)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security)
) -> Optional[dict]:
    """Like get_current_user, but anonymous requests get None instead of 401/403."""
    if credentials is None:
        return None
    payload = decode_jwt(credentials.credentials)
    if not (payload.get("user_id") or payload.get("sub")):
        return None
    return payload


def user_id_from_claims(current_user: Optional[dict]) -> Optional[str]:
    if not current_user:
        return None
    user_id = current_user.get("user_id") or current_user.get("sub")
    return str(user_id) if user_id is not None else None
