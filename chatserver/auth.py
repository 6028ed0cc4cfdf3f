"""
JWT access tokens for the store API.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import ServerSettings, get_settings

bearer_scheme = HTTPBearer(auto_error=False)


class Token(BaseModel):
    """Token response model"""
    access_token: str
    token_type: str
    username: str


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[ServerSettings] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time
        settings: Signing configuration

    Returns:
        Encoded JWT token
    """
    settings = settings or get_settings()
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: Optional[str], settings: Optional[ServerSettings] = None) -> Optional[str]:
    """
    Verify a JWT token and extract username.

    Args:
        token: JWT token to verify
        settings: Signing configuration

    Returns:
        Username if valid, None otherwise
    """
    if not token:
        return None
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    username = payload.get("sub")
    return username if isinstance(username, str) else None


def current_user_dependency(settings: ServerSettings):
    """Build a FastAPI dependency resolving the bearer token to a user id"""

    async def current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    ) -> str:
        username = verify_token(credentials.credentials if credentials else None, settings)
        if not username:
            raise HTTPException(status_code=401, detail="Invalid or missing token")
        return username

    return current_user
