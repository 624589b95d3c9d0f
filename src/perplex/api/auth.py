"""
Bearer token verification.

Tokens are issued by the account service; the chat service only needs the
user id. `issue_token` exists for local development and tests.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from src.perplex.config import get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer()

USER_CLAIMS = ("userId", "sub")


def issue_token(user_id: str, expires_in: Optional[timedelta] = None) -> str:
    """Sign a token carrying the user id in the `userId` claim."""
    settings = get_settings()
    expires_in = expires_in or timedelta(hours=settings.jwt_expiration_hours)
    claims = {"userId": user_id, "exp": datetime.utcnow() + expires_in}
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def user_id_from_token(token: str) -> str:
    """
    Verify a token and return its user id.

    Raises:
        HTTPException: 401 when the signature, expiry or user claim is invalid
    """
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        claims = {}

    user_id = next((claims[name] for name in USER_CLAIMS if claims.get(name)), None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return str(user_id)


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Id of the authenticated user."""
    return user_id_from_token(credentials.credentials)
