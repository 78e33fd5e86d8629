"""Caller identity for the HTTP API.

agent-connect has no accounts of its own.  The application in front of it
(a UI backend or an agent runtime) signs a short-lived HS256 JWT whose
``sub`` claim is the local user id, and every connection operation is
scoped to that id.  The OAuth callback is the one exception: the provider
redirect carries no JWT, so the user is recovered from the pending state.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from agent_connect.config import Settings, get_settings

logger = logging.getLogger(__name__)

CALLER_TOKEN_TYPE = "caller"

bearer_scheme = HTTPBearer(auto_error=False)


def issue_caller_token(
    user_id: str,
    expires_in: timedelta | None = None,
    *,
    settings: Settings | None = None,
) -> str:
    """Sign a caller token for *user_id*.

    Used by the fronting application and by tests; the service itself only
    verifies tokens.
    """
    settings = settings or get_settings()
    lifetime = expires_in or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": user_id,
        "type": CALLER_TOKEN_TYPE,
        "exp": datetime.now(UTC) + lifetime,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_caller_token(token: str, *, settings: Settings | None = None) -> str:
    """Verify *token* and return the user id it names.

    Raises:
        JWTError: Bad signature, expired, wrong type or no subject.
    """
    settings = settings or get_settings()
    claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    if claims.get("type") != CALLER_TOKEN_TYPE:
        raise JWTError("not a caller token")
    user_id = claims.get("sub")
    if not user_id:
        raise JWTError("caller token has no subject")
    return str(user_id)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict:
    """FastAPI dependency: ``{"user_id": ...}`` for the authenticated caller."""
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized

    try:
        user_id = decode_caller_token(credentials.credentials)
    except JWTError as exc:
        logger.info("Rejected caller token: %s", exc)
        raise unauthorized from None

    return {"user_id": user_id}
