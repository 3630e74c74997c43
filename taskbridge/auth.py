from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import get_settings


logger = logging.getLogger("taskbridge.auth")

bearer_scheme = HTTPBearer(auto_error=False)


def token_matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(str(presented).encode("utf-8"), str(expected).encode("utf-8"))


def require_api_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    """Check the shared bearer token. An empty configured token disables auth."""
    expected = (get_settings().security.api_token or "").strip()
    if not expected:
        return

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or (credentials.scheme or "").lower() != "bearer":
        raise credentials_exception
    if not token_matches(credentials.credentials, expected):
        logger.warning("Rejected request with an invalid API token")
        raise credentials_exception
