"""Request dependencies: optional bearer-token protection for the API."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from healthysnacks.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def token_accepted(settings: Settings, token: str | None) -> bool:
    """Return True if ``token`` satisfies the configured key (or no key is configured)."""
    if settings.api_key is None:
        return True
    if token is None:
        return False
    return secrets.compare_digest(token.encode(), settings.api_key.encode())


async def require_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject the request unless it carries 'Authorization: Bearer <HEALTHYSNACKS_API_KEY>'.

    Without HEALTHYSNACKS_API_KEY set, every request passes.
    """
    settings: Settings = request.app.state.settings
    token = credentials.credentials if credentials is not None else None
    if token_accepted(settings, token):
        return

    logger.info("Rejected request to %s: bad or missing API key", request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
