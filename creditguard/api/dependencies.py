"""
FastAPI Dependencies - Service role authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Header, HTTPException, status

from creditguard.config import get_settings
from creditguard.exceptions import AuthenticationError
from creditguard.observability.logging import get_logger

logger = get_logger(__name__)


def _verify_api_key(presented: str | None) -> None:
    """
    Compare the presented key with the configured service role key.

    Raises:
        AuthenticationError: Missing, unconfigured, or wrong key
    """
    expected = get_settings().api_key
    if not expected:
        raise AuthenticationError("service API key is not configured")
    if not presented:
        raise AuthenticationError("missing X-API-Key header")
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise AuthenticationError("invalid API key")


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service role API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Usage:
        @router.post("/v1/credits/reserve", dependencies=[Depends(require_api_key)])
        async def reserve(...):
            pass

    Raises:
        HTTPException 401 if invalid
    """
    try:
        _verify_api_key(x_api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc
