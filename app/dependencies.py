"""
Common Dependencies
===================

Shared dependencies used across the application.
"""

import logging
import secrets
from typing import Annotated, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import AuthenticationError, ErrorCodes
from app.db.session import get_db

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

# Bearer scheme for service-to-service calls
security = HTTPBearer(auto_error=False)


async def require_internal_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> None:
    """
    Guard internal endpoints with the shared ``INTERNAL_API_TOKEN``.

    Raises 401 if the token is missing, wrong, or not configured.
    """
    if credentials is None:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_MISSING_TOKEN,
            message="Not authenticated",
        )

    if not settings.INTERNAL_API_TOKEN:
        logger.warning("INTERNAL_API_TOKEN not configured, rejecting internal call")
        raise AuthenticationError(message="Internal API is not configured")

    if not secrets.compare_digest(credentials.credentials, settings.INTERNAL_API_TOKEN):
        logger.warning("Rejected internal call with invalid token")
        raise AuthenticationError(message="Invalid token")


InternalAuth = Depends(require_internal_token)
