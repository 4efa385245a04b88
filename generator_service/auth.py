"""
Authentication Module

Guards admin endpoints with a shared bearer secret.
Public render endpoints are not authenticated.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .context import ServiceContext
from .dependencies import get_context

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    context: ServiceContext = Depends(get_context),
) -> Optional[HTTPAuthorizationCredentials]:
    """
    Verify shared secret token.

    Args:
        credentials: Bearer token from request header
        context: Service context holding the settings

    Returns:
        The credentials if valid (or None when auth is not required)

    Raises:
        HTTPException: 401 if token is missing or invalid, 500 if auth is
            required but no secret is configured
    """
    settings = context.settings
    if not settings.auth_required:
        return credentials

    if not settings.api_secret:
        raise HTTPException(
            status_code=500,
            detail="Server authentication not configured"
        )

    if credentials is None or credentials.credentials != settings.api_secret:
        logger.warning("Rejected admin request with invalid token")
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication token"
        )

    return credentials
