"""
Operator authentication for lifecycle endpoints.

Every lifecycle operation (running jobs, releasing locks, processing
settlements) is an administrative action guarded by the X-Admin-Token header.
"""
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader
from starlette.requests import Request

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"

admin_token_header = APIKeyHeader(name=ADMIN_TOKEN_HEADER, auto_error=False)


def require_admin_token(
    request: Request,
    admin_token: Optional[str] = Security(admin_token_header),
) -> str:
    """
    Validate the operator token from the request header.

    Returns:
        The validated token, or a marker string when auth is disabled in development

    Raises:
        HTTPException: 401 if missing, 403 if invalid, 401 in production without ADMIN_TOKEN
    """
    if not settings.ADMIN_TOKEN:
        if settings.is_production():
            logger.warning("ADMIN_TOKEN not configured in production - rejecting request")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Admin token required. Configure ADMIN_TOKEN environment variable."
            )
        logger.debug("ADMIN_TOKEN not configured - allowing request in development mode")
        return "_dev_skip_"

    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Admin token missing. Provide {ADMIN_TOKEN_HEADER} header."
        )

    if admin_token != settings.ADMIN_TOKEN:
        logger.warning(f"Invalid admin token attempt from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token."
        )

    return admin_token
