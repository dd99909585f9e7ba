"""
Shared error mapping for API routes.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


def http_exception(action: str, exc: Exception) -> HTTPException:
    """Log an unexpected failure and turn it into a 500 response."""
    logger.error("Failed to %s: %s: %s", action, type(exc).__name__, exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {exc}",
    )
