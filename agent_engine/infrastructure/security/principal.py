"""
Principal resolution for the HTTP surface.

The engine sits behind the platform gateway, which authenticates the caller
and forwards the user id. Endpoints that record a human decision require it.
"""

from typing import Optional

import structlog
from fastapi import Header, HTTPException, status
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class Principal(BaseModel):
    user_id: str


async def get_principal(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Principal:
    """
    Resolve the acting user from the forwarded header

    Raises:
        HTTPException: 401 if the header is missing or blank
    """

    if not x_user_id or not x_user_id.strip():
        logger.warning("Request without user identity")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")

    return Principal(user_id=x_user_id.strip())
