"""FastAPI dependencies for bearer-authenticated REST endpoints."""
from typing import Optional

from fastapi import Header

from .service import TokenVerifier, extract_bearer


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the calling user's id from the Authorization header.

    Raises:
        AuthenticationError: Mapped to 401 by the app's exception handler.
    """
    return TokenVerifier.from_config().verify(extract_bearer(authorization))
