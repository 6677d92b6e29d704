"""Authentication module (signed session tokens).

Services:
    - TokenVerifier: checks token signature/expiry and yields the user id.
    - get_current_user_id: FastAPI dependency for REST endpoints.
"""

from .dependencies import get_current_user_id
from .service import TokenVerifier, extract_bearer

__all__ = ["TokenVerifier", "extract_bearer", "get_current_user_id"]
