"""Signed session token verification.

Tokens are issued elsewhere (the login service); this module only checks the
signature and expiry and extracts the user id. The same verifier guards the
WebSocket handshake and the REST bearer dependency.
"""
import logging
from typing import Optional

import jwt

from messenger.config import AppConfig, get_config
from messenger.errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Verifies HMAC-signed JWTs and returns the user id they carry."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", user_claim: str = "userId"):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.user_claim = user_claim

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "TokenVerifier":
        config = config or get_config()
        return cls(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.auth.algorithm,
            user_claim=config.auth.user_claim,
        )

    def verify(self, token: Optional[str]) -> str:
        """Decode a token and return its user id.

        Raises:
            AuthenticationError: Token missing, expired, badly signed, or
                without a user id claim.
        """
        if not token:
            raise AuthenticationError("Authentication required")
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug("Rejected token: %s", e)
            raise AuthenticationError("Invalid token")

        user_id = payload.get(self.user_claim) or payload.get("sub")
        if not user_id:
            raise AuthenticationError("Invalid token")
        return str(user_id)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()
