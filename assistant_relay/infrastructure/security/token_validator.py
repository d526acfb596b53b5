"""
API token validation for the single-user chat surface
"""

from typing import Optional
import hmac
import structlog

logger = structlog.get_logger(__name__)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Token part of an 'Authorization: Bearer <token>' header"""

    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TokenValidator:
    """Checks presented tokens against the configured API token"""

    def __init__(self, expected_token: str):
        if not expected_token:
            raise ValueError("API token must not be empty")
        self._expected = expected_token.encode("utf-8")

    def verify(self, token: Optional[str]) -> bool:
        """
        Constant-time comparison of a presented token.

        Args:
            token: Token supplied by the client

        Returns:
            True if it matches the configured token
        """

        if not token:
            return False

        valid = hmac.compare_digest(token.encode("utf-8"), self._expected)
        if not valid:
            logger.warning("Rejected API token", token_prefix=token[:4])
        return valid
