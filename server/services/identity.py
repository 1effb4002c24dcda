"""
Identity verification for session actions.

Principals are authenticated by the account service (out of scope here),
which hands clients a signed token. This module issues and verifies those
tokens: ``<principal b64>.<issued_at>.<hmac-sha256 hex>``.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import time
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 7 * 24 * 3600


class IdentityVerifier:
    """Issues and verifies HMAC-signed principal tokens."""

    def __init__(self, secret_key: str, max_age: int = DEFAULT_MAX_AGE):
        if not secret_key:
            logger.warning("SECRET_KEY not set, tokens will not survive a restart")
            secret_key = secrets.token_hex(32)
        self._key = secret_key.encode()
        self.max_age = max_age

    def _sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()

    def issue(self, principal_id: str, issued_at: Optional[int] = None) -> str:
        """Issue a token for ``principal_id``."""
        encoded = base64.urlsafe_b64encode(principal_id.encode()).decode().rstrip("=")
        issued = int(issued_at if issued_at is not None else time.time())
        payload = f"{encoded}.{issued}"
        return f"{payload}.{self._sign(payload)}"

    def verify(self, token: Optional[str]) -> Optional[str]:
        """
        Verify a token.

        Returns:
            The principal id, or None if the token is malformed, forged or
            expired.
        """
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        encoded, issued, signature = parts

        if not hmac.compare_digest(self._sign(f"{encoded}.{issued}"), signature):
            logger.debug("Rejected token with bad signature")
            return None
        try:
            issued_at = int(issued)
            padded = encoded + "=" * (-len(encoded) % 4)
            principal = base64.urlsafe_b64decode(padded.encode()).decode()
        except (ValueError, binascii.Error, UnicodeDecodeError):
            return None
        if time.time() - issued_at > self.max_age:
            logger.debug(f"Rejected expired token for {principal}")
            return None
        return principal or None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer`` header."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
