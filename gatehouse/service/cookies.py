from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def _derive_key(secret: str, label: str) -> bytes:
    return hashlib.sha256(f"{label}:{secret}".encode()).digest()


class SessionCookieSigner:
    """HMAC-signs the session cookie payload so clients can read but not forge it."""

    def __init__(self, secret: str) -> None:
        self._key = _derive_key(secret, "session-cookie")

    def _signature(self, body: str) -> str:
        digest = hmac.new(self._key, body.encode(), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")

    def dumps(self, data: dict[str, Any]) -> str:
        raw = json.dumps(data, separators=(",", ":"), sort_keys=True).encode()
        body = base64.urlsafe_b64encode(raw).decode().rstrip("=")
        return f"{body}.{self._signature(body)}"

    def loads(self, value: Optional[str]) -> dict[str, Any]:
        """Decode a cookie value; anything unsigned or garbled yields ``{}``."""
        if not value:
            return {}
        body, sep, signature = value.rpartition(".")
        if not sep or not hmac.compare_digest(self._signature(body), signature):
            logger.info("session_cookie_rejected")
            return {}
        padding = "=" * ((4 - len(body) % 4) % 4)
        try:
            data = json.loads(base64.urlsafe_b64decode(body + padding))
        except (ValueError, UnicodeDecodeError):
            return {}
        return data if isinstance(data, dict) else {}


class RememberCookieCipher:
    """Encrypts and authenticates the remember-me token (Fernet)."""

    def __init__(self, secret: str, *, max_age_seconds: Optional[int] = None) -> None:
        key = base64.urlsafe_b64encode(_derive_key(secret, "remember-cookie"))
        self._fernet = Fernet(key)
        self.max_age_seconds = max_age_seconds

    def encrypt(self, remember_token: str) -> str:
        return self._fernet.encrypt(remember_token.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            return self._fernet.decrypt(value.encode(), ttl=self.max_age_seconds).decode()
        except (InvalidToken, UnicodeDecodeError):
            logger.info("remember_cookie_rejected")
            return None
