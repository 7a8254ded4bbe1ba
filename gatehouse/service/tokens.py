from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from gatehouse.logging import get_logger

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    CONFIRM_EMAIL = "confirm_email"
    RESET_PASSWORD = "reset_password"


class TokenVerificationError(Exception):
    """A signed token could not be accepted."""


class TamperedOrMalformed(TokenVerificationError):
    pass


class WrongPurpose(TokenVerificationError):
    pass


class Expired(TokenVerificationError):
    pass


_DEFAULT_TTL = timedelta(minutes=10)


class TokenCodec:
    """Issues and verifies signed, purpose-bound, time-limited tokens.

    Tokens are three base64url segments (header, payload, HMAC-SHA256
    signature). Nothing is persisted: a token is valid until ``exp`` no
    matter how many others were issued for the same subject.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttls: Optional[Mapping[TokenPurpose, timedelta]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self._ttls = dict(ttls or {})
        self._clock = clock

    def ttl_for(self, purpose: TokenPurpose) -> timedelta:
        return self._ttls.get(purpose, _DEFAULT_TTL)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(
        self,
        subject_id: str,
        purpose: TokenPurpose,
        ttl: Optional[timedelta] = None,
    ) -> str:
        purpose = TokenPurpose(purpose)
        lifetime = ttl if ttl is not None else self.ttl_for(purpose)
        issued_at = int(self._clock())
        payload = {
            "sub": subject_id,
            "purpose": purpose.value,
            "iat": issued_at,
            "exp": issued_at + int(lifetime.total_seconds()),
            "nonce": secrets.token_urlsafe(8),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, expected_purpose: TokenPurpose) -> str:
        """Return the subject id carried by ``token``.

        Raises :class:`TamperedOrMalformed`, :class:`WrongPurpose` or
        :class:`Expired`. The signature is checked before anything in the
        payload is trusted.
        """
        if not isinstance(token, str):
            raise TamperedOrMalformed("token must be a string")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TamperedOrMalformed("token must have three segments")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TamperedOrMalformed("token header is not valid JSON")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TamperedOrMalformed("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TamperedOrMalformed("token signature mismatch")

        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TamperedOrMalformed("token payload is not valid JSON")
        if not isinstance(payload, dict):
            raise TamperedOrMalformed("token payload must be an object")

        subject = payload.get("sub")
        exp = payload.get("exp")
        if not isinstance(subject, str) or not subject or not isinstance(exp, (int, float)):
            raise TamperedOrMalformed("token payload is missing claims")

        if payload.get("purpose") != TokenPurpose(expected_purpose).value:
            raise WrongPurpose(
                f"token purpose {payload.get('purpose')!r} does not match"
            )
        if self._clock() >= exp:
            raise Expired("token has expired")
        return subject
