from __future__ import annotations

from enum import Enum

from gatehouse.logging import get_logger, hash_email
from gatehouse.service.auth import AuthStore
from gatehouse.service.confirmation import dispatch_mail
from gatehouse.service.email import Mailer
from gatehouse.service.errors import (
    AccountUnconfirmed,
    InvalidOrExpiredToken,
    ValidationFailed,
)
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.tokens import TokenCodec, TokenPurpose, TokenVerificationError
from gatehouse.service.validation import normalize_email, validate_password
from gatehouse.storage.models import User

logger = get_logger(__name__)


class ResetRequestOutcome(str, Enum):
    SENT = "sent"
    UNCONFIRMED = "unconfirmed"


class PasswordResetService:
    """Password reset by emailed, signed link.

    Reset tokens are stateless: one stays usable until it expires, even
    after it has been used once.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        mailer: Mailer,
        hasher: PasswordHasher,
        *,
        password_min_length: int = 8,
    ) -> None:
        self.store = store
        self.codec = codec
        self.mailer = mailer
        self.hasher = hasher
        self.password_min_length = password_min_length

    async def request_reset(self, email: str) -> ResetRequestOutcome:
        user = self.store.get_user_by_email(normalize_email(email or ""))
        if user is None:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email or ""))
            return ResetRequestOutcome.SENT
        if user.unconfirmed:
            logger.info("password_reset_unconfirmed", user_id=user.id)
            return ResetRequestOutcome.UNCONFIRMED
        token = self.codec.issue(user.id, TokenPurpose.RESET_PASSWORD)
        await dispatch_mail(self.mailer, user, token, TokenPurpose.RESET_PASSWORD)
        logger.info("password_reset_requested", user_id=user.id)
        return ResetRequestOutcome.SENT

    def _resolve(self, token: str) -> User:
        try:
            user_id = self.codec.verify(token, TokenPurpose.RESET_PASSWORD)
        except TokenVerificationError as exc:
            logger.info("password_reset_token_rejected", reason=type(exc).__name__)
            raise InvalidOrExpiredToken() from exc
        user = self.store.get_user(user_id)
        if user is None:
            logger.info("password_reset_user_missing", user_id=user_id)
            raise InvalidOrExpiredToken()
        if user.unconfirmed:
            raise AccountUnconfirmed(
                "You must confirm your email before you can sign in."
            )
        return user

    async def check_reset_token(self, token: str) -> User:
        """Validate a reset link before showing the new-password form."""
        return self._resolve(token)

    async def consume_reset(
        self,
        token: str,
        new_password: str,
        new_password_confirmation: str,
    ) -> User:
        user = self._resolve(token)
        errors = validate_password(
            new_password, new_password_confirmation, self.password_min_length
        )
        if errors:
            raise ValidationFailed(errors)
        updated = self.store.update_user(
            user.id, password_hash=self.hasher.hash(new_password)
        )
        if updated is None:
            raise InvalidOrExpiredToken()
        logger.info("password_reset_completed", user_id=user.id)
        return updated
