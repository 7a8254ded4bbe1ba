from __future__ import annotations

import asyncio

from gatehouse.logging import get_logger, hash_email
from gatehouse.service.auth import AuthStore
from gatehouse.service.email import Mailer
from gatehouse.service.errors import EmailNoLongerAvailable, InvalidOrExpiredToken
from gatehouse.service.tokens import TokenCodec, TokenPurpose, TokenVerificationError
from gatehouse.service.validation import normalize_email
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import User, utcnow

logger = get_logger(__name__)


async def dispatch_mail(mailer: Mailer, user: User, token: str, purpose: TokenPurpose) -> bool:
    """Hand a token to the mailer without letting delivery problems fail the request."""
    try:
        delivered = await asyncio.to_thread(mailer.deliver, user, token, purpose)
    except Exception as exc:
        logger.error(
            "mail_dispatch_failed",
            user_id=user.id,
            purpose=purpose.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
    if not delivered:
        logger.warning("mail_not_delivered", user_id=user.id, purpose=purpose.value)
    return bool(delivered)


class ConfirmationService:
    """Email confirmation for new accounts and pending email changes."""

    def __init__(self, store: AuthStore, codec: TokenCodec, mailer: Mailer) -> None:
        self.store = store
        self.codec = codec
        self.mailer = mailer

    async def send_confirmation(self, user: User) -> str:
        token = self.codec.issue(user.id, TokenPurpose.CONFIRM_EMAIL)
        await dispatch_mail(self.mailer, user, token, TokenPurpose.CONFIRM_EMAIL)
        logger.info(
            "confirmation_sent",
            user_id=user.id,
            state=user.confirmation_state.value,
        )
        return token

    async def request_confirmation(self, email: str) -> None:
        """Resend instructions; the caller sees the same result for every address."""
        user = self.store.get_user_by_email(normalize_email(email or ""))
        if user is None or not user.unconfirmed_or_reconfirming:
            logger.info("confirmation_request_ignored", email_hash=hash_email(email or ""))
            return
        await self.send_confirmation(user)

    async def confirm(self, token: str) -> User:
        try:
            user_id = self.codec.verify(token, TokenPurpose.CONFIRM_EMAIL)
        except TokenVerificationError as exc:
            logger.info("confirmation_token_rejected", reason=type(exc).__name__)
            raise InvalidOrExpiredToken() from exc

        user = self.store.get_user(user_id)
        if user is None or not user.unconfirmed_or_reconfirming:
            logger.info("confirmation_not_actionable", user_id=user_id)
            raise InvalidOrExpiredToken()

        try:
            confirmed = self.store.confirm_user(user.id, utcnow())
        except ConstraintViolation as exc:
            logger.info("confirmation_email_taken", user_id=user.id)
            raise EmailNoLongerAvailable() from exc
        if confirmed is None:
            raise InvalidOrExpiredToken()
        logger.info("email_confirmed", user_id=confirmed.id)
        return confirmed
