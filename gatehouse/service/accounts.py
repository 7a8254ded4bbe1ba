from __future__ import annotations

from typing import Optional

from gatehouse.logging import get_logger, hash_email
from gatehouse.service.auth import Authenticator, AuthService, AuthStore
from gatehouse.service.confirmation import ConfirmationService
from gatehouse.service.context import RequestContext
from gatehouse.service.errors import IncorrectCredentials, NotFoundError, ValidationFailed
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.validation import normalize_email, validate_email, validate_password
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import User

logger = get_logger(__name__)

_TAKEN = "has already been taken"


class AccountService:
    """Sign-up and self-service changes to the signed-in account."""

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        authenticator: Authenticator,
        auth: AuthService,
        confirmations: ConfirmationService,
        *,
        password_min_length: int = 8,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.authenticator = authenticator
        self.auth = auth
        self.confirmations = confirmations
        self.password_min_length = password_min_length

    async def sign_up(self, email: str, password: str, password_confirmation: str) -> User:
        normalized = normalize_email(email or "")
        errors: dict[str, list[str]] = {}
        email_errors = validate_email(normalized)
        if email_errors:
            errors["email"] = email_errors
        errors.update(
            validate_password(password, password_confirmation, self.password_min_length)
        )
        if not errors.get("email") and self.store.get_user_by_email(normalized):
            errors["email"] = [_TAKEN]
        if errors:
            raise ValidationFailed(errors)

        try:
            user = self.store.create_user(normalized, self.hasher.hash(password))
        except ConstraintViolation as exc:
            raise ValidationFailed({"email": [_TAKEN]}) from exc
        logger.info("user_signed_up", user_id=user.id, email_hash=hash_email(normalized))
        await self.confirmations.send_confirmation(user)
        return user

    async def update_account(
        self,
        user: User,
        current_password: str,
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        password_confirmation: Optional[str] = None,
    ) -> User:
        """Change email and/or password after re-checking the current password.

        A new email is parked in ``unconfirmed_email`` and only replaces the
        current address once its confirmation link is followed.
        """
        if not self.authenticator.verify_password(user, current_password):
            raise IncorrectCredentials("Incorrect password.")

        fields: dict = {}
        errors: dict[str, list[str]] = {}
        new_email = normalize_email(email) if email else None
        if new_email and new_email != user.email:
            email_errors = validate_email(new_email)
            if email_errors:
                errors["unconfirmed_email"] = email_errors
            else:
                fields["unconfirmed_email"] = new_email
        if password:
            errors.update(
                validate_password(password, password_confirmation, self.password_min_length)
            )
            if not errors.get("password") and not errors.get("password_confirmation"):
                fields["password_hash"] = self.hasher.hash(password)
        if errors:
            raise ValidationFailed(errors)
        if not fields:
            return user

        updated = self.store.update_user(user.id, **fields)
        if updated is None:
            raise NotFoundError("account not found")
        logger.info(
            "account_updated",
            user_id=updated.id,
            email_change="unconfirmed_email" in fields,
            password_change="password_hash" in fields,
        )
        if "unconfirmed_email" in fields:
            await self.confirmations.send_confirmation(updated)
        return updated

    async def delete_account(self, ctx: RequestContext, user: User) -> None:
        await self.auth.logout(ctx)
        self.store.delete_user(user.id)
        logger.info("account_deleted", user_id=user.id)
