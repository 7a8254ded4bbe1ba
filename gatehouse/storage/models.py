from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfirmationState(str, Enum):
    """Where a user sits in the email confirmation lifecycle.

    Always derived from ``confirmed_at`` and ``unconfirmed_email``; never stored.
    """

    UNCONFIRMED = "unconfirmed"
    CONFIRMED = "confirmed"
    RECONFIRMING = "reconfirming"


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    unconfirmed_email: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def confirmed(self) -> bool:
        return self.confirmed_at is not None

    @property
    def unconfirmed(self) -> bool:
        return not self.confirmed

    @property
    def reconfirming(self) -> bool:
        return bool(self.unconfirmed_email)

    @property
    def unconfirmed_or_reconfirming(self) -> bool:
        return self.unconfirmed or self.reconfirming

    @property
    def confirmation_state(self) -> ConfirmationState:
        if self.unconfirmed:
            return ConfirmationState.UNCONFIRMED
        if self.reconfirming:
            return ConfirmationState.RECONFIRMING
        return ConfirmationState.CONFIRMED

    @property
    def confirmable_email(self) -> str:
        """Address a confirmation link should be sent to."""
        return self.unconfirmed_email or self.email


def generate_remember_token() -> str:
    return secrets.token_urlsafe(24)


@dataclass
class ActiveSession:
    """One signed-in browser or device."""

    id: str
    user_id: str
    remember_token: str
    created_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "ActiveSession":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            remember_token=generate_remember_token(),
            created_at=utcnow(),
            user_agent=user_agent,
            ip_address=ip_address,
        )
