from __future__ import annotations

import secrets
import threading
from datetime import datetime
from typing import Any, List, Optional, Protocol

from gatehouse.logging import get_logger, hash_email
from gatehouse.service.context import RequestContext
from gatehouse.service.cookies import RememberCookieCipher
from gatehouse.service.errors import (
    AccountUnconfirmed,
    AlreadyAuthenticated,
    AuthenticationRequired,
    IncorrectCredentials,
    NotFoundError,
)
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.validation import normalize_email
from gatehouse.storage.models import ActiveSession, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        confirmed_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def confirm_user(self, user_id: str, confirmed_at: datetime) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_active_session(
        self,
        user_id: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> ActiveSession: ...

    def get_active_session(self, session_id: str) -> Optional[ActiveSession]: ...

    def get_active_session_by_remember_token(
        self, remember_token: str
    ) -> Optional[ActiveSession]: ...

    def list_active_sessions(self, user_id: str) -> List[ActiveSession]: ...

    def delete_active_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...


class Authenticator:
    """Checks an email/password pair without revealing which half was wrong.

    A lookup miss still pays for one full hash verification against a
    throwaway digest, so both failure paths cost about the same.
    """

    def __init__(self, store: AuthStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self.hasher = hasher or PasswordHasher()
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def _throwaway_hash(self) -> str:
        if self._dummy_hash is None:
            with self._dummy_lock:
                if self._dummy_hash is None:
                    self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(32))
        return self._dummy_hash

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.store.get_user_by_email(normalize_email(email or ""))
        if user is None:
            self.hasher.verify(self._throwaway_hash(), password or "")
            return None
        if not self.hasher.verify(user.password_hash, password or ""):
            return None
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.hasher.hash(password))
            logger.info("password_rehashed", user_id=user.id)
        return user

    def verify_password(self, user: User, password: str) -> bool:
        return self.hasher.verify(user.password_hash, password or "")


class AuthService:
    """Login, logout, remember-me and per-device session management.

    Every method works on an explicit :class:`RequestContext`; the resolved
    current user is memoized on that context only.
    """

    def __init__(
        self,
        store: AuthStore,
        authenticator: Authenticator,
        remember_cipher: RememberCookieCipher,
        *,
        remember_cookie_name: str = "remember_token",
        remember_max_age_seconds: int = 20 * 365 * 24 * 60 * 60,
    ) -> None:
        self.store = store
        self.authenticator = authenticator
        self.remember_cipher = remember_cipher
        self.remember_cookie_name = remember_cookie_name
        self.remember_max_age_seconds = remember_max_age_seconds
        self.logger = logger

    async def login(self, ctx: RequestContext, user: User) -> ActiveSession:
        # Fresh session state on every login so a pre-login cookie can't be reused;
        # a previous account's remember cookie goes too
        ctx.reset_session()
        self.forget_active_session(ctx)
        active_session = self.store.create_active_session(
            user.id, user_agent=ctx.user_agent, ip_address=ctx.ip_address
        )
        ctx.bind_active_session(active_session)
        ctx.remember_resolution(user, active_session)
        self.logger.info(
            "session_login", user_id=user.id, active_session_id=active_session.id
        )
        return active_session

    async def logout(self, ctx: RequestContext) -> None:
        # Capture the id before reset_session wipes it
        active_session = await self.current_active_session(ctx)
        self.forget_active_session(ctx)
        ctx.reset_session()
        if active_session:
            self.store.delete_active_session(active_session.id)
            self.logger.info(
                "session_logout",
                user_id=active_session.user_id,
                active_session_id=active_session.id,
            )

    def remember(self, ctx: RequestContext, active_session: ActiveSession) -> None:
        ctx.set_cookie(
            self.remember_cookie_name,
            self.remember_cipher.encrypt(active_session.remember_token),
            max_age=self.remember_max_age_seconds,
        )

    def forget_active_session(self, ctx: RequestContext) -> None:
        ctx.delete_cookie(self.remember_cookie_name)

    async def resolve_current_user(self, ctx: RequestContext) -> Optional[User]:
        if ctx.resolved:
            return ctx.current_user

        user: Optional[User] = None
        active_session: Optional[ActiveSession] = None
        session_id = ctx.active_session_id
        if session_id:
            # A stale id means the session was revoked; never fall back to the cookie
            active_session = self.store.get_active_session(session_id)
        else:
            remember_token = self.remember_cipher.decrypt(ctx.remember_cookie)
            if remember_token:
                active_session = self.store.get_active_session_by_remember_token(
                    remember_token
                )
                if active_session:
                    ctx.bind_active_session(active_session)
        if active_session:
            user = self.store.get_user(active_session.user_id)
            if user is None:
                active_session = None
        ctx.remember_resolution(user, active_session)
        return user

    async def current_active_session(self, ctx: RequestContext) -> Optional[ActiveSession]:
        await self.resolve_current_user(ctx)
        return ctx.current_session

    async def require_authenticated(
        self, ctx: RequestContext, *, return_to: Optional[str] = None
    ) -> User:
        user = await self.resolve_current_user(ctx)
        if user is None:
            if return_to:
                ctx.store_return_to(return_to)
            raise AuthenticationRequired("You need to login to access that page.")
        return user

    async def redirect_if_authenticated(self, ctx: RequestContext) -> None:
        if await self.resolve_current_user(ctx) is not None:
            raise AlreadyAuthenticated()

    async def sign_in(
        self,
        ctx: RequestContext,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
    ) -> ActiveSession:
        user = self.authenticator.authenticate(email, password)
        if user is None:
            self.logger.info("login_failed", email_hash=hash_email(email or ""))
            raise IncorrectCredentials()
        if user.unconfirmed:
            self.logger.info("login_unconfirmed", user_id=user.id)
            raise AccountUnconfirmed("You must confirm your email before you can sign in.")
        # Keep the friendly-redirect target across the session reset
        return_to = ctx.pop_return_to()
        active_session = await self.login(ctx, user)
        if remember_me:
            self.remember(ctx, active_session)
        else:
            self.forget_active_session(ctx)
        if return_to:
            ctx.store_return_to(return_to)
        return active_session

    async def list_sessions(self, ctx: RequestContext) -> List[ActiveSession]:
        user = await self.require_authenticated(ctx)
        return self.store.list_active_sessions(user.id)

    async def revoke_session(self, ctx: RequestContext, session_id: str) -> bool:
        """Delete one of the caller's sessions; returns whether the caller is still signed in."""
        user = await self.require_authenticated(ctx)
        target = self.store.get_active_session(session_id)
        if target is None or target.user_id != user.id:
            raise NotFoundError("session not found")
        current = ctx.current_session
        self.store.delete_active_session(target.id)
        self.logger.info(
            "session_revoked", user_id=user.id, active_session_id=target.id
        )
        if current is not None and current.id == target.id:
            self.forget_active_session(ctx)
            ctx.reset_session()
            ctx.remember_resolution(None, None)
            return False
        return True

    async def revoke_all_sessions(self, ctx: RequestContext) -> int:
        user = await self.require_authenticated(ctx)
        self.forget_active_session(ctx)
        removed = self.store.delete_user_sessions(user.id)
        ctx.reset_session()
        ctx.remember_resolution(None, None)
        self.logger.info("sessions_revoked_all", user_id=user.id, count=removed)
        return removed
