from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from gatehouse.storage.models import ActiveSession, User

ACTIVE_SESSION_KEY = "active_session_id"
RETURN_TO_KEY = "return_to"


@dataclass
class CookieMutation:
    """A cookie write for the HTTP layer to apply; ``value=None`` deletes it."""

    name: str
    value: Optional[str]
    max_age: Optional[int] = None

    @property
    def is_delete(self) -> bool:
        return self.value is None


@dataclass
class RequestContext:
    """Per-request authentication state.

    ``session`` is the decoded session cookie payload. Handlers never touch
    module-level state; everything the auth layer learns about the caller
    lives here and dies with the request.
    """

    session: Dict[str, Any] = field(default_factory=dict)
    remember_cookie: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    session_dirty: bool = False
    cookie_mutations: Dict[str, CookieMutation] = field(default_factory=dict)
    _resolved: bool = field(default=False, repr=False)
    _user: Optional[User] = field(default=None, repr=False)
    _active_session: Optional[ActiveSession] = field(default=None, repr=False)

    @property
    def active_session_id(self) -> Optional[str]:
        value = self.session.get(ACTIVE_SESSION_KEY)
        return value if isinstance(value, str) else None

    def bind_active_session(self, active_session: ActiveSession) -> None:
        self.session[ACTIVE_SESSION_KEY] = active_session.id
        self.session_dirty = True

    def reset_session(self) -> None:
        """Drop all request session state and the memoized user."""
        self.session = {}
        self.session_dirty = True
        self.clear_memo()

    def store_return_to(self, path: str) -> None:
        self.session[RETURN_TO_KEY] = path
        self.session_dirty = True

    def pop_return_to(self) -> Optional[str]:
        if RETURN_TO_KEY not in self.session:
            return None
        self.session_dirty = True
        value = self.session.pop(RETURN_TO_KEY)
        return value if isinstance(value, str) else None

    def set_cookie(self, name: str, value: str, *, max_age: Optional[int] = None) -> None:
        self.cookie_mutations[name] = CookieMutation(name, value, max_age)

    def delete_cookie(self, name: str) -> None:
        self.cookie_mutations[name] = CookieMutation(name, None)

    # memo
    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    @property
    def current_session(self) -> Optional[ActiveSession]:
        return self._active_session

    def remember_resolution(
        self, user: Optional[User], active_session: Optional[ActiveSession]
    ) -> None:
        self._resolved = True
        self._user = user
        self._active_session = active_session

    def clear_memo(self) -> None:
        self._resolved = False
        self._user = None
        self._active_session = None
