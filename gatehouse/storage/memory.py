from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import ActiveSession, User, utcnow

_UPDATABLE_USER_FIELDS = frozenset(
    {"email", "unconfirmed_email", "password_hash", "confirmed_at"}
)


class MemoryStore:
    """In-process user and session store with a JSON snapshot on disk."""

    def __init__(self, fs_root: str = "/tmp/gatehouse", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, ActiveSession] = {}
        # RLock for all data operations; nested acquisition within a thread is allowed
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _email_taken(self, email: str, *, exclude_user_id: Optional[str] = None) -> bool:
        return any(
            existing.email == email and existing.id != exclude_user_id
            for existing in self.users.values()
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        confirmed_at: Optional[datetime] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if self._email_taken(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                confirmed_at=confirmed_at,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        for key in ("email", "unconfirmed_email"):
            if isinstance(fields.get(key), str):
                fields[key] = fields[key].strip().lower()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email and self._email_taken(new_email, exclude_user_id=user_id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def confirm_user(self, user_id: str, confirmed_at: datetime) -> Optional[User]:
        """Promote a pending email (if any) and stamp ``confirmed_at`` in one step."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.unconfirmed_email:
                if self._email_taken(user.unconfirmed_email, exclude_user_id=user_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = user.unconfirmed_email
                user.unconfirmed_email = None
            user.confirmed_at = confirmed_at
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    # active sessions
    def create_active_session(
        self,
        user_id: str,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> ActiveSession:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            sess = ActiveSession.new(
                user_id=user_id,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_active_session(self, session_id: str) -> Optional[ActiveSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_active_session_by_remember_token(
        self, remember_token: str
    ) -> Optional[ActiveSession]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.remember_token == remember_token),
                None,
            )
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str) -> List[ActiveSession]:
        with self._data_lock:
            owned = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)

    def delete_active_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "unconfirmed_email": user.unconfirmed_email,
            "confirmed_at": self._serialize_datetime(user.confirmed_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            unconfirmed_email=data.get("unconfirmed_email"),
            confirmed_at=self._deserialize_datetime(data.get("confirmed_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, sess: ActiveSession) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "remember_token": sess.remember_token,
            "created_at": self._serialize_datetime(sess.created_at),
            "user_agent": sess.user_agent,
            "ip_address": sess.ip_address,
        }

    def _deserialize_session(self, data: dict) -> ActiveSession:
        return ActiveSession(
            id=data["id"],
            user_id=data["user_id"],
            remember_token=data["remember_token"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True
