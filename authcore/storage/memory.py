from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    USER_MUTABLE_FIELDS,
    OAuthProviderLink,
    Session,
    User,
    utcnow,
)

_USER_DATETIME_FIELDS = {
    "email_verification_expires",
    "password_reset_expires",
    "locked_until",
    "last_login_at",
    "last_suspicious_activity",
    "created_at",
    "updated_at",
}


class MemoryStore:
    """In-process durable store used for tests and single-node development.

    Records are kept in dictionaries guarded by one re-entrant lock and,
    when ``persist`` is set, mirrored to ``<fs_root>/state/memory_store.json``
    after every mutation so a restart keeps accounts and sessions.
    """

    def __init__(self, fs_root: str = "/tmp/authcore", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.links: Dict[str, OAuthProviderLink] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # users
    def _check_user_uniqueness(self, user: User, *, exclude_id: Optional[str] = None) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if existing.username_lower == user.username_lower:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if user.email_lower and existing.email_lower == user.email_lower:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self._check_user_uniqueness(user)
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def create_user_with_provider(
        self, user: User, link: OAuthProviderLink
    ) -> Tuple[User, OAuthProviderLink]:
        """Insert a user and its provider link atomically."""
        with self._data_lock:
            self._check_user_uniqueness(user)
            self._check_link_uniqueness(link)
            self.users[user.id] = replace(user)
            self.links[link.id] = replace(link, user_id=user.id)
            self._persist_state()
            return replace(user), replace(self.links[link.id])

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        needle = username.strip().lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username_lower == needle), None
            )
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email_lower == needle), None)
            return replace(user) if user else None

    def get_user_by_verification_token(self, token_digest: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verification_token == token_digest
                ),
                None,
            )
            return replace(user) if user else None

    def get_user_by_reset_token(self, token_digest: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token == token_digest),
                None,
            )
            return replace(user) if user else None

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **changes, updated_at=utcnow())
            if "username_lower" in changes or "email_lower" in changes:
                self._check_user_uniqueness(updated, exclude_id=user_id)
            self.users[user_id] = updated
            self._persist_state()
            return replace(updated)

    def increment_failed_logins(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.failed_login_attempts += 1
            user.updated_at = utcnow()
            self._persist_state()
            return user.failed_login_attempts

    def increment_suspicious_activity(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.suspicious_activity_count += 1
            user.last_suspicious_activity = at
            user.updated_at = utcnow()
            self._persist_state()
            return user.suspicious_activity_count

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.session_token in self.sessions:
                raise ConstraintViolation("session token already exists", {"field": "session_token"})
            self.sessions[session.session_token] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            return replace(sess) if sess else None

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.id == session_id), None)
            return replace(sess) if sess else None

    def touch_session(self, session_token: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess:
                return False
            sess.last_used_at = at
            self._persist_state()
            return True

    def update_session_expiry(
        self, session_token: str, expires_at: datetime, last_used_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_token)
            if not sess:
                return None
            sess.expires_at = expires_at
            sess.last_used_at = last_used_at
            self._persist_state()
            return replace(sess)

    def delete_session(self, session_token: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [tok for tok, s in self.sessions.items() if s.user_id == user_id]
            for tok in stale:
                self.sessions.pop(tok, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [tok for tok, s in self.sessions.items() if s.expires_at <= now]
            for tok in stale:
                self.sessions.pop(tok, None)
            if stale:
                self._persist_state()
            return len(stale)

    # provider links
    def _check_link_uniqueness(self, link: OAuthProviderLink) -> None:
        for existing in self.links.values():
            if existing.provider == link.provider and existing.provider_id == link.provider_id:
                raise ConstraintViolation(
                    "provider account already linked",
                    {"provider": link.provider, "field": "provider_id"},
                )
            if existing.provider == link.provider and existing.user_id == link.user_id:
                raise ConstraintViolation(
                    "user already linked to provider",
                    {"provider": link.provider, "field": "user_id"},
                )

    def get_provider_link(self, provider: str, provider_id: str) -> Optional[OAuthProviderLink]:
        with self._data_lock:
            link = next(
                (
                    l
                    for l in self.links.values()
                    if l.provider == provider and l.provider_id == provider_id
                ),
                None,
            )
            return replace(link) if link else None

    def get_user_provider_link(self, user_id: str, provider: str) -> Optional[OAuthProviderLink]:
        with self._data_lock:
            link = next(
                (
                    l
                    for l in self.links.values()
                    if l.user_id == user_id and l.provider == provider
                ),
                None,
            )
            return replace(link) if link else None

    def create_provider_link(self, link: OAuthProviderLink) -> OAuthProviderLink:
        with self._data_lock:
            if link.user_id not in self.users:
                raise ConstraintViolation("link user missing", {"user_id": link.user_id})
            self._check_link_uniqueness(link)
            self.links[link.id] = replace(link)
            self._persist_state()
            return replace(link)

    def update_provider_link_email(self, link_id: str, email: Optional[str]) -> None:
        with self._data_lock:
            link = self.links.get(link_id)
            if not link:
                return
            link.email = email
            self._persist_state()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [
                {k: self._encode(v) for k, v in asdict(u).items()} for u in self.users.values()
            ],
            "sessions": [
                {k: self._encode(v) for k, v in asdict(s).items()} for s in self.sessions.values()
            ],
            "links": [
                {k: self._encode(v) for k, v in asdict(l).items()} for l in self.links.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise RuntimeError(f"corrupt state file {path}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["session_token"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.links = {l["id"]: self._deserialize_link(l) for l in data.get("links", [])}
        return True

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        known = {f.name for f in fields(User)}
        values = {k: v for k, v in data.items() if k in known}
        for key in _USER_DATETIME_FIELDS:
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        if values.get("birth_date"):
            values["birth_date"] = date.fromisoformat(values["birth_date"])
        return User(**values)

    @staticmethod
    def _deserialize_session(data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            session_token=data["session_token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            remember_me=data.get("remember_me"),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_used_at=datetime.fromisoformat(data["last_used_at"]),
        )

    @staticmethod
    def _deserialize_link(data: dict) -> OAuthProviderLink:
        return OAuthProviderLink(
            id=data["id"],
            user_id=data["user_id"],
            provider=data["provider"],
            provider_id=data["provider_id"],
            email=data.get("email"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
