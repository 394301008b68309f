from __future__ import annotations

import json
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from korella.logging import get_logger
from korella.storage.common import (
    apply_failed_login,
    check_user_changes,
    normalize_email,
)
from korella.storage.errors import ConstraintViolation, RecordNotFound
from korella.storage.models import (
    AccountStatus,
    AuthEventType,
    AuthLog,
    OAuthLink,
    OAuthProvider,
    SingleUseToken,
    SubscriptionTier,
    TokenPurpose,
    User,
    utcnow,
)

_DATETIME_FIELDS = {
    "verified_at",
    "trial_expires_at",
    "locked_until",
    "last_login_at",
    "deleted_at",
    "tokens_valid_after",
    "created_at",
    "updated_at",
    "expires_at",
    "used_at",
}

_ENUM_FIELDS = {
    "account_status": AccountStatus,
    "subscription_tier": SubscriptionTier,
    "provider": OAuthProvider,
    "purpose": TokenPurpose,
    "event_type": AuthEventType,
}


class MemoryStore:
    """In-memory AuthStore for tests and single-process development.

    Every public method runs under one re-entrant lock, which makes the
    counter and token operations atomic with respect to each other. Records
    handed out are copies, so callers cannot mutate state behind the lock.
    When ``fs_root`` is given the state is snapshotted to JSON after each
    write and reloaded on start. ``clock`` stamps ``updated_at`` on writes that
    are not handed an explicit time.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock or utcnow
        self.users: Dict[str, User] = {}
        self.oauth_links: List[OAuthLink] = []
        self.tokens: Dict[str, SingleUseToken] = {}
        self.auth_logs: List[AuthLog] = []
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = normalize_email(user.email)
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        target = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == target), None)
            return replace(user) if user else None

    def update_user(self, user_id: str, **changes: Any) -> User:
        check_user_changes(changes)
        with self._data_lock:
            user = self._require_user(user_id)
            if "email" in changes:
                changes["email"] = normalize_email(changes["email"])
                if any(
                    u.email == changes["email"] and u.id != user_id
                    for u in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = self._clock()
            self._persist_state()
            return replace(user)

    def increment_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> Tuple[User, bool]:
        with self._data_lock:
            user = self._require_user(user_id)
            count, locked_until, newly_locked = apply_failed_login(
                user.failed_login_count,
                user.locked_until,
                threshold=threshold,
                lock_until=lock_until,
                now=now,
            )
            user.failed_login_count = count
            user.locked_until = locked_until
            user.updated_at = now
            self._persist_state()
            return replace(user), newly_locked

    def reset_failed_logins(self, user_id: str) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_count = 0
            user.locked_until = None
            user.updated_at = self._clock()
            self._persist_state()
            return replace(user)

    def record_login_success(
        self, user_id: str, *, at: datetime, ip_address: Optional[str]
    ) -> User:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_count = 0
            user.locked_until = None
            user.last_login_at = at
            user.last_login_ip = ip_address
            user.updated_at = at
            self._persist_state()
            return replace(user)

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return user

    # -- oauth links ---------------------------------------------------------

    def create_oauth_link(self, link: OAuthLink) -> OAuthLink:
        with self._data_lock:
            if link.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for oauth link", {"user_id": link.user_id}
                )
            for existing in self.oauth_links:
                if (
                    existing.provider == link.provider
                    and existing.provider_user_id == link.provider_user_id
                ):
                    raise ConstraintViolation(
                        "oauth identity already linked",
                        {"field": "provider_user_id", "provider": link.provider.value},
                    )
            stored = replace(link)
            self.oauth_links.append(stored)
            self._persist_state()
            return replace(stored)

    def get_oauth_link(
        self, provider: OAuthProvider, provider_user_id: str
    ) -> Optional[OAuthLink]:
        with self._data_lock:
            for link in self.oauth_links:
                if link.provider == provider and link.provider_user_id == provider_user_id:
                    return replace(link)
            return None

    def list_oauth_links(self, user_id: str) -> List[OAuthLink]:
        with self._data_lock:
            return [replace(link) for link in self.oauth_links if link.user_id == user_id]

    def delete_oauth_link(self, user_id: str, provider: OAuthProvider) -> bool:
        with self._data_lock:
            remaining = [
                link
                for link in self.oauth_links
                if not (link.user_id == user_id and link.provider == provider)
            ]
            removed = len(remaining) != len(self.oauth_links)
            self.oauth_links = remaining
            if removed:
                self._persist_state()
            return removed

    # -- single-use tokens ---------------------------------------------------

    def save_token(self, token: SingleUseToken) -> SingleUseToken:
        with self._data_lock:
            if token.token_hash in self.tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.tokens[token.token_hash] = replace(token)
            self._persist_state()
            return replace(token)

    def supersede_tokens(
        self, user_id: str, purpose: TokenPurpose, *, now: datetime
    ) -> int:
        with self._data_lock:
            superseded = 0
            for token in self.tokens.values():
                if token.user_id == user_id and token.purpose == purpose and not token.used:
                    token.used = True
                    token.used_at = now
                    superseded += 1
            if superseded:
                self._persist_state()
            return superseded

    def consume_token(
        self, token_hash: str, purpose: TokenPurpose, *, now: datetime
    ) -> Optional[SingleUseToken]:
        with self._data_lock:
            token = self.tokens.get(token_hash)
            if not token or token.purpose != purpose or not token.is_redeemable(now):
                return None
            token.used = True
            token.used_at = now
            self._persist_state()
            return replace(token)

    def purge_tokens(self, *, before: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, token in self.tokens.items()
                if token.expires_at < before or (token.used_at and token.used_at < before)
            ]
            for key in stale:
                self.tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit log -----------------------------------------------------------

    def append_auth_log(self, entry: AuthLog) -> None:
        with self._data_lock:
            self.auth_logs.append(replace(entry))
            self._persist_state()

    def list_auth_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuthLog]:
        with self._data_lock:
            entries = [
                replace(entry)
                for entry in self.auth_logs
                if user_id is None or entry.user_id == user_id
            ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def purge_auth_logs(self, *, before: datetime) -> int:
        with self._data_lock:
            kept = [entry for entry in self.auth_logs if entry.created_at >= before]
            purged = len(self.auth_logs) - len(kept)
            self.auth_logs = kept
            if purged:
                self._persist_state()
            return purged

    # -- snapshot persistence ------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(cls, data: dict):
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key in _DATETIME_FIELDS and isinstance(value, str):
                value = datetime.fromisoformat(value)
            elif key in _ENUM_FIELDS and value is not None:
                value = _ENUM_FIELDS[key](value)
            values[key] = value
        return cls(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "oauth_links": [self._serialize(link) for link in self.oauth_links],
            "tokens": [self._serialize(t) for t in self.tokens.values()],
            "auth_logs": [self._serialize(entry) for entry in self.auth_logs],
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
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.oauth_links = [
            self._deserialize(OAuthLink, link) for link in data.get("oauth_links", [])
        ]
        self.tokens = {
            t["token_hash"]: self._deserialize(SingleUseToken, t)
            for t in data.get("tokens", [])
        }
        self.auth_logs = [
            self._deserialize(AuthLog, entry) for entry in data.get("auth_logs", [])
        ]
        self.logger.info(
            "memory_store_loaded", users=len(self.users), tokens=len(self.tokens)
        )
        return True
