from __future__ import annotations

import math
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from authkeeper.config import SessionMode
from authkeeper.logging import get_logger
from authkeeper.service.crypto import SessionCipher, hash_value
from authkeeper.storage.common import open_record, rate_key, seal_record
from authkeeper.storage.models import RateLimitDecision, SessionRecord, User, utcnow


class MemorySessionStore:
    """In-process session store with the same semantics as ``RedisCache``.

    Intended for tests and single-process development. Every operation runs
    under one lock, which gives the same atomicity the Lua scripts give in
    Redis. ``clock`` returns epoch seconds and can be replaced to simulate
    expiry.
    """

    def __init__(
        self,
        cipher: SessionCipher,
        *,
        session_mode: SessionMode = SessionMode.SINGLE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher
        self.session_mode = SessionMode(session_mode)
        self.clock = clock
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._blacklist: Dict[str, float] = {}
        self._subjects: Dict[str, Set[str]] = {}
        self._attempts: Dict[str, List[float]] = {}
        self._attempts_expiry: Dict[str, float] = {}
        self._lock = threading.RLock()

    # -- internal helpers (caller holds the lock) ---------------------------

    def _live_blob(self, digest: str) -> Optional[str]:
        entry = self._sessions.get(digest)
        if entry is None:
            return None
        blob, expires_at = entry
        if expires_at <= self.clock():
            del self._sessions[digest]
            return None
        return blob

    def _is_listed(self, digest: str) -> bool:
        expires_at = self._blacklist.get(digest)
        if expires_at is None:
            return False
        if expires_at <= self.clock():
            del self._blacklist[digest]
            return False
        return True

    def _list(self, digest: str, ttl_seconds: int) -> None:
        self._blacklist[digest] = self.clock() + max(1, int(ttl_seconds))

    def _prune_rate_buckets(self, now: float) -> None:
        # Mirrors the PEXPIRE on the Redis rate key
        for bucket_key, expires_at in list(self._attempts_expiry.items()):
            if expires_at <= now:
                del self._attempts_expiry[bucket_key]
                self._attempts.pop(bucket_key, None)

    def _drop_from_index(self, digest: str) -> None:
        for subject, members in list(self._subjects.items()):
            members.discard(digest)
            if not members:
                del self._subjects[subject]

    # -- store interface ----------------------------------------------------

    async def put_session(
        self, record: SessionRecord, token: str, ttl_seconds: int
    ) -> None:
        digest = hash_value(token)
        blob = seal_record(self.cipher, record)
        with self._lock:
            members = self._subjects.setdefault(record.subject, set())
            if self.session_mode is SessionMode.SINGLE:
                for prior in list(members):
                    if prior == digest:
                        continue
                    if self._sessions.pop(prior, None) is not None:
                        self.logger.info("session_replaced", subject=record.subject)
                    self._list(prior, ttl_seconds)
                members.clear()
            members.add(digest)
            self._sessions[digest] = (blob, self.clock() + max(1, int(ttl_seconds)))

    async def get_session(self, token: str) -> Optional[SessionRecord]:
        with self._lock:
            blob = self._live_blob(hash_value(token))
        if blob is None:
            return None
        return open_record(self.cipher, blob)

    async def delete_session(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(hash_value(token), None)

    async def rotate_session(
        self,
        old_token: str,
        new_token: str,
        new_record: SessionRecord,
        ttl_seconds: int,
        blacklist_ttl_seconds: int,
    ) -> bool:
        old_digest = hash_value(old_token)
        new_digest = hash_value(new_token)
        blob = seal_record(self.cipher, new_record)
        with self._lock:
            if self._is_listed(old_digest) or self._live_blob(old_digest) is None:
                return False
            del self._sessions[old_digest]
            self._list(old_digest, blacklist_ttl_seconds)
            self._sessions[new_digest] = (blob, self.clock() + max(1, int(ttl_seconds)))
            members = self._subjects.setdefault(new_record.subject, set())
            if self.session_mode is SessionMode.SINGLE:
                members.clear()
            members.discard(old_digest)
            members.add(new_digest)
            return True

    async def revoke_session(self, token: str, blacklist_ttl_seconds: int) -> bool:
        digest = hash_value(token)
        with self._lock:
            existed = self._live_blob(digest) is not None
            self._sessions.pop(digest, None)
            self._list(digest, blacklist_ttl_seconds)
            self._drop_from_index(digest)
            return existed

    async def revoke_subject_sessions(
        self, subject: str, blacklist_ttl_seconds: int
    ) -> int:
        with self._lock:
            revoked = 0
            for digest in self._subjects.pop(subject, set()):
                if self._live_blob(digest) is not None:
                    del self._sessions[digest]
                    revoked += 1
                self._list(digest, blacklist_ttl_seconds)
            return revoked

    async def blacklist(self, token_value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._list(hash_value(token_value), ttl_seconds)

    async def is_blacklisted(
        self, token_value: str, *, timeout: Optional[float] = None
    ) -> bool:
        with self._lock:
            return self._is_listed(hash_value(token_value))

    async def consume_rate_limit(
        self, key: str, window_seconds: int, max_attempts: int
    ) -> RateLimitDecision:
        bucket_key = rate_key(key)
        with self._lock:
            now = self.clock()
            self._prune_rate_buckets(now)
            attempts = [
                ts for ts in self._attempts.get(bucket_key, []) if ts > now - window_seconds
            ]
            if len(attempts) >= max_attempts:
                if attempts:
                    self._attempts[bucket_key] = attempts
                else:
                    self._attempts.pop(bucket_key, None)
                    self._attempts_expiry.pop(bucket_key, None)
                oldest = attempts[0] if attempts else now
                retry_after = max(1, math.ceil(oldest + window_seconds - now))
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)
            attempts.append(now)
            self._attempts[bucket_key] = attempts
            self._attempts_expiry[bucket_key] = now + window_seconds
            return RateLimitDecision(
                allowed=True, remaining=max_attempts - len(attempts)
            )

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._blacklist.clear()
            self._subjects.clear()
            self._attempts.clear()
            self._attempts_expiry.clear()


class MemoryUserDirectory:
    """In-memory user directory keyed by internal id and provider subject id."""

    def __init__(self, *, default_role: str = "user") -> None:
        self.default_role = default_role
        self.users: Dict[str, User] = {}
        self._by_external: Dict[str, str] = {}
        self._lock = threading.RLock()

    async def find_or_create_by_external_id(
        self, external_id: str, defaults: Dict[str, Any]
    ) -> User:
        with self._lock:
            user_id = self._by_external.get(external_id)
            if user_id is None:
                user = User.new(
                    external_id,
                    defaults["email"],
                    name=defaults.get("name"),
                    picture_url=defaults.get("picture_url"),
                    role=defaults.get("role") or self.default_role,
                )
                self.users[user.id] = user
                self._by_external[external_id] = user.id
                return replace(user)
            user = self.users[user_id]
            # Cached profile fields follow the provider; role and active flag do not
            user.email = defaults.get("email") or user.email
            user.name = defaults.get("name") or user.name
            user.picture_url = defaults.get("picture_url") or user.picture_url
            user.version += 1
            return replace(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def touch_last_login(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.last_login_at = utcnow()
            user.version += 1
            return replace(user)

    async def set_active(self, user_id: str, active: bool) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.is_active = active
            user.version += 1
            return replace(user)

    async def set_role(self, user_id: str, role: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.role = role
            user.version += 1
            return replace(user)

