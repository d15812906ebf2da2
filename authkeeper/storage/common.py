"""Key layout and the interface shared by the Redis and in-memory session stores.

Both backends key everything by a SHA-256 digest, so raw refresh tokens,
access token ids and client identifiers never appear in the store.
"""

from __future__ import annotations

import json
from typing import Optional, Protocol

from authkeeper.service.crypto import SessionCipher, hash_value
from authkeeper.storage.models import RateLimitDecision, SessionRecord

SESSION_PREFIX = "auth:session:"
SUBJECT_PREFIX = "auth:subject:"
BLACKLIST_PREFIX = "auth:blacklist:"
RATE_PREFIX = "auth:rate:"


def session_key(digest: str) -> str:
    return f"{SESSION_PREFIX}{digest}"


def subject_key(subject: str) -> str:
    return f"{SUBJECT_PREFIX}{subject}"


def blacklist_key(digest: str) -> str:
    return f"{BLACKLIST_PREFIX}{digest}"


def rate_key(client_key: str) -> str:
    # Hashed so arbitrary client identifiers cannot collide on delimiters
    return f"{RATE_PREFIX}{hash_value(client_key)}"


def seal_record(cipher: SessionCipher, record: SessionRecord) -> str:
    return cipher.encrypt(json.dumps(record.to_dict(), separators=(",", ":")))


def open_record(cipher: SessionCipher, blob: str) -> SessionRecord:
    return SessionRecord.from_dict(json.loads(cipher.decrypt(blob)))


class SessionStore(Protocol):
    """Async session/blacklist/rate-limit store used by ``AuthService``."""

    async def put_session(
        self, record: SessionRecord, token: str, ttl_seconds: int
    ) -> None: ...

    async def get_session(self, token: str) -> Optional[SessionRecord]: ...

    async def delete_session(self, token: str) -> None: ...

    async def rotate_session(
        self,
        old_token: str,
        new_token: str,
        new_record: SessionRecord,
        ttl_seconds: int,
        blacklist_ttl_seconds: int,
    ) -> bool: ...

    async def revoke_session(self, token: str, blacklist_ttl_seconds: int) -> bool: ...

    async def revoke_subject_sessions(
        self, subject: str, blacklist_ttl_seconds: int
    ) -> int: ...

    async def blacklist(self, token_value: str, ttl_seconds: int) -> None: ...

    async def is_blacklisted(
        self, token_value: str, *, timeout: Optional[float] = None
    ) -> bool: ...

    async def consume_rate_limit(
        self, key: str, window_seconds: int, max_attempts: int
    ) -> RateLimitDecision: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
