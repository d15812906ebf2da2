from __future__ import annotations

import asyncio
import time
import uuid
from typing import Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authkeeper.config import SessionMode
from authkeeper.logging import get_logger
from authkeeper.service.crypto import SessionCipher, hash_value
from authkeeper.service.errors import StoreUnavailableError, TamperedDataError
from authkeeper.storage.common import (
    BLACKLIST_PREFIX,
    SESSION_PREFIX,
    blacklist_key,
    open_record,
    rate_key,
    seal_record,
    session_key,
    subject_key,
)
from authkeeper.storage.models import RateLimitDecision, SessionRecord

logger = get_logger(__name__)

T = TypeVar("T")

_RETRYABLE = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError)

# Subject index is a plain string in single mode and a set in multi mode;
# scripts read either shape so a mode switch never strands sessions.
_INDEX_MEMBERS = """
local function index_members(key)
  local kind = redis.call('TYPE', key)['ok']
  if kind == 'string' then
    return {redis.call('GET', key)}
  elseif kind == 'set' then
    return redis.call('SMEMBERS', key)
  end
  return {}
end
"""


class RedisCache:
    """Redis-backed session store.

    Every state change that guards an invariant (single live session,
    exactly-once rotation, revoke, rate limit) runs as one Lua script so it
    is atomic across all application instances.
    """

    DEFAULT_OPERATION_TIMEOUT = 1.0

    # KEYS: session, subject index
    # ARGV: blob, ttl, digest, blacklist ttl, session prefix, blacklist prefix
    _PUT_SINGLE_SCRIPT = _INDEX_MEMBERS + """
local replaced = 0
for _, prior in ipairs(index_members(KEYS[2])) do
  if prior ~= ARGV[3] then
    replaced = replaced + redis.call('DEL', ARGV[5] .. prior)
    redis.call('SET', ARGV[6] .. prior, '1', 'EX', ARGV[4])
  end
end
redis.call('DEL', KEYS[2])
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[2])
return replaced
"""

    # KEYS: session, subject index
    # ARGV: blob, ttl, digest
    _PUT_MULTI_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
redis.call('SADD', KEYS[2], ARGV[3])
redis.call('EXPIRE', KEYS[2], ARGV[2])
return 1
"""

    # KEYS: old session, old blacklist entry, new session, subject index
    # ARGV: new blob, ttl, blacklist ttl, old digest, new digest, mode
    _ROTATE_SCRIPT = """
if redis.call('EXISTS', KEYS[2]) == 1 then
  return 0
end
if redis.call('DEL', KEYS[1]) == 0 then
  return 0
end
redis.call('SET', KEYS[2], '1', 'EX', ARGV[3])
redis.call('SET', KEYS[3], ARGV[1], 'EX', ARGV[2])
if ARGV[6] == 'multi' then
  redis.call('SREM', KEYS[4], ARGV[4])
  redis.call('SADD', KEYS[4], ARGV[5])
  redis.call('EXPIRE', KEYS[4], ARGV[2])
else
  redis.call('SET', KEYS[4], ARGV[5], 'EX', ARGV[2])
end
return 1
"""

    # KEYS: session, blacklist entry, subject index (may be a placeholder)
    # ARGV: blacklist ttl, digest, '1' when KEYS[3] is a real index
    _REVOKE_SCRIPT = """
local existed = redis.call('DEL', KEYS[1])
redis.call('SET', KEYS[2], '1', 'EX', ARGV[1])
if ARGV[3] == '1' then
  local kind = redis.call('TYPE', KEYS[3])['ok']
  if kind == 'set' then
    redis.call('SREM', KEYS[3], ARGV[2])
  elseif kind == 'string' and redis.call('GET', KEYS[3]) == ARGV[2] then
    redis.call('DEL', KEYS[3])
  end
end
return existed
"""

    # KEYS: subject index
    # ARGV: blacklist ttl, session prefix, blacklist prefix
    _REVOKE_SUBJECT_SCRIPT = _INDEX_MEMBERS + """
local revoked = 0
for _, digest in ipairs(index_members(KEYS[1])) do
  revoked = revoked + redis.call('DEL', ARGV[2] .. digest)
  redis.call('SET', ARGV[3] .. digest, '1', 'EX', ARGV[1])
end
redis.call('DEL', KEYS[1])
return revoked
"""

    # Sliding log: one ZSET member per accepted attempt, scored by time in ms.
    # KEYS: rate key
    # ARGV: now ms, window ms, max attempts, member
    _RATE_LIMIT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_ms = window
  if oldest[2] then
    retry_ms = tonumber(oldest[2]) + window - now
  end
  return {0, 0, math.max(1, math.ceil(retry_ms / 1000))}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, window)
return {1, limit - count - 1, 0}
"""

    def __init__(
        self,
        redis_url: str,
        cipher: SessionCipher,
        *,
        session_mode: SessionMode = SessionMode.SINGLE,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.05,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.cipher = cipher
        self.session_mode = SessionMode(session_mode)
        self.operation_timeout = operation_timeout
        self.retry_attempts = max(0, retry_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )
        self._put_single = self.client.register_script(self._PUT_SINGLE_SCRIPT)
        self._put_multi = self.client.register_script(self._PUT_MULTI_SCRIPT)
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._revoke_subject = self.client.register_script(self._REVOKE_SUBJECT_SCRIPT)
        self._rate_limit = self.client.register_script(self._RATE_LIMIT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup with a short-lived sync client."""
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
    ) -> T:
        """Run one store command with a timeout and bounded retries.

        Only connection and timeout failures are retried; script and
        protocol errors propagate unchanged.
        """
        budget = timeout or self.operation_timeout
        max_retries = self.retry_attempts if retries is None else retries
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(factory(), timeout=budget)
            except _RETRYABLE as exc:
                attempt += 1
                if attempt > max_retries:
                    logger.error(
                        "session_store_unavailable",
                        operation=operation,
                        attempts=attempt,
                        error=type(exc).__name__,
                    )
                    raise StoreUnavailableError(
                        "session store unavailable", detail={"operation": operation}
                    ) from exc
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "session_store_retry",
                    operation=operation,
                    attempt=attempt,
                    backoff_seconds=delay,
                )
                await asyncio.sleep(delay)

    async def put_session(
        self, record: SessionRecord, token: str, ttl_seconds: int
    ) -> None:
        digest = hash_value(token)
        blob = seal_record(self.cipher, record)
        ttl = max(1, int(ttl_seconds))
        keys = [session_key(digest), subject_key(record.subject)]
        if self.session_mode is SessionMode.MULTI:
            await self._call(
                "put_session",
                lambda: self._put_multi(keys=keys, args=[blob, ttl, digest]),
            )
            return
        replaced = await self._call(
            "put_session",
            lambda: self._put_single(
                keys=keys,
                args=[blob, ttl, digest, ttl, SESSION_PREFIX, BLACKLIST_PREFIX],
            ),
        )
        if int(replaced or 0):
            logger.info("session_replaced", subject=record.subject)

    async def get_session(self, token: str) -> Optional[SessionRecord]:
        key = session_key(hash_value(token))
        blob = await self._call("get_session", lambda: self.client.get(key))
        if blob is None:
            return None
        return open_record(self.cipher, blob)

    async def delete_session(self, token: str) -> None:
        key = session_key(hash_value(token))
        await self._call("delete_session", lambda: self.client.delete(key))

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
        keys = [
            session_key(old_digest),
            blacklist_key(old_digest),
            session_key(new_digest),
            subject_key(new_record.subject),
        ]
        args = [
            blob,
            max(1, int(ttl_seconds)),
            max(1, int(blacklist_ttl_seconds)),
            old_digest,
            new_digest,
            self.session_mode.value,
        ]
        # A retried rotation that already ran sees the old record gone and
        # reports a loss, which forces re-authentication rather than a double issue.
        result = await self._call(
            "rotate_session", lambda: self._rotate(keys=keys, args=args)
        )
        return bool(int(result or 0))

    async def revoke_session(self, token: str, blacklist_ttl_seconds: int) -> bool:
        digest = hash_value(token)
        record = None
        blob = await self._call(
            "revoke_session", lambda: self.client.get(session_key(digest))
        )
        if blob is not None:
            try:
                record = open_record(self.cipher, blob)
            except TamperedDataError:
                # Still delete and blacklist; only the index cleanup is skipped
                logger.warning("session_record_tampered", operation="revoke_session")
        index = subject_key(record.subject) if record else subject_key("")
        keys = [session_key(digest), blacklist_key(digest), index]
        args = [max(1, int(blacklist_ttl_seconds)), digest, "1" if record else "0"]
        existed = await self._call(
            "revoke_session", lambda: self._revoke(keys=keys, args=args)
        )
        return bool(int(existed or 0))

    async def revoke_subject_sessions(
        self, subject: str, blacklist_ttl_seconds: int
    ) -> int:
        keys = [subject_key(subject)]
        args = [max(1, int(blacklist_ttl_seconds)), SESSION_PREFIX, BLACKLIST_PREFIX]
        revoked = await self._call(
            "revoke_subject_sessions",
            lambda: self._revoke_subject(keys=keys, args=args),
        )
        return int(revoked or 0)

    async def blacklist(self, token_value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        key = blacklist_key(hash_value(token_value))
        await self._call(
            "blacklist", lambda: self.client.set(key, "1", ex=int(ttl_seconds))
        )

    async def is_blacklisted(
        self, token_value: str, *, timeout: Optional[float] = None
    ) -> bool:
        key = blacklist_key(hash_value(token_value))
        # The hot validation path passes its own sub-second budget and is not retried
        exists = await self._call(
            "is_blacklisted",
            lambda: self.client.exists(key),
            timeout=timeout,
            retries=0 if timeout is not None else None,
        )
        return bool(exists)

    async def consume_rate_limit(
        self, key: str, window_seconds: int, max_attempts: int
    ) -> RateLimitDecision:
        now_ms = int(time.time() * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"
        args = [now_ms, int(window_seconds) * 1000, int(max_attempts), member]
        allowed, remaining, retry_after = await self._call(
            "consume_rate_limit",
            lambda: self._rate_limit(keys=[rate_key(key)], args=args),
        )
        return RateLimitDecision(
            allowed=bool(int(allowed)),
            remaining=max(0, int(remaining)),
            retry_after=int(retry_after or 0),
        )

    async def ping(self) -> bool:
        return bool(await self._call("ping", lambda: self.client.ping(), retries=0))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
