from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis


def _epoch(when: datetime) -> float:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.timestamp()


def _from_epoch(score: float) -> datetime:
    return datetime.fromtimestamp(float(score), tz=timezone.utc)


class RedisCache:
    """Thin Redis wrapper for the hot, ephemeral parts of authentication.

    Holds the access-token denylist, the sliding window of two-factor
    failures and pending (2FA-gated) logins. Nothing here is authoritative;
    the token store remains the source of truth for revocation.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic get-and-delete for Redis servers without GETDEL
    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token id to the denylist until its natural expiry."""
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def record_two_factor_failure(
        self, user_id: str, at: datetime, window_seconds: int
    ) -> None:
        key = f"auth:2fa:failures:{user_id}"
        score = _epoch(at)
        pipe = self.client.pipeline()
        pipe.zadd(key, {f"{score}:{uuid.uuid4().hex}": score})
        pipe.zremrangebyscore(key, "-inf", score - window_seconds)
        pipe.expire(key, max(window_seconds, 1))
        await pipe.execute()

    async def recent_two_factor_failures(
        self, user_id: str, since: datetime
    ) -> List[datetime]:
        entries = await self.client.zrangebyscore(
            f"auth:2fa:failures:{user_id}", f"({_epoch(since)}", "+inf", withscores=True
        )
        return [_from_epoch(score) for _, score in entries]

    async def set_pending_login(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"auth:pending:{token_hash}", json.dumps(payload), ex=max(ttl_seconds, 1)
        )

    async def get_pending_login(self, token_hash: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(f"auth:pending:{token_hash}")
        return self._decode_pending(raw)

    async def pop_pending_login(self, token_hash: str) -> Optional[Dict[str, Any]]:
        """Atomically fetch and delete a pending login so it is single use."""
        key = f"auth:pending:{token_hash}"
        try:
            raw = await self.client.getdel(key)
        except AttributeError:
            raw = await self.client.eval(self._POP_SCRIPT, 1, key)
        return self._decode_pending(raw)

    @staticmethod
    def _decode_pending(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    async def close(self) -> None:
        """Close the connection pool when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so callers await it like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:access:denylist:{jti}"))

    async def record_two_factor_failure(
        self, user_id: str, at: datetime, window_seconds: int
    ) -> None:
        key = f"auth:2fa:failures:{user_id}"
        score = _epoch(at)
        pipe = self._sync_client.pipeline()
        pipe.zadd(key, {f"{score}:{uuid.uuid4().hex}": score})
        pipe.zremrangebyscore(key, "-inf", score - window_seconds)
        pipe.expire(key, max(window_seconds, 1))
        pipe.execute()

    async def recent_two_factor_failures(
        self, user_id: str, since: datetime
    ) -> List[datetime]:
        entries = self._sync_client.zrangebyscore(
            f"auth:2fa:failures:{user_id}", f"({_epoch(since)}", "+inf", withscores=True
        )
        return [_from_epoch(score) for _, score in entries]

    async def set_pending_login(
        self, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            f"auth:pending:{token_hash}", json.dumps(payload), ex=max(ttl_seconds, 1)
        )

    async def get_pending_login(self, token_hash: str) -> Optional[Dict[str, Any]]:
        return RedisCache._decode_pending(self._sync_client.get(f"auth:pending:{token_hash}"))

    async def pop_pending_login(self, token_hash: str) -> Optional[Dict[str, Any]]:
        key = f"auth:pending:{token_hash}"
        try:
            raw = self._sync_client.getdel(key)
        except AttributeError:
            raw = self._sync_client.eval(RedisCache._POP_SCRIPT, 1, key)
        return RedisCache._decode_pending(raw)

    async def close(self) -> None:
        self._sync_client.close()
