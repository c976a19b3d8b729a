from __future__ import annotations

import copy
import json
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from switchboard.logging import get_logger
from switchboard.service.errors import ContextNotFound
from switchboard.storage.context_store import (
    DEFAULT_TTL_SECONDS,
    ContextStore,
    merge_context,
)
from switchboard.storage.models import SessionContext, utcnow

logger = get_logger(__name__)

KEY_PREFIX = "switchboard:context:"
# Reconnect attempts per command before the error reaches the caller
MAX_RETRIES = 3


def build_redis_client(
    redis_url: str, *, socket_timeout: float = 5.0, retries: int = MAX_RETRIES
) -> aioredis.Redis:
    """Async client that retries transient connection failures with capped backoff."""
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        retry=Retry(ExponentialBackoff(cap=2.0, base=0.05), retries),
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )


def verify_connection(redis_url: str) -> None:
    """Assert Redis connectivity before enabling dependent features."""
    # A short-lived synchronous client avoids binding the async client to a
    # temporary event loop during startup checks.
    sync_client = Redis.from_url(redis_url, decode_responses=True)
    try:
        sync_client.ping()
    finally:
        sync_client.close()


class RedisContextStore(ContextStore):
    """Context store backed by Redis keys with native expiry."""

    def __init__(
        self,
        redis_url: str,
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        client: Optional[aioredis.Redis] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.redis_url = redis_url
        self.default_ttl = default_ttl
        self.client = client or build_redis_client(redis_url)
        self._clock = clock

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{KEY_PREFIX}{session_id}"

    def _decode(self, raw: Optional[str]) -> Optional[SessionContext]:
        if raw is None:
            return None
        return SessionContext.from_dict(json.loads(raw))

    async def _write(self, session_id: str, context: SessionContext, ttl: int) -> None:
        if ttl <= 0:
            # Redis rejects a non-positive EX; the entry is already expired
            await self.delete(session_id)
            return
        await self.client.set(
            self._key(session_id), json.dumps(context.to_dict(), default=str), ex=ttl
        )

    async def get(self, session_id: str) -> Optional[SessionContext]:
        try:
            context = self._decode(await self.client.get(self._key(session_id)))
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            logger.warning("context_decode_failed", session_id=session_id, error=str(exc))
            await self.delete(session_id)
            return None
        if context is None:
            return None
        if context.is_expired(self._clock()):
            await self.delete(session_id)
            logger.debug("context_expired_on_read", session_id=session_id)
            return None
        return context

    async def set(
        self, session_id: str, context: SessionContext, ttl_seconds: Optional[int] = None
    ) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        stored = copy.deepcopy(context)
        stored.expires_at = self._clock() + timedelta(seconds=ttl)
        await self._write(session_id, stored, ttl)

    async def update(self, session_id: str, partial: Mapping[str, Any]) -> SessionContext:
        current = await self.get(session_id)
        if current is None:
            raise ContextNotFound(session_id)
        merged = merge_context(current, partial, now=self._clock())
        ttl = await self.client.ttl(self._key(session_id))
        if ttl is None or ttl <= 0:
            ttl = self.default_ttl
        await self._write(session_id, merged, int(ttl))
        return merged

    async def delete(self, session_id: str) -> None:
        await self.client.delete(self._key(session_id))

    async def exists(self, session_id: str) -> bool:
        return await self.get(session_id) is not None

    async def set_expiry(self, session_id: str, ttl_seconds: int) -> None:
        current = await self.get(session_id)
        if current is None:
            raise ContextNotFound(session_id)
        current.expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        await self._write(session_id, current, ttl_seconds)

    async def get_all_sessions(self) -> List[str]:
        sessions: List[str] = []
        async for key in self.client.scan_iter(match=f"{KEY_PREFIX}*", count=200):
            sessions.append(key[len(KEY_PREFIX):])
        return sessions

    async def clear_all(self) -> None:
        keys = [key async for key in self.client.scan_iter(match=f"{KEY_PREFIX}*", count=200)]
        if keys:
            await self.client.delete(*keys)

    async def is_healthy(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.warning("context_store_unhealthy", error=str(exc))
            return False

    async def shutdown(self) -> None:
        await self.client.aclose()
