"""Redis-backed counter store with connection pooling."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass

import redis.asyncio as redis
from redis.exceptions import RedisError

from intake.domain.errors import DomainDependencyError

REDIS_DISABLED_URL = "memory://"
DEFAULT_REDIS_MAX_CONNECTIONS = 20
DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_HEALTH_CHECK_SECONDS = 30


def get_redis_url() -> str | None:
    url = os.getenv("REDIS_URL")
    if not url or url.strip().lower() == REDIS_DISABLED_URL:
        return None
    return url.strip()


def _redis_max_connections() -> int:
    value = os.getenv("REDIS_MAX_CONNECTIONS", "").strip()
    if value.isdigit():
        parsed = int(value)
        if parsed > 0:
            return parsed
    return DEFAULT_REDIS_MAX_CONNECTIONS


def build_async_redis_client(url: str) -> redis.Redis:
    pool = redis.ConnectionPool.from_url(
        url,
        max_connections=_redis_max_connections(),
        socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
        socket_timeout=DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS,
        health_check_interval=DEFAULT_REDIS_HEALTH_CHECK_SECONDS,
        retry_on_timeout=True,
    )
    return redis.Redis(connection_pool=pool)


@dataclass
class RedisCounterStore:
    """Integers are stored natively so INCRBY stays atomic; other values as JSON."""

    client: redis.Redis
    key_prefix: str = "intake:"

    async def increment(self, key: str, amount: int = 1) -> int:
        try:
            return int(await self.client.incrby(self._key(key), amount))
        except RedisError as exc:
            raise DomainDependencyError(f"counter cache unavailable: {exc}") from exc

    async def get(self, key: str, default: object = None) -> object:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            raise DomainDependencyError(f"counter cache unavailable: {exc}") from exc
        if raw is None:
            return default
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        try:
            return int(text)
        except ValueError:
            return json.loads(text)

    async def put(self, key: str, value: object, ttl_seconds: int | None = None) -> None:
        encoded = str(value) if isinstance(value, int) and not isinstance(value, bool) else json.dumps(value)
        try:
            await self.client.set(self._key(key), encoded, ex=ttl_seconds)
        except RedisError as exc:
            raise DomainDependencyError(f"counter cache unavailable: {exc}") from exc

    async def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            await self.client.expire(self._key(key), ttl_seconds)
        except RedisError as exc:
            raise DomainDependencyError(f"counter cache unavailable: {exc}") from exc

    async def increment_ranked(
        self,
        key: str,
        member: str,
        amount: int = 1,
        *,
        limit: int,
        ttl_seconds: int | None = None,
    ) -> None:
        name = self._key(key)
        try:
            await self.client.zincrby(name, amount, member)
            # Ranks are ascending, so this drops everything below the top `limit`.
            await self.client.zremrangebyrank(name, 0, -(limit + 1))
            if ttl_seconds is not None:
                await self.client.expire(name, ttl_seconds)
        except RedisError as exc:
            raise DomainDependencyError(f"counter cache unavailable: {exc}") from exc

    async def top_ranked(self, key: str, count: int) -> list[tuple[str, int]]:
        try:
            entries = await self.client.zrevrange(self._key(key), 0, count - 1, withscores=True)
        except RedisError as exc:
            raise DomainDependencyError(f"counter cache unavailable: {exc}") from exc
        return [
            (member.decode("utf-8") if isinstance(member, bytes) else str(member), int(score))
            for member, score in entries
        ]

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"
