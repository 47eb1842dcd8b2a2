from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _ordered(ranking: dict[str, int]) -> list[tuple[str, int]]:
    # Highest score first; ties by member descending, as a Redis ZREVRANGE returns them.
    return sorted(ranking.items(), key=lambda item: (item[1], item[0]), reverse=True)


@dataclass
class InMemoryCounterStore:
    """Process-local counter cache; expired keys read as absent."""

    clock: Callable[[], datetime] = _utcnow
    values: dict[str, object] = field(default_factory=dict)
    expires_at: dict[str, datetime] = field(default_factory=dict)

    async def increment(self, key: str, amount: int = 1) -> int:
        self._evict(key)
        current = self.values.get(key, 0)
        if not isinstance(current, int):
            raise TypeError(f"counter key holds a non-integer value: {key}")
        updated = current + amount
        self.values[key] = updated
        return updated

    async def get(self, key: str, default: object = None) -> object:
        self._evict(key)
        return self.values.get(key, default)

    async def put(self, key: str, value: object, ttl_seconds: int | None = None) -> None:
        self.values[key] = value
        if ttl_seconds is None:
            self.expires_at.pop(key, None)
        else:
            self.expires_at[key] = self.clock() + timedelta(seconds=ttl_seconds)

    async def expire(self, key: str, ttl_seconds: int) -> None:
        if key in self.values:
            self.expires_at[key] = self.clock() + timedelta(seconds=ttl_seconds)

    async def increment_ranked(
        self,
        key: str,
        member: str,
        amount: int = 1,
        *,
        limit: int,
        ttl_seconds: int | None = None,
    ) -> None:
        self._evict(key)
        ranking = self.values.get(key)
        if not isinstance(ranking, dict):
            ranking = {}
        ranking[member] = ranking.get(member, 0) + amount
        self.values[key] = dict(_ordered(ranking)[:limit])
        if ttl_seconds is not None:
            self.expires_at[key] = self.clock() + timedelta(seconds=ttl_seconds)

    async def top_ranked(self, key: str, count: int) -> list[tuple[str, int]]:
        self._evict(key)
        ranking = self.values.get(key)
        if not isinstance(ranking, dict):
            return []
        return _ordered(ranking)[:count]

    def _evict(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.clock():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)


@dataclass
class StubMirrorSink:
    published: list[str] = field(default_factory=list)

    async def publish(self, *, payload: str) -> None:
        self.published.append(payload)
