"""Small key/value stores with per-key expiry (in-memory or Redis)."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis

from core.logging import get_logger

logger = get_logger(__name__)


class TTLStore(Protocol):
    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def delete(self, key: str) -> None: ...


class InMemoryTTLStore:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._items: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._items[key] = (self._clock() + max(ttl_seconds, 1), value)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            expires_at, value = item
            if expires_at <= self._clock():
                del self._items[key]
                return None
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class RedisTTLStore:
    """Redis-backed store. Connectivity problems degrade to a cache miss."""

    def __init__(self, client: "redis.Redis", *, prefix: str = "billing:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "billing:") -> "RedisTTLStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.setex(self._key(key), max(ttl_seconds, 1), value)
        except redis.RedisError as exc:
            logger.warning("Redis TTL store write failed for %s: %s", key, exc)

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._client.get(self._key(key))
        except redis.RedisError as exc:
            logger.warning("Redis TTL store read failed for %s: %s", key, exc)
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as exc:
            logger.warning("Redis TTL store delete failed for %s: %s", key, exc)


def build_ttl_store(redis_url: Optional[str]) -> TTLStore:
    if redis_url:
        logger.info("Using Redis TTL store for billing contexts.")
        return RedisTTLStore.from_url(redis_url)
    return InMemoryTTLStore()


__all__ = ["InMemoryTTLStore", "RedisTTLStore", "TTLStore", "build_ttl_store"]
