"""
vaultpilot Infrastructure: Shared Key-Value Store

Backs the three pieces of genuinely shared mutable state (per-user locks,
the session revocation list and the operation-budget counters). Every
primitive is atomic so overlapping cycles can never corrupt one user's entry.

Backends:
- InMemoryKeyValueStore: single process, thread-safe (tests, local runs)
- RedisKeyValueStore: cluster-safe, survives restarts
"""

import logging
import time
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

import redis
from redis import exceptions as redis_exceptions

from core.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Atomic primitives required by the lock, revocation and budget repositories."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Set key only if it does not exist. Returns True when the key was set."""
        raise NotImplementedError

    def delete_if_equals(self, key: str, expected: str) -> bool:
        """Delete key only if it currently holds `expected`."""
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, (re)arming its expiry. Returns the new value."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


class InMemoryKeyValueStore(KeyValueStore):
    """
    Thread-safe in-process store with per-key expiry.

    `clock` defaults to time.monotonic; tests inject a fake clock to expire
    entries without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = Lock()
        self._clock = clock
        self.available = True

    def _check_available(self, operation: str) -> None:
        if not self.available:
            raise StoreUnavailable(operation)

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def get(self, key: str) -> Optional[str]:
        self._check_available("get")
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._check_available("set")
        with self._lock:
            self._data[key] = (value, self._expiry(ttl_seconds))

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._check_available("set_if_absent")
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl_seconds))
            return True

    def delete_if_equals(self, key: str, expected: str) -> bool:
        self._check_available("delete_if_equals")
        with self._lock:
            if self._live(key) != expected:
                return False
            del self._data[key]
            return True

    def incr(self, key: str, ttl_seconds: int) -> int:
        self._check_available("incr")
        with self._lock:
            current = self._live(key)
            value = int(current or 0) + 1
            self._data[key] = (str(value), self._expiry(ttl_seconds))
            return value

    def delete(self, key: str) -> None:
        self._check_available("delete")
        with self._lock:
            self._data.pop(key, None)


# KEYS[1] = key, ARGV[1] = expected value
_COMPARE_AND_DELETE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store. Connection errors surface as StoreUnavailable."""

    def __init__(self, url: Optional[str] = None, client: Optional[redis.Redis] = None,
                 socket_timeout: float = 2.0):
        if client is None:
            if not url:
                raise ValueError("RedisKeyValueStore requires a url or a client")
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._client = client
        self._compare_and_delete = self._client.register_script(_COMPARE_AND_DELETE)
        logger.info("Initialized RedisKeyValueStore")

    @staticmethod
    def _text(value) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._text(self._client.get(key))
        except redis_exceptions.RedisError as e:
            raise StoreUnavailable("get", e) from e

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            self._client.set(key, value, ex=ttl_seconds or None)
        except redis_exceptions.RedisError as e:
            raise StoreUnavailable("set", e) from e

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(self._client.set(key, value, nx=True, ex=ttl_seconds))
        except redis_exceptions.RedisError as e:
            raise StoreUnavailable("set_if_absent", e) from e

    def delete_if_equals(self, key: str, expected: str) -> bool:
        try:
            return bool(self._compare_and_delete(keys=[key], args=[expected]))
        except redis_exceptions.RedisError as e:
            raise StoreUnavailable("delete_if_equals", e) from e

    def incr(self, key: str, ttl_seconds: int) -> int:
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            value, _ = pipe.execute()
            return int(value)
        except redis_exceptions.RedisError as e:
            raise StoreUnavailable("incr", e) from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis_exceptions.RedisError as e:
            raise StoreUnavailable("delete", e) from e


def create_kv_store_from_config(store_cfg) -> KeyValueStore:
    """Build the configured backend from a StoreConfig."""
    if store_cfg.backend == "redis":
        return RedisKeyValueStore(url=store_cfg.redis_url)
    return InMemoryKeyValueStore()
