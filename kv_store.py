"""TTL-capable key/value backends.

The bridge keeps every piece of cross-request state in one flat key/value
namespace. Backends only need point get, point put with an optional TTL and
point delete; there is no listing and no multi-key transaction.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis

import config

logger = logging.getLogger(__name__)


class KVStoreError(Exception):
    """Raised when the underlying backend fails."""


class KVStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent or expired."""

    @abstractmethod
    def put(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store a value, expiring after ``ttl`` seconds when given."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; deleting a missing key is not an error."""


class MemoryKVStore(KVStore):
    """Process-local store. Expiry is enforced lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def get(self, key):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def put(self, key, value, ttl=None):
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def __contains__(self, key):
        return self.get(key) is not None

    def __len__(self):
        now = self._clock()
        with self._lock:
            return sum(1 for _, exp in self._data.values() if exp is None or exp > now)


class RedisKVStore(KVStore):
    """Redis-backed store, shared between server processes."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_config(cls) -> 'RedisKVStore':
        client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            ssl=config.REDIS_SSL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        try:
            client.ping()
        except redis.ConnectionError as e:
            raise KVStoreError(f'Failed to connect to Redis: {e}') from e
        logger.info(f"Connected to Redis at {config.REDIS_HOST}:{config.REDIS_PORT}/{config.REDIS_DB}")
        return cls(client)

    def get(self, key):
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            raise KVStoreError(f'GET failed: {e}') from e

    def put(self, key, value, ttl=None):
        try:
            self.client.set(key, value, ex=ttl)
        except redis.RedisError as e:
            raise KVStoreError(f'SET failed: {e}') from e

    def delete(self, key):
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            raise KVStoreError(f'DEL failed: {e}') from e


def create_kv_store(backend: Optional[str] = None) -> KVStore:
    """Build the backend named by ``KV_BACKEND``."""
    backend = (backend or config.KV_BACKEND).lower()
    if backend == 'memory':
        return MemoryKVStore()
    if backend == 'redis':
        return RedisKVStore.from_config()
    raise ValueError(f'Unknown KV backend: {backend}')
