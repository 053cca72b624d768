"""
Cache Store with swappable backends.

Read APIs are served from this cache instead of the file system. The Cache
Processor keeps it consistent with the content tree by deleting and writing
keys of the form ``{scope}:{identity}:{kind}:{path}``.
"""

import json
import logging
import posixpath
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from space_monitor.events import EventEmitter, emit


logger = logging.getLogger(__name__)


# Cache key kinds
CONTENT = "content"
META = "meta"
TREE = "tree"
LIST = "list"


def cache_key(scope: str, identity: str, kind: str, path: Optional[str] = None) -> str:
    """
    Build a cache key.

    Args:
        scope: "personal" or "git"
        identity: Username or space name
        kind: content, meta, tree or list
        path: Relative path; omitted for the per-identity tree key

    Returns:
        Key such as "personal:alice:content:notes/today.md"
    """
    scope = getattr(scope, "value", scope)
    if path is None:
        return f"{scope}:{identity}:{kind}"
    return f"{scope}:{identity}:{kind}:{path}"


def parent_dir(path: str) -> str:
    """Parent directory of a relative posix path, "." for top-level entries."""
    return posixpath.dirname(path) or "."


def cache_keys_for(scope: str, identity: str, path: str) -> Dict[str, str]:
    """
    All cache keys that depend on one file.

    Returns:
        Dict with content, meta, tree and list keys
    """
    return {
        CONTENT: cache_key(scope, identity, CONTENT, path),
        META: cache_key(scope, identity, META, path),
        TREE: cache_key(scope, identity, TREE),
        LIST: cache_key(scope, identity, LIST, parent_dir(path)),
    }


def search_key(scope: str, identity: str, path: str) -> str:
    """Search index key, e.g. "personal:alice:notes/today.md"."""
    scope = getattr(scope, "value", scope)
    return f"{scope}:{identity}:{path}"


class CacheBackend(ABC):
    """Storage behind a CacheStore."""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    def ping(self) -> bool:
        return True


class MemoryCacheBackend(CacheBackend):
    """Process-local dict guarded by a lock."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self):
        with self._lock:
            return list(self._data.keys())


class RedisCacheBackend(CacheBackend):
    """
    Redis-backed storage.

    Values are stored JSON-encoded so every backend returns the same Python
    values for the same writes.
    """

    def __init__(self, url: str = "redis://localhost:6379/0", client=None):
        """
        Initialize Redis backend.

        Args:
            url: Redis connection URL
            client: Pre-built client (used instead of connecting to url)
        """
        if client is None:
            import redis
            client = redis.Redis.from_url(url, decode_responses=True)

        self.url = url
        self.client = client

    def put(self, key: str, value: Any) -> None:
        self.client.set(key, json.dumps(value, default=str))

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return raw

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def ping(self) -> bool:
        return bool(self.client.ping())


class CacheStore:
    """
    Key/value cache used by every reader and by the Cache Processor.

    No TTL and no eviction; a key lives until it is deleted. Concurrent
    writers to one key race freely and the last write wins.
    """

    def __init__(self, backend: Optional[CacheBackend] = None, emitter: Optional[EventEmitter] = None):
        """
        Initialize cache store.

        Args:
            backend: Storage backend (in-memory when omitted)
            emitter: Receives cache:put / cache:get / cache:delete events
        """
        self.backend = backend or MemoryCacheBackend()
        self.emitter = emitter

    def put(self, key: str, value: Any) -> None:
        """Store a JSON value under key."""
        self.backend.put(key, value)
        emit(self.emitter, "cache:put", {"key": key})

    def get(self, key: str) -> Optional[Any]:
        """Read a key; None when absent."""
        value = self.backend.get(key)
        emit(self.emitter, "cache:get", {"key": key, "hit": value is not None})
        return value

    def delete(self, key: str) -> None:
        """Delete a key. Deleting an absent key is not an error."""
        self.backend.delete(key)
        emit(self.emitter, "cache:delete", {"key": key})

    def status(self) -> bool:
        """Liveness probe (pings networked backends)."""
        try:
            return self.backend.ping()
        except Exception as e:
            logger.warning(f"Cache backend probe failed: {e}")
            return False


def create_cache(
    backend: str = "memory",
    options: Optional[Dict[str, Any]] = None,
    emitter: Optional[EventEmitter] = None
) -> CacheStore:
    """
    Create a cache store for a backend name.

    Args:
        backend: "memory" or "redis"
        options: Backend options (redis: url)
        emitter: Event emitter for the store

    Returns:
        Configured CacheStore
    """
    options = options or {}

    if backend == "memory":
        store_backend = MemoryCacheBackend()
    elif backend == "redis":
        store_backend = RedisCacheBackend(url=options.get("url", "redis://localhost:6379/0"))
    else:
        raise ValueError(f"Unknown cache backend: {backend}")

    logger.info(f"Cache initialized with backend: {backend}")
    return CacheStore(store_backend, emitter)
