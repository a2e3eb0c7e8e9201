"""Page caches for paginated retrievals.

A cache entry is the ordered list of API response pages for one logical
query, keyed by a content-addressed string (see ``cache_key``). Writes are
best-effort from the caller's point of view; the Retriever logs and drops
cache failures.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Pages = list[dict[str, Any]]

DEFAULT_HASH_LENGTH = 16
"""Hex digits of the parameter digest kept in a cache key."""


class CachePolicy(Protocol):
    """Protocol for page caches. Implement get/set for custom backends."""

    def get(self, key: str) -> Pages | None: ...
    def set(self, key: str, value: Pages) -> None: ...


@runtime_checkable
class AsyncCachePolicy(Protocol):
    """Protocol for async page caches (Redis, object storage, etc.).

    The Retriever accepts either ``CachePolicy`` or ``AsyncCachePolicy``.
    When an ``AsyncCachePolicy`` is detected, ``await`` is used for get/set.
    """

    async def get(self, key: str) -> Pages | None: ...
    async def set(self, key: str, value: Pages) -> None: ...


def cache_key(tool_name: str, *parts: Any, params: dict[str, Any] | None = None,
              hash_length: int = DEFAULT_HASH_LENGTH) -> str:
    """Deterministic key from tool identity, scope parts and effective params.

    ``cache_key("user_data_retriever", 42, "Bill", params={...})`` gives
    ``user_data_retriever_42_Bill_<digest>``. Param order does not matter.
    """
    pieces = [tool_name, *(str(p) for p in parts if p is not None and p != "")]
    if params is not None:
        canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
        pieces.append(hashlib.sha256(canonical.encode()).hexdigest()[:hash_length])
    return "_".join(pieces)


class LRUPageCache:
    """Thread-safe in-memory LRU cache of page lists.

    Args:
        maxsize: Maximum number of entries. Oldest evicted on overflow.
        ttl: Time-to-live in seconds. ``None`` means entries never expire.
    """

    def __init__(self, maxsize: int = 128, ttl: float | None = None) -> None:
        self._cache: OrderedDict[str, tuple[Pages, float]] = OrderedDict()
        self._maxsize = maxsize
        self._ttl = ttl
        self._lock = threading.Lock()

    def get(self, key: str) -> Pages | None:
        with self._lock:
            if key not in self._cache:
                return None
            value, ts = self._cache[key]
            if self._ttl is not None and time.monotonic() - ts > self._ttl:
                del self._cache[key]
                return None
            self._cache.move_to_end(key)
            return list(value)

    def set(self, key: str, value: Pages) -> None:
        with self._lock:
            self._cache[key] = (list(value), time.monotonic())
            self._cache.move_to_end(key)
            if len(self._cache) > self._maxsize:
                self._cache.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class FilePageCache:
    """One JSON file per key under ``root``. Last write wins."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return self.root / f"{safe}.json"

    def get(self, key: str) -> Pages | None:
        path = self._path(key)
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            logger.warning("Ignoring malformed cache entry %s", path)
            return None
        return data

    def set(self, key: str, value: Pages) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_name(f"{path.stem}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(json.dumps(value, default=str), encoding="utf-8")
        tmp.replace(path)
