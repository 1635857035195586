"""Thread-safe in-memory LRU cache with per-entry expiry.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** via ``json.dumps`` byte length, with pydantic models
  dumped first so catalog entries are sized by their real payload.
• **Expiry** is recorded per entry.  ``get`` treats an expired entry as a
  miss; ``get_stale`` still returns it, so a caller can keep serving the
  last good value while the upstream is down.
• **threading.Lock** because the same cache is shared by every session and
  may be read from worker threads as well as the event loop.
• Purely ephemeral: data is lost on process restart.

>>> cache = TTLCache(ttl_seconds=3600)
>>> cache.put("services", [service_a, service_b])
>>> cache.get("services")
[service_a, service_b]
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Default ceiling: 20 MB
DEFAULT_MAX_BYTES = 20 * 1024 * 1024
DEFAULT_TTL_SECONDS = 3600.0


@dataclass
class _Entry:
    value: Any
    size: int
    stored_at: float
    expires_at: float | None


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    return str(obj)


class TTLCache:
    """Least-Recently-Used cache bounded by byte size, with entry expiry."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float | None = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_bytes = max_bytes
        self._ttl = ttl_seconds
        self._clock = clock
        self._current_bytes = 0
        self._store: OrderedDict[str, _Entry] = OrderedDict()
        self._lock = threading.Lock()

    # ── Size estimation ──────────────────────────────────────────────

    @staticmethod
    def _estimate_bytes(value: Any) -> int:
        try:
            return len(json.dumps(value, default=_json_default).encode("utf-8"))
        except (TypeError, ValueError, OverflowError):
            return len(str(value).encode("utf-8"))

    def _is_expired(self, entry: _Entry) -> bool:
        return entry.expires_at is not None and self._clock() >= entry.expires_at

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the fresh cached value (promoting it to MRU) or ``None``."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None or self._is_expired(entry):
                return None
            self._store.move_to_end(key)
            return entry.value

    def get_stale(self, key: str) -> Any | None:
        """Return the cached value even if it has expired."""
        with self._lock:
            entry = self._store.get(key)
            return entry.value if entry is not None else None

    def put(self, key: str, value: Any, *, ttl_seconds: float | None = None) -> None:
        """Insert or overwrite *key*.  Evicts LRU entries if needed."""
        size = self._estimate_bytes(value)
        if size > self._max_bytes:
            logger.debug(
                "Cache: skipping key %s (size %d > max %d)",
                key, size, self._max_bytes,
            )
            return

        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        now = self._clock()
        with self._lock:
            if key in self._store:
                self._current_bytes -= self._store.pop(key).size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_key, evicted = self._store.popitem(last=False)
                self._current_bytes -= evicted.size
                logger.debug("Cache: evicted %s (%d bytes)", evicted_key, evicted.size)

            self._store[key] = _Entry(
                value=value,
                size=size,
                stored_at=now,
                expires_at=now + ttl if ttl else None,
            )
            self._current_bytes += size

    def invalidate(self, key: str) -> bool:
        """Remove a single key.  Returns ``True`` if the key existed."""
        with self._lock:
            entry = self._store.pop(key, None)
            if entry is None:
                return False
            self._current_bytes -= entry.size
            return True

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    def age(self, key: str) -> float | None:
        """Seconds since *key* was stored, or ``None`` if absent."""
        with self._lock:
            entry = self._store.get(key)
            return None if entry is None else self._clock() - entry.stored_at

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def has(self, key: str) -> bool:
        """Check for a fresh entry *without* promoting it."""
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and not self._is_expired(entry)
