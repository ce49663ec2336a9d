"""
Explicit cache objects and the memory manager that clears them.

Every cache-owning component registers its ``clear`` callable with a
MemoryManager when it is constructed. Under memory pressure the manager calls
every registered clear; nothing reaches into other modules to reset state.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import TYPE_CHECKING

import psutil

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

log = logging.getLogger("internal_linker.cache")


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MAX_BYTES = 100 * 1024 * 1024
DEFAULT_MEMORY_THRESHOLD = 0.7
DEFAULT_BACKOFF_SECONDS = 0.5


# =============================================================================
# Memory Manager
# =============================================================================


class MemoryManager:
    """
    Registry of cache clears, triggered by system memory pressure.

    Pressure is the fraction of physical memory in use as reported by
    psutil.virtual_memory().
    """

    def __init__(
        self,
        threshold: float = DEFAULT_MEMORY_THRESHOLD,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        usage_fn: Callable[[], float] | None = None,
    ):
        self.threshold = threshold
        self.backoff_seconds = backoff_seconds
        self._usage_fn = usage_fn or _system_memory_usage
        self._clears: dict[str, Callable[[], None]] = {}
        self._lock = threading.Lock()

    def register(self, name: str, clear: Callable[[], None]) -> None:
        """Register a cache's clear callable; re-registering a name replaces it."""
        with self._lock:
            self._clears[name] = clear

    def unregister(self, name: str) -> None:
        with self._lock:
            self._clears.pop(name, None)

    @property
    def registered(self) -> list[str]:
        with self._lock:
            return sorted(self._clears)

    def usage(self) -> float:
        return self._usage_fn()

    def under_pressure(self) -> bool:
        return self.usage() >= self.threshold

    def clear_all(self) -> None:
        with self._lock:
            clears = list(self._clears.items())
        for name, clear in clears:
            clear()
            log.debug("cleared cache %s", name)

    def relieve(self) -> bool:
        """
        Clear every registered cache and back off if memory is above threshold.

        Returns:
            True when pressure was detected
        """
        usage = self.usage()
        if usage < self.threshold:
            return False
        log.warning(
            "memory usage %.0f%% above threshold %.0f%%, clearing %d cache(s)",
            usage * 100,
            self.threshold * 100,
            len(self.registered),
        )
        self.clear_all()
        if self.backoff_seconds > 0:
            time.sleep(self.backoff_seconds)
        return True


def _system_memory_usage() -> float:
    return psutil.virtual_memory().percent / 100.0


# =============================================================================
# Vector Cache
# =============================================================================


class VectorCache:
    """
    LRU cache of document vectors bounded by entry count and total bytes.

    Keys combine the vocabulary fingerprint with the sorted terms, so vectors
    from different vocabulary generations never collide. Changing corpus
    drops everything.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        memory_manager: MemoryManager | None = None,
    ):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries: OrderedDict[tuple[str, tuple[str, ...]], NDArray[np.float64]] = OrderedDict()
        self._bytes = 0
        self._fingerprint: str | None = None
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        if memory_manager is not None:
            memory_manager.register("vector_cache", self.clear)

    @staticmethod
    def make_key(terms: list[str] | tuple[str, ...], fingerprint: str) -> tuple[str, tuple[str, ...]]:
        return fingerprint, tuple(sorted(terms))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def nbytes(self) -> int:
        return self._bytes

    @property
    def fingerprint(self) -> str | None:
        return self._fingerprint

    def get(self, key: tuple[str, tuple[str, ...]]) -> NDArray[np.float64] | None:
        with self._lock:
            vector = self._entries.get(key)
            if vector is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return vector

    def put(self, key: tuple[str, tuple[str, ...]], vector: NDArray[np.float64]) -> None:
        size = int(vector.nbytes)
        if size > self.max_bytes:
            return
        with self._lock:
            old = self._entries.pop(key, None)
            if old is not None:
                self._bytes -= int(old.nbytes)
            while self._entries and (
                len(self._entries) >= self.max_entries or self._bytes + size > self.max_bytes
            ):
                _, evicted = self._entries.popitem(last=False)
                self._bytes -= int(evicted.nbytes)
            self._entries[key] = vector
            self._bytes += size

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._bytes = 0

    def invalidate_on_corpus_change(self, fingerprint: str) -> bool:
        """
        Drop every entry when the corpus fingerprint differs from the last one seen.

        Returns:
            True when the cache was invalidated
        """
        with self._lock:
            if self._fingerprint == fingerprint:
                return False
            changed = self._fingerprint is not None
            self._fingerprint = fingerprint
            self._entries.clear()
            self._bytes = 0
        if changed:
            log.info("corpus changed, vector cache invalidated")
        return changed


# =============================================================================
# Module exports
# =============================================================================

__all__ = [
    "MemoryManager",
    "VectorCache",
]
