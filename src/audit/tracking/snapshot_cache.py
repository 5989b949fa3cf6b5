"""
Snapshot Cache

Bounded, TTL-evicted store of pre-mutation entity snapshots, keyed by
entity id and (when a transaction is active) the session id.

Features:
- Session-scoped keys isolate concurrent mutations of the same entity
- Session-less fallback for call sites that cannot resolve a session
- Eager sweep when the capacity bound is reached
- Background sweeper thread owned by the instance

Usage:
    cache = SnapshotCache(ttl_seconds=3600, max_entries=1000)
    cache.store(lead_id, state, session_id)
    old_state = cache.pop(lead_id, session_id)
    cache.shutdown()
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TYPE_CHECKING

from config.logging_config import get_logger

if TYPE_CHECKING:
    from config.change_tracking import ChangeTrackingSettings

logger = logging.getLogger(__name__)
sweeper_logger = get_logger(__name__, component="snapshot-sweeper")

_KEY_SEPARATOR = ":"


@dataclass
class SnapshotEntry:
    """Cached pre-image. Timestamps come from the cache's monotonic clock."""
    snapshot: Any
    timestamp: float
    created_at: float
    session_id: Optional[str] = None


class SnapshotCache:
    """
    Process-wide pre-image store, constructed once and injected.

    All operations are guarded by a re-entrant lock, so the cache can be
    shared by worker threads and by tasks on any event loop.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        sweep_interval_seconds: float = 3600,
        max_entries: int = 1000,
        max_lifetime_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        autostart: bool = True,
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Idle time after which an entry is stale
            sweep_interval_seconds: Interval of the background sweep
            max_entries: Capacity that triggers an eager sweep
            max_lifetime_seconds: Hard age limit regardless of reads (default: 2 x TTL)
            clock: Monotonic time source
            autostart: Start the background sweeper immediately
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.max_entries = max_entries
        self.max_lifetime_seconds = max_lifetime_seconds or ttl_seconds * 2
        if self.max_lifetime_seconds < ttl_seconds:
            raise ValueError("max_lifetime_seconds must be >= ttl_seconds")

        self._clock = clock
        self._entries: Dict[str, SnapshotEntry] = {}
        self._lock = threading.RLock()

        self._stop_event = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        # Stats
        self._swept = 0
        self._evicted = 0
        self._hits = 0
        self._misses = 0

        if autostart:
            self.start()

    @classmethod
    def from_settings(cls, settings: "ChangeTrackingSettings", **kwargs) -> "SnapshotCache":
        """Build a cache from ChangeTrackingSettings."""
        return cls(
            ttl_seconds=settings.snapshot_ttl_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            max_entries=settings.max_snapshot_entries,
            max_lifetime_seconds=settings.max_snapshot_lifetime_seconds,
            **kwargs,
        )

    @staticmethod
    def make_key(entity_id: Any, session_id: Optional[str] = None) -> str:
        """Composite key: ``entity_id`` or ``entity_id:session_id``."""
        if session_id:
            return f"{entity_id}{_KEY_SEPARATOR}{session_id}"
        return str(entity_id)

    # =========================================================================
    # CORE OPERATIONS
    # =========================================================================

    def store(self, entity_id: Any, snapshot: Any, session_id: Optional[str] = None) -> None:
        """Store a deep copy of ``snapshot`` as the pre-image for this entity/session."""
        key = self.make_key(entity_id, session_id)
        copied = copy.deepcopy(snapshot)

        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._sweep_locked(now)
                if len(self._entries) >= self.max_entries:
                    self._evict_least_recent_locked()

            self._entries[key] = SnapshotEntry(
                snapshot=copied,
                timestamp=now,
                created_at=now,
                session_id=session_id,
            )

    def get(self, entity_id: Any, session_id: Optional[str] = None) -> Optional[Any]:
        """
        Look up a pre-image.

        Tries the session-scoped key first, then the session-less key. A hit
        refreshes the entry's idle timestamp; stale entries are treated as
        missing and dropped.
        """
        with self._lock:
            entry = self._lookup_locked(entity_id, session_id)
            if entry is None:
                self._misses += 1
                return None
            entry.timestamp = self._clock()
            self._hits += 1
            return entry.snapshot

    def pop(self, entity_id: Any, session_id: Optional[str] = None) -> Optional[Any]:
        """Get the pre-image and clear this entity's keys in one step."""
        with self._lock:
            entry = self._lookup_locked(entity_id, session_id)
            self._clear_locked(entity_id, session_id)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            return entry.snapshot

    def clear(self, entity_id: Any, session_id: Optional[str] = None) -> None:
        """Remove both the session-scoped and the session-less key for this entity."""
        with self._lock:
            self._clear_locked(entity_id, session_id)

    def clear_session(self, session_id: Optional[str]) -> int:
        """Remove every entry stored under ``session_id``. Returns the count removed."""
        if not session_id:
            return 0
        with self._lock:
            keys = [k for k, e in self._entries.items() if e.session_id == session_id]
            for key in keys:
                del self._entries[key]
        if keys:
            logger.debug(f"Cleared {len(keys)} snapshot(s) left by session {session_id}")
        return len(keys)

    def sweep(self) -> int:
        """Remove every stale entry. Returns the count removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    # =========================================================================
    # INTERNALS (caller holds the lock)
    # =========================================================================

    def _is_stale(self, entry: SnapshotEntry, now: float) -> bool:
        return (
            now - entry.timestamp > self.ttl_seconds
            or now - entry.created_at > self.max_lifetime_seconds
        )

    def _lookup_locked(self, entity_id: Any, session_id: Optional[str]) -> Optional[SnapshotEntry]:
        now = self._clock()
        keys = [self.make_key(entity_id, session_id)]
        if session_id:
            keys.append(self.make_key(entity_id))

        for key in keys:
            entry = self._entries.get(key)
            if entry is None:
                continue
            if self._is_stale(entry, now):
                del self._entries[key]
                self._swept += 1
                continue
            return entry
        return None

    def _clear_locked(self, entity_id: Any, session_id: Optional[str]) -> None:
        self._entries.pop(self.make_key(entity_id, session_id), None)
        self._entries.pop(self.make_key(entity_id), None)

    def _sweep_locked(self, now: float) -> int:
        stale = [key for key, entry in self._entries.items() if self._is_stale(entry, now)]
        for key in stale:
            del self._entries[key]
        self._swept += len(stale)
        if stale:
            logger.debug(f"Swept {len(stale)} stale snapshot(s), {len(self._entries)} remaining")
        return len(stale)

    def _evict_least_recent_locked(self) -> None:
        key = min(self._entries, key=lambda k: self._entries[k].timestamp)
        del self._entries[key]
        self._evicted += 1
        logger.warning(
            f"Snapshot cache at capacity ({self.max_entries}); evicted least recently used entry {key}"
        )

    # =========================================================================
    # BACKGROUND SWEEPER
    # =========================================================================

    def start(self) -> None:
        """Start the background sweeper thread."""
        with self._lock:
            if self._sweeper is not None and self._sweeper.is_alive():
                return
            self._stop_event.clear()
            self._sweeper = threading.Thread(
                target=self._sweeper_loop,
                daemon=True,
                name="snapshot-cache-sweeper",
            )
            self._sweeper.start()
        logger.debug(f"Snapshot sweeper started (interval={self.sweep_interval_seconds}s)")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the background sweeper thread."""
        self._stop_event.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=timeout)
        self._sweeper = None
        logger.debug("Snapshot sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweeper_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                removed = self.sweep()
            except Exception as e:
                sweeper_logger.error(f"Snapshot sweep failed: {e}")
                continue
            if removed:
                sweeper_logger.info(f"Swept {removed} stale snapshot(s)")

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "swept": self._swept,
                "evicted": self._evicted,
                "sweeper_running": self.is_running,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __enter__(self) -> "SnapshotCache":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.shutdown()
        return False
