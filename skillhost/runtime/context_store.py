# skillhost/runtime/context_store.py
from __future__ import annotations
import heapq
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from skillhost.errors import StorageFailure
from skillhost.observability.metrics import MetricsRegistry
from .retry import RetryEngine
from .storage import TRANSIENT_ERRORS, MemoryStorageAdapter, StorageAdapter
from .values import ensure_script_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextEntry:
    skill_id: str
    key: str
    value: Any
    ttl_seconds: float
    persist: bool
    created_at: float
    expires_at: Optional[float]
    generation: int

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class _Partition:
    """All entries of one skill. Guarded by its own lock; skills never contend with each other."""

    __slots__ = ("skill_id", "lock", "entries", "heap", "loaded", "generation")

    def __init__(self, skill_id: str):
        self.skill_id = skill_id
        self.lock = threading.RLock()
        self.entries: Dict[str, ContextEntry] = {}
        # (expires_at, generation, key); stale tuples are skipped when popped
        self.heap: List[Tuple[float, int, str]] = []
        self.loaded = False
        self.generation = 0

    def next_generation(self) -> int:
        self.generation += 1
        return self.generation

    def track(self, entry: ContextEntry) -> None:
        if entry.expires_at is None:
            return
        heapq.heappush(self.heap, (entry.expires_at, entry.generation, entry.key))
        if len(self.heap) > 2 * len(self.entries) + 64:
            self.heap = [
                (e.expires_at, e.generation, e.key) for e in self.entries.values() if e.expires_at is not None
            ]
            heapq.heapify(self.heap)


class ContextStore:
    """
    Per-skill key/value store with TTL and two durability tiers.

    Features:
      - lazy expiry on every read, plus a periodic sweep driven by a per-skill min-heap
      - persist=True writes reach the durable StorageAdapter before set() returns
      - transient storage faults retried with exponential backoff, then StorageFailure
      - volatile entries live only in memory; durable entries are reloaded on first access
    """

    def __init__(
        self,
        storage: Optional[StorageAdapter] = None,
        retry: Optional[RetryEngine] = None,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 30.0,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.storage = storage or MemoryStorageAdapter()
        self.retry = retry or RetryEngine(attempts=4, backoff_seconds=0.05, retry_on=TRANSIENT_ERRORS)
        self.clock = clock
        self.sweep_interval = sweep_interval_seconds
        self.metrics = metrics or MetricsRegistry()

        self._partitions: Dict[str, _Partition] = {}
        self._partitions_lock = threading.Lock()

        self._sweeper_thread: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

        self.storage.init()

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self) -> None:
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            return
        self._sweeper_stop.clear()
        self._sweeper_thread = threading.Thread(target=self._sweeper_loop, daemon=True, name="ContextSweeper")
        self._sweeper_thread.start()

    def stop(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            self._sweeper_thread.join(timeout=2.0)
        self._sweeper_thread = None

    def close(self) -> None:
        self.stop()
        self.storage.close()

    def _sweeper_loop(self) -> None:
        logger.debug("context sweeper started (interval=%.1fs)", self.sweep_interval)
        while not self._sweeper_stop.wait(self.sweep_interval):
            try:
                removed = self.sweep()
                if removed:
                    logger.debug("context sweep removed %d expired entries", removed)
            except Exception:
                logger.exception("context sweep failed")
        logger.debug("context sweeper exiting")

    # -------------------------
    # Partitions / durable tier
    # -------------------------
    def _partition(self, skill_id: str) -> _Partition:
        with self._partitions_lock:
            part = self._partitions.get(skill_id)
            if part is None:
                part = _Partition(skill_id)
                self._partitions[skill_id] = part
        if not part.loaded:
            with part.lock:
                if not part.loaded:
                    self._load_into(part)
        return part

    def _load_into(self, part: _Partition) -> int:
        ok, result = self.retry.run(lambda: self.storage.load_all(part.skill_id), describe=f"load context of {part.skill_id}")
        if not ok:
            raise StorageFailure(part.skill_id, None, self.retry.attempts, result)

        now = self.clock()
        loaded = 0
        for stored in result:
            if stored.expires_at is not None and now >= stored.expires_at:
                self._durable_delete_quietly(part.skill_id, stored.key)
                continue
            ttl = (stored.expires_at - stored.updated_at) if stored.expires_at is not None else 0
            entry = ContextEntry(
                skill_id=part.skill_id,
                key=stored.key,
                value=stored.value,
                ttl_seconds=max(ttl, 0),
                persist=True,
                created_at=stored.updated_at,
                expires_at=stored.expires_at,
                generation=part.next_generation(),
            )
            part.entries[stored.key] = entry
            part.track(entry)
            loaded += 1
        part.loaded = True
        logger.debug("loaded %d durable entries", loaded, extra={"skill_id": part.skill_id})
        return loaded

    def _durable(self, skill_id: str, key: Optional[str], fn: Callable[[], Any], describe: str) -> None:
        ok, result = self.retry.run(fn, describe=describe)
        if not ok:
            self.metrics.counter("context.storage_failures").inc()
            raise StorageFailure(skill_id, key, self.retry.attempts, result)

    def _durable_delete_quietly(self, skill_id: str, key: str) -> None:
        try:
            self.storage.delete(skill_id, key)
        except TRANSIENT_ERRORS:
            # a stale durable row is filtered out again on the next load
            logger.warning("could not delete expired durable entry", extra={"skill_id": skill_id, "key": key})

    def load(self, skill_id: str) -> int:
        """Seed the in-memory tier from durable storage (idempotent). Returns live entry count."""
        part = self._partition(skill_id)
        with part.lock:
            return len(part.entries)

    # -------------------------
    # Expiry
    # -------------------------
    def _expire_locked(self, part: _Partition, entry: ContextEntry) -> None:
        current = part.entries.get(entry.key)
        if current is None or current.generation != entry.generation:
            return
        del part.entries[entry.key]
        self.metrics.counter("context.expired").inc()
        if entry.persist:
            self._durable_delete_quietly(part.skill_id, entry.key)

    def _live_locked(self, part: _Partition, key: str, now: float) -> Optional[ContextEntry]:
        entry = part.entries.get(key)
        if entry is None:
            return None
        if entry.expired(now):
            self._expire_locked(part, entry)
            return None
        return entry

    def sweep(self, now: Optional[float] = None) -> int:
        """Remove every entry whose expires_at has passed. Cost is proportional to what expired."""
        now = self.clock() if now is None else now
        with self._partitions_lock:
            parts = list(self._partitions.values())
        removed = 0
        for part in parts:
            with part.lock:
                while part.heap and part.heap[0][0] <= now:
                    _, generation, key = heapq.heappop(part.heap)
                    entry = part.entries.get(key)
                    if entry is None or entry.generation != generation:
                        continue
                    self._expire_locked(part, entry)
                    removed += 1
        return removed

    # -------------------------
    # API
    # -------------------------
    def get(self, skill_id: str, key: str, default: Any = None) -> Any:
        part = self._partition(skill_id)
        with part.lock:
            entry = self._live_locked(part, key, self.clock())
            return default if entry is None else entry.value

    def has(self, skill_id: str, key: str) -> bool:
        part = self._partition(skill_id)
        with part.lock:
            return self._live_locked(part, key, self.clock()) is not None

    def entry(self, skill_id: str, key: str) -> Optional[ContextEntry]:
        part = self._partition(skill_id)
        with part.lock:
            return self._live_locked(part, key, self.clock())

    def set(self, skill_id: str, key: str, value: Any, ttl_seconds: float = 0, persist: bool = False) -> ContextEntry:
        if ttl_seconds is None or ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        value = ensure_script_value(value)
        part = self._partition(skill_id)
        with part.lock:
            now = self.clock()
            expires_at = now + ttl_seconds if ttl_seconds > 0 else None
            previous = part.entries.get(key)

            if persist:
                self._durable(
                    skill_id, key,
                    lambda: self.storage.write(skill_id, key, value, expires_at),
                    describe=f"durable write {skill_id}/{key}",
                )
            elif previous is not None and previous.persist:
                # the durable row must go, or the old value would come back after a restart
                self._durable(
                    skill_id, key,
                    lambda: self.storage.delete(skill_id, key),
                    describe=f"durable delete {skill_id}/{key}",
                )

            entry = ContextEntry(
                skill_id=skill_id,
                key=key,
                value=value,
                ttl_seconds=ttl_seconds,
                persist=persist,
                created_at=now,
                expires_at=expires_at,
                generation=part.next_generation(),
            )
            part.entries[key] = entry
            part.track(entry)
            return entry

    def remove(self, skill_id: str, key: str) -> None:
        part = self._partition(skill_id)
        with part.lock:
            entry = part.entries.get(key)
            if entry is None:
                return
            if entry.persist:
                self._durable(
                    skill_id, key,
                    lambda: self.storage.delete(skill_id, key),
                    describe=f"durable delete {skill_id}/{key}",
                )
            del part.entries[key]

    def keys(self, skill_id: str) -> List[str]:
        part = self._partition(skill_id)
        with part.lock:
            now = self.clock()
            return [k for k in list(part.entries) if self._live_locked(part, k, now) is not None]

    def snapshot(self, skill_id: str) -> Dict[str, Any]:
        part = self._partition(skill_id)
        with part.lock:
            now = self.clock()
            out = {}
            for k in list(part.entries):
                entry = self._live_locked(part, k, now)
                if entry is not None:
                    out[k] = entry.value
            return out

    def flush(self, skill_id: str) -> int:
        """Re-write every live durable entry of a skill. Returns the number written."""
        part = self._partition(skill_id)
        with part.lock:
            now = self.clock()
            written = 0
            for k in list(part.entries):
                entry = self._live_locked(part, k, now)
                if entry is None or not entry.persist:
                    continue
                self._durable(
                    skill_id, k,
                    lambda e=entry: self.storage.write(skill_id, e.key, e.value, e.expires_at),
                    describe=f"flush {skill_id}/{k}",
                )
                written += 1
            logger.debug("flushed %d durable entries", written, extra={"skill_id": skill_id})
            return written

    def clear(self, skill_id: str) -> None:
        part = self._partition(skill_id)
        with part.lock:
            self._durable(skill_id, None, lambda: self.storage.delete_all(skill_id), describe=f"clear {skill_id}")
            part.entries.clear()
            part.heap.clear()

    def evict(self, skill_id: str) -> None:
        """Drop a skill's in-memory tier. Durable entries are reloaded on next access."""
        with self._partitions_lock:
            self._partitions.pop(skill_id, None)

    def stats(self) -> Dict[str, Any]:
        with self._partitions_lock:
            parts = list(self._partitions.values())
        out = {}
        for part in parts:
            with part.lock:
                out[part.skill_id] = {
                    "entries": len(part.entries),
                    "durable": sum(1 for e in part.entries.values() if e.persist),
                    "pending_expiry": len(part.heap),
                }
        return out
