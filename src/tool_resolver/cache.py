# cache.py
# Script Cache: durable store of generated scripts with
# success/failure-driven quarantine and eviction.
#
# Status lifecycle:
#   Active → Quarantined   failure_count >= 3 and failure ratio > 0.5
#   Quarantined → Active   a success brings the ratio back under the bar
#   Quarantined → Evicted  two consecutive failures while quarantined
#   any → Evicted          idle longer than the horizon
#
# Evicted is terminal: the entry leaves disk and its promoted manifest
# leaves the catalog.

import asyncio
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tool_resolver.catalog import ToolCatalog
from tool_resolver.models import CacheEntry, CacheStatus, utcnow

logger = logging.getLogger(__name__)

QUARANTINE_MIN_FAILURES = 3
QUARANTINE_FAILURE_RATIO = 0.5
QUARANTINE_STRIKES_TO_EVICT = 2
DEFAULT_IDLE_HORIZON = timedelta(days=30)


def _is_failing(entry: CacheEntry) -> bool:
    return (
        entry.failure_count >= QUARANTINE_MIN_FAILURES
        and entry.failure_ratio > QUARANTINE_FAILURE_RATIO
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class CacheStore:
    """
    One JSON file per signature under `directory`.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so each entry update is atomic.
    """

    SUFFIX = ".json"

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, signature: str) -> Path:
        return self._dir / f"{signature}{self.SUFFIX}"

    def load_all(self) -> dict[str, CacheEntry]:
        entries: dict[str, CacheEntry] = {}
        for path in sorted(self._dir.glob(f"*{self.SUFFIX}")):
            try:
                entry = CacheEntry.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError, ValueError) as exc:
                logger.warning("Skipping unreadable cache entry %s: %s", path.name, exc)
                continue
            if entry.status is CacheStatus.EVICTED:
                continue
            entries[entry.signature] = entry
        return entries

    def write(self, entry: CacheEntry) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(entry.model_dump_json(indent=2))
            os.replace(tmp_name, self._path(entry.signature))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, signature: str) -> None:
        self._path(signature).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# ScriptCache
# ---------------------------------------------------------------------------


class ScriptCache:
    """
    Exclusive owner of CacheEntry lifecycle and persistence.

    Lookups never raise for absence: `get` returns None for unknown,
    quarantined, evicted, or idle-expired signatures. All methods are safe
    to call from several threads; each mutation holds only the lock of the
    entry it touches.

    Example:
        cache = ScriptCache(CacheStore(config.cache_dir), catalog=catalog)
        entry = cache.get(signature.digest)
        cache.record_outcome(signature.digest, success=False)
    """

    def __init__(
        self,
        store: CacheStore,
        catalog: ToolCatalog | None = None,
        idle_horizon: timedelta = DEFAULT_IDLE_HORIZON,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._idle_horizon = idle_horizon
        self._clock = clock

        self._registry_lock = threading.Lock()
        self._entry_locks: dict[str, threading.Lock] = {}
        self._entries: dict[str, CacheEntry] = store.load_all()
        logger.info("Script cache loaded %d entr(y/ies) from %s", len(self._entries), store.directory)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_for(self, signature: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._entry_locks.get(signature)
            if lock is None:
                lock = self._entry_locks[signature] = threading.Lock()
            return lock

    def _is_idle(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.last_used_at > self._idle_horizon

    def _evict_locked(self, entry: CacheEntry, reason: str, drop_lock: bool = True) -> None:
        """Caller holds the entry lock."""
        entry.status = CacheStatus.EVICTED
        self._store.delete(entry.signature)
        with self._registry_lock:
            self._entries.pop(entry.signature, None)
            if drop_lock:
                self._entry_locks.pop(entry.signature, None)
        logger.info("Evicted cached script %s for %r (%s)", entry.signature[:12], entry.action_name, reason)

    def _after_transition(self, entry: CacheEntry, before: CacheStatus) -> None:
        """Catalog side effects, run outside the entry lock."""
        if self._catalog is None or entry.status is before:
            return
        if entry.status is CacheStatus.ACTIVE:
            self._catalog.promote(entry)
        elif entry.status is CacheStatus.EVICTED:
            if self._catalog.demote(entry):
                self._promote_successor(entry)

    def _promote_successor(self, evicted: CacheEntry) -> None:
        """Hand the action's promoted slot to its most recently used Active entry."""
        candidates = [
            e
            for e in self.active_entries()
            if e.action_name == evicted.action_name and e.signature != evicted.signature
        ]
        if candidates:
            self._catalog.promote(max(candidates, key=lambda e: e.last_used_at))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, signature: str) -> CacheEntry | None:
        """Active entry for `signature`, or None."""
        with self._registry_lock:
            entry = self._entries.get(signature)
        if entry is None:
            return None

        with self._lock_for(signature):
            if entry.status is not CacheStatus.ACTIVE:
                return None
            if self._is_idle(entry, self._clock()):
                self._evict_locked(entry, "idle")
                evicted = entry.model_copy()
            else:
                return entry.model_copy()

        self._after_transition(evicted, CacheStatus.ACTIVE)
        return None

    def peek(self, signature: str) -> CacheEntry | None:
        """Stored entry regardless of status (Evicted entries are gone)."""
        with self._registry_lock:
            entry = self._entries.get(signature)
        if entry is None:
            return None
        with self._lock_for(signature):
            return entry.model_copy()

    def active_entries(self) -> list[CacheEntry]:
        with self._registry_lock:
            entries = list(self._entries.values())
        return [e.model_copy() for e in entries if e.status is CacheStatus.ACTIVE]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, entry: CacheEntry) -> CacheEntry:
        """Commit a validated script and promote it if its counters allow."""
        status = CacheStatus.QUARANTINED if _is_failing(entry) else CacheStatus.ACTIVE
        entry = entry.model_copy(update={"status": status, "quarantine_strikes": 0})
        replaced: CacheEntry | None = None

        with self._lock_for(entry.signature):
            with self._registry_lock:
                existing = self._entries.get(entry.signature)
            if existing is not None and existing.status is not CacheStatus.EVICTED:
                self._evict_locked(existing, "replaced by regeneration", drop_lock=False)
                replaced = existing.model_copy()
            self._store.write(entry)
            with self._registry_lock:
                self._entries[entry.signature] = entry
            stored = entry.model_copy()

        if replaced is not None:
            self._after_transition(replaced, CacheStatus.ACTIVE)
        if self._catalog is not None and stored.status is CacheStatus.ACTIVE:
            self._catalog.promote(stored)
        logger.info(
            "Cached script %s for %r (%s)", entry.signature[:12], entry.action_name, status.value
        )
        return stored

    def record_outcome(self, signature: str, success: bool) -> CacheEntry | None:
        """
        Fold one execution outcome into the entry and re-evaluate its status.

        Returns a copy of the updated entry (status Evicted if this call
        evicted it), or None when the signature is not cached.
        """
        with self._registry_lock:
            entry = self._entries.get(signature)
        if entry is None:
            return None

        with self._lock_for(signature):
            if entry.status is CacheStatus.EVICTED:
                return None
            before = entry.status
            now = self._clock()
            idle = self._is_idle(entry, now)

            if success:
                entry.success_count += 1
                entry.quarantine_strikes = 0
            else:
                entry.failure_count += 1
                if entry.status is CacheStatus.QUARANTINED:
                    entry.quarantine_strikes += 1
            entry.last_used_at = now
            failing = _is_failing(entry)

            if idle:
                self._evict_locked(entry, "idle")
            elif entry.status is CacheStatus.QUARANTINED:
                if entry.quarantine_strikes >= QUARANTINE_STRIKES_TO_EVICT:
                    self._evict_locked(entry, "repeated failures while quarantined")
                elif success and not failing:
                    entry.status = CacheStatus.ACTIVE
                    logger.info("Cached script %s for %r recovered", signature[:12], entry.action_name)
            elif failing:
                entry.status = CacheStatus.QUARANTINED
                entry.quarantine_strikes = 0
                logger.warning(
                    "Quarantined cached script %s for %r (%d/%d failed)",
                    signature[:12],
                    entry.action_name,
                    entry.failure_count,
                    entry.total_runs,
                )

            if entry.status is not CacheStatus.EVICTED:
                self._store.write(entry)
            result = entry.model_copy()

        self._after_transition(result, before)
        return result

    def evict(self, signature: str, reason: str = "manual") -> bool:
        with self._registry_lock:
            entry = self._entries.get(signature)
        if entry is None:
            return False
        with self._lock_for(signature):
            if entry.status is CacheStatus.EVICTED:
                return False
            before = entry.status
            self._evict_locked(entry, reason)
            result = entry.model_copy()
        self._after_transition(result, before)
        return True

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def cleanup(self) -> list[str]:
        """
        Apply the idle-horizon rule to every entry.

        Each entry is examined under its own lock only, so concurrent
        `get`/`record_outcome` calls wait for at most one entry.
        """
        with self._registry_lock:
            signatures = list(self._entries)

        evicted: list[str] = []
        now = self._clock()
        for signature in signatures:
            with self._registry_lock:
                entry = self._entries.get(signature)
            if entry is None:
                continue
            with self._lock_for(signature):
                if entry.status is CacheStatus.EVICTED or not self._is_idle(entry, now):
                    continue
                before = entry.status
                self._evict_locked(entry, "idle")
                result = entry.model_copy()
            self._after_transition(result, before)
            evicted.append(signature)

        if evicted:
            logger.info("Cleanup evicted %d idle script(s)", len(evicted))
        return evicted

    async def run_periodic_cleanup(self, interval: float) -> None:
        """Sweep forever every `interval` seconds; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval)
            await asyncio.to_thread(self.cleanup)

    def promote_all(self) -> int:
        """Re-promote every Active entry, e.g. after a catalog rebuild at startup."""
        if self._catalog is None:
            return 0
        entries = self.active_entries()
        for entry in entries:
            self._catalog.promote(entry)
        return len(entries)

    def stats(self) -> dict[str, Any]:
        with self._registry_lock:
            entries = list(self._entries.values())
        successes = sum(e.success_count for e in entries)
        failures = sum(e.failure_count for e in entries)
        total = successes + failures
        return {
            "total_scripts": len(entries),
            "active": sum(e.status is CacheStatus.ACTIVE for e in entries),
            "quarantined": sum(e.status is CacheStatus.QUARANTINED for e in entries),
            "total_successes": successes,
            "total_failures": failures,
            "average_success_rate": successes / total if total else 0.0,
        }
