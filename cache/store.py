"""
cache/store.py -- In-process response cache with single-flight fetching.

Holds CacheEntry records keyed by fingerprint (cache/keys.py). Shared by every
request for the lifetime of the process; nothing survives a restart.

Usage:
    store = CacheStore()
    entry = store.get(key)                      # CacheEntry or None
    entry = store.fetch(key, loader, timeout=10, seen=entry)
    store.invalidate(key)
    store.invalidate_by_prefix("workflow_runs:owner=octo/repo=hello;")

Concurrency model:
  - Striped locks: each key maps to one of N threading.Locks by hash. A lock
    guards only in-memory state transitions (read an entry, install or clear a
    placeholder, store an entry) and is never held across the upstream call.

  - Single flight: the first caller that needs a fetch installs a _Flight as a
    "fetch in progress" placeholder and runs the loader. Concurrent callers
    for the same key wait on its Future instead of calling upstream again,
    and receive the same entry or the same exception. A waiter that times out
    fails on its own with UpstreamUnavailable; the fetch keeps running.

  - Compare-before-fetch: fetch() takes the entry the caller observed. If a
    different entry has been stored for the key since then, that entry is
    returned without fetching, so a caller that lost the race to a completed
    fetch does not repeat it.

  - Invalidation covers fetches in progress: invalidate() detaches the key's
    flight and marks it discarded. Its leader and waiters still get their
    result, but it is never stored, and a caller arriving after the
    invalidation starts a new fetch instead of joining the old one.

  - Visibility: the leader stores the new entry and clears the placeholder
    under the key's lock before resolving the Future, so every get() that
    starts after fetch() returns sees that entry or a newer one.

Expired entries (older than their ttl_seconds) are evicted lazily on read.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from core.errors import UpstreamUnavailable
from core.models import CacheEntry

logger = logging.getLogger("hubgate.cache")

_DEFAULT_STRIPES = 64


class _Flight:
    """One fetch in progress for a key."""

    __slots__ = ("future", "discarded")

    def __init__(self) -> None:
        self.future: Future = Future()
        self.discarded = False


class CacheStore:
    def __init__(self, stripes: int = _DEFAULT_STRIPES, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._flights: dict[str, _Flight] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]
        self._clock = clock

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _live(self, key: str) -> Optional[CacheEntry]:
        """Caller holds the key's lock."""
        entry = self._entries.get(key)
        if entry is not None and entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def _release(self, key: str, flight: _Flight) -> None:
        """Caller holds the key's lock. Clears the placeholder if it is still ours."""
        if self._flights.get(key) is flight:
            del self._flights[key]

    # ------------------------------------------------------------------
    # Plain key/value operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, or None if never stored or expired."""
        with self._lock_for(key):
            return self._live(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        """Store entry, replacing any previous one. Last writer wins."""
        if entry.key != key:
            raise ValueError(f"entry key {entry.key!r} does not match {key!r}")
        with self._lock_for(key):
            self._entries[key] = entry

    def invalidate(self, key: str) -> bool:
        """Drop the entry for key and discard any fetch of it in progress.

        Returns True if an entry was removed.
        """
        with self._lock_for(key):
            flight = self._flights.pop(key, None)
            if flight is not None:
                flight.discarded = True
            return self._entries.pop(key, None) is not None

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix. Returns the count."""
        keys = {k for k in list(self._entries) if k.startswith(prefix)}
        keys.update(k for k in list(self._flights) if k.startswith(prefix))
        removed = 0
        for key in keys:
            if self.invalidate(key):
                removed += 1
        if keys:
            logger.info("Invalidated %d cache entries under %s", removed, prefix)
        return removed

    def clear(self) -> None:
        for key in set(self._entries) | set(self._flights):
            self.invalidate(key)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Single-flight fetch
    # ------------------------------------------------------------------

    def in_flight(self, key: str) -> bool:
        with self._lock_for(key):
            return key in self._flights

    def fetch(
        self,
        key: str,
        loader: Callable[[], CacheEntry],
        timeout: float,
        seen: Optional[CacheEntry] = None,
    ) -> CacheEntry:
        """Run loader at most once per key at a time and store its result.

        Args:
            key:     Fingerprint of the resource.
            loader:  Performs the upstream call and returns the new entry.
                     Exceptions are propagated to the leader and every waiter;
                     nothing is stored when the loader raises.
            timeout: Seconds a waiter blocks on another caller's fetch.
            seen:    The entry the caller observed before deciding to fetch.

        The result is returned even when the key was invalidated while the
        loader ran; it is just not stored.

        Raises:
            UpstreamUnavailable: waited longer than timeout.
        """
        lock = self._lock_for(key)
        with lock:
            current = self._live(key)
            if current is not None and current is not seen:
                return current
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight

        if not leader:
            try:
                return flight.future.result(timeout=timeout)
            except FutureTimeoutError as e:
                logger.warning("Timed out after %.1fs waiting for in-flight fetch of %s", timeout, key)
                raise UpstreamUnavailable() from e

        try:
            entry = loader()
        except BaseException as exc:
            with lock:
                self._release(key, flight)
            flight.future.set_exception(exc)
            raise

        with lock:
            if flight.discarded:
                logger.debug("Fetch of %s finished after invalidation; not stored", key)
            else:
                self._entries[key] = entry
            self._release(key, flight)
        flight.future.set_result(entry)
        return entry
