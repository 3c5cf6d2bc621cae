"""Deduplication engine deciding whether a hit is a "unique" engagement.

Mail providers pre-fetch images, proxies retry and link-preview crawlers
follow redirects, so the same beacon is routinely fetched several times.
For every ``(flow_id, step_id, contact_id, type)`` key the engine remembers
the timestamp of the last event it counted as unique.  A new event is unique
when no such timestamp exists or when at least one dedup window has elapsed
since it; otherwise it is a duplicate and the state is left untouched.

State lives in a fixed number of shards, each guarded by its own lock, so
hits on different keys rarely contend while hits on the same key are always
serialised.

Keys whose last unique event has left every window are swept out every
``prune_every`` claims, so memory tracks the recently active keys only.
"""

from __future__ import annotations

import datetime as dt
import itertools
import logging
import threading
import zlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from email_engagement.tracking.events import DedupKey, TrackingEvent, as_utc

LOGGER = logging.getLogger(__name__)

DEFAULT_WINDOW = dt.timedelta(minutes=30)
DEFAULT_PRUNE_EVERY = 10_000


@dataclass(frozen=True)
class DedupClaim:
    """Outcome of :meth:`DedupEngine.claim`.

    ``previous`` is the last-unique timestamp that was replaced, which lets
    :meth:`DedupEngine.release` roll a unique claim back when the event could
    not be stored.
    """

    key: DedupKey
    timestamp: dt.datetime
    is_unique: bool
    previous: Optional[dt.datetime] = None


class _Shard:
    __slots__ = ("lock", "last_unique")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.last_unique: Dict[DedupKey, dt.datetime] = {}


class DedupEngine:
    """Classify events as unique or duplicate within a trailing window."""

    def __init__(
        self,
        window: dt.timedelta = DEFAULT_WINDOW,
        *,
        shards: int = 64,
        window_overrides: Optional[Mapping[str, dt.timedelta]] = None,
        lock_timeout: Optional[float] = None,
        prune_every: int = DEFAULT_PRUNE_EVERY,
    ) -> None:
        if window < dt.timedelta(0):
            raise ValueError("dedup window cannot be negative")
        if shards < 1:
            raise ValueError("at least one shard is required")
        if prune_every < 0:
            raise ValueError("prune_every cannot be negative")
        self._window = window
        self._overrides: Dict[str, dt.timedelta] = dict(window_overrides or {})
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._lock_timeout = lock_timeout
        # 0 disables the automatic sweep.
        self._prune_every = prune_every
        self._claims = itertools.count(1)

    def window_for(self, flow_id: str) -> dt.timedelta:
        return self._overrides.get(flow_id, self._window)

    def set_window(self, flow_id: str, window: dt.timedelta) -> None:
        """Override the dedup window of one flow; zero disables dedup."""
        if window < dt.timedelta(0):
            raise ValueError("dedup window cannot be negative")
        self._overrides[flow_id] = window

    def _shard(self, key: DedupKey) -> _Shard:
        # crc32 is stable across processes, unlike hash() on str.
        digest = zlib.crc32("\x1f".join(key).encode("utf-8"))
        return self._shards[digest % len(self._shards)]

    def _acquire(self, shard: _Shard) -> bool:
        if self._lock_timeout is None:
            return shard.lock.acquire()
        return shard.lock.acquire(timeout=self._lock_timeout)

    def claim(self, event: TrackingEvent) -> DedupClaim:
        """Atomically decide uniqueness and record the claim."""
        key = event.dedup_key
        ts = as_utc(event.timestamp)
        window = self.window_for(event.flow_id)
        if window == dt.timedelta(0):
            return DedupClaim(key, ts, True)

        if self._prune_every and next(self._claims) % self._prune_every == 0:
            removed = self.prune(ts)
            LOGGER.debug("Pruned %d expired dedup keys", removed)

        shard = self._shard(key)
        if not self._acquire(shard):
            # Never risk a second unique under lock starvation.
            LOGGER.warning("Dedup lock timeout for key %s; counted as repeat", key)
            return DedupClaim(key, ts, False)
        try:
            last = shard.last_unique.get(key)
            if last is not None and ts - last < window:
                return DedupClaim(key, ts, False)
            shard.last_unique[key] = ts
            return DedupClaim(key, ts, True, previous=last)
        finally:
            shard.lock.release()

    def classify(self, event: TrackingEvent) -> bool:
        """Return ``True`` when ``event`` counts toward unique metrics."""
        return self.claim(event).is_unique

    def release(self, claim: DedupClaim) -> None:
        """Undo a unique claim whose event was never persisted.

        The state is only restored if no later event replaced the claim.
        """
        if not claim.is_unique or self.window_for(claim.key[0]) == dt.timedelta(0):
            return
        shard = self._shard(claim.key)
        with shard.lock:
            if shard.last_unique.get(claim.key) != claim.timestamp:
                return
            if claim.previous is None:
                del shard.last_unique[claim.key]
            else:
                shard.last_unique[claim.key] = claim.previous

    def warm(self, events: Iterable[TrackingEvent]) -> int:
        """Seed state from already stored unique events.

        Used after a restart so hits that arrive shortly after do not
        produce a second unique within the same window.  Returns the number
        of keys loaded.
        """
        loaded = 0
        for event in events:
            if not event.is_unique_for_metric:
                continue
            key = event.dedup_key
            ts = as_utc(event.timestamp)
            shard = self._shard(key)
            with shard.lock:
                last = shard.last_unique.get(key)
                if last is None or ts > last:
                    if last is None:
                        loaded += 1
                    shard.last_unique[key] = ts
        LOGGER.info("Dedup state warmed with %d keys", loaded)
        return loaded

    def prune(self, now: dt.datetime) -> int:
        """Drop keys whose last unique event is outside every window."""
        now = as_utc(now)
        removed = 0
        for shard in self._shards:
            with shard.lock:
                expired = [
                    key
                    for key, ts in shard.last_unique.items()
                    if now - ts >= self.window_for(key[0])
                ]
                for key in expired:
                    del shard.last_unique[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        return sum(len(shard.last_unique) for shard in self._shards)


__all__ = ["DedupEngine", "DedupClaim", "DEFAULT_WINDOW", "DEFAULT_PRUNE_EVERY"]
