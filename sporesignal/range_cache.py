"""Per-range historical slices with TTL staleness, request coalescing and merging.

``RangeCache`` keeps one entry per ``(entity_id, range)`` key.  A fresh
entry is served as-is; a stale one is served while a background refresh
runs; a missing one is fetched, and concurrent requests for the same key
share that single in-flight fetch.

``SeriesCoordinator`` sits on top of the cache for one entity and tracks
which range is currently selected, so that a fetch that completes after the
user moved on is discarded rather than shown.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from .domain_models import BroadcastMessage, Sample
from .ranges import (
    LIVE_RANGE,
    RANGE_HOURS,
    RANGE_ORDER,
    fetch_range_for,
    normalize_range_token,
    range_window_ms,
    target_points,
)

if TYPE_CHECKING:
    from .broadcast import BroadcastChannel
    from .history_db import HistoryDB

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_S: float = 30.0
DEFAULT_LIVE_MAX_POINTS = 360

RangeKey = tuple[str, str]
Fetcher = Callable[[str, str], Awaitable[Sequence[Sample]]]


class FetchFailure(RuntimeError):
    """A historical read for one range failed."""


class StaleSelectionFailure(RuntimeError):
    """A fetch completed for a range selection that has since been replaced."""


class RangeState(enum.StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    REFRESHING = "refreshing"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class RangeSlice:
    range: str
    samples: tuple[Sample, ...]
    fetched_at: float


@dataclass(slots=True)
class RangeEntry:
    state: RangeState = RangeState.IDLE
    slice: RangeSlice | None = None
    error: str | None = None
    fetch_count: int = 0
    inflight: asyncio.Task[RangeSlice] | None = field(default=None, repr=False)


def downsample(samples: Sequence[Sample], target: int) -> list[Sample]:
    """Reduce *samples* to at most *target* points by contiguous bucket means.

    Each bucket becomes one point carrying the bucket's mean value and the
    timestamp of its middle sample.
    """
    n = len(samples)
    if target <= 0 or n <= target:
        return list(samples)
    bucket_size = math.ceil(n / target)
    values = np.fromiter((s.value for s in samples), dtype=np.float64, count=n)
    out: list[Sample] = []
    for start in range(0, n, bucket_size):
        end = min(start + bucket_size, n)
        mid = samples[start + (end - start) // 2]
        out.append(Sample(timestamp_ms=mid.timestamp_ms, value=float(values[start:end].mean())))
    return out


def view_for_range(samples: Sequence[Sample], token: str) -> list[Sample]:
    """Downsample to the range's point budget; live data is never downsampled."""
    token = normalize_range_token(token)
    if token == LIVE_RANGE:
        return list(samples)
    return downsample(samples, target_points(token))


def _consume_result(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()


class RangeCache:
    def __init__(
        self,
        fetcher: Fetcher,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetcher = fetcher
        self.ttl_s = max(0.0, float(ttl_s))
        self._clock = clock
        self._entries: dict[RangeKey, RangeEntry] = {}

    def _key(self, entity_id: str, token: str) -> RangeKey:
        return (entity_id, normalize_range_token(token))

    def _entry(self, key: RangeKey) -> RangeEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = RangeEntry()
        return entry

    # -- observation ----------------------------------------------------------

    def state(self, entity_id: str, token: str) -> RangeState:
        entry = self._entries.get(self._key(entity_id, token))
        return RangeState.IDLE if entry is None else entry.state

    def error(self, entity_id: str, token: str) -> str | None:
        entry = self._entries.get(self._key(entity_id, token))
        return None if entry is None else entry.error

    def fetch_count(self, entity_id: str, token: str) -> int:
        entry = self._entries.get(self._key(entity_id, token))
        return 0 if entry is None else entry.fetch_count

    def peek(self, entity_id: str, token: str) -> RangeSlice | None:
        entry = self._entries.get(self._key(entity_id, token))
        return None if entry is None else entry.slice

    def is_fresh(self, range_slice: RangeSlice) -> bool:
        return (self._clock() - range_slice.fetched_at) < self.ttl_s

    def merged(self, entity_id: str) -> list[Sample]:
        """Union of every cached slice for *entity_id*, one sample per timestamp."""
        dedup: dict[int, Sample] = {}
        for token in RANGE_ORDER:
            entry = self._entries.get((entity_id, token))
            if entry is None or entry.slice is None:
                continue
            for sample in entry.slice.samples:
                dedup[sample.timestamp_ms] = sample
        return [dedup[ts] for ts in sorted(dedup)]

    def latest_slice(self, entity_id: str) -> RangeSlice | None:
        """Most recently fetched historical slice for *entity_id*."""
        best: RangeSlice | None = None
        for (owner, token), entry in self._entries.items():
            if owner != entity_id or token == LIVE_RANGE or entry.slice is None:
                continue
            if best is None or entry.slice.fetched_at > best.fetched_at:
                best = entry.slice
        return best

    # -- access ---------------------------------------------------------------

    async def get(self, entity_id: str, token: str) -> RangeSlice:
        """Return the slice for ``(entity_id, token)``.

        Stale data is returned immediately while a refresh runs in the
        background.  Raises :class:`FetchFailure` only when nothing is cached.
        """
        key = self._key(entity_id, token)
        entry = self._entry(key)
        if entry.slice is not None:
            if not self.is_fresh(entry.slice):
                self._ensure_fetch(key, entry)
            return entry.slice
        return await asyncio.shield(self._ensure_fetch(key, entry))

    async def refresh(self, entity_id: str, token: str) -> RangeSlice:
        """Fetch ``(entity_id, token)`` now, joining any fetch already in flight."""
        key = self._key(entity_id, token)
        return await asyncio.shield(self._ensure_fetch(key, self._entry(key)))

    def invalidate(self, entity_id: str) -> int:
        """Forget every cached range of *entity_id*; in-flight fetches are cancelled."""
        keys = [key for key in self._entries if key[0] == entity_id]
        for key in keys:
            entry = self._entries.pop(key)
            if entry.inflight is not None and not entry.inflight.done():
                entry.inflight.cancel()
        return len(keys)

    def _ensure_fetch(self, key: RangeKey, entry: RangeEntry) -> asyncio.Task[RangeSlice]:
        if entry.inflight is not None and not entry.inflight.done():
            return entry.inflight
        entry.state = RangeState.REFRESHING if entry.slice is not None else RangeState.LOADING
        entry.fetch_count += 1
        task = asyncio.create_task(self._fetch(key, entry), name=f"range-fetch-{key[0]}-{key[1]}")
        task.add_done_callback(_consume_result)
        entry.inflight = task
        return task

    async def _fetch(self, key: RangeKey, entry: RangeEntry) -> RangeSlice:
        entity_id, token = key
        try:
            samples = await self._fetcher(entity_id, fetch_range_for(token))
        except asyncio.CancelledError:
            entry.state = RangeState.READY if entry.slice is not None else RangeState.IDLE
            raise
        except Exception as exc:
            entry.error = str(exc) or type(exc).__name__
            if entry.slice is None:
                entry.state = RangeState.ERROR
                LOGGER.warning("Fetch for %s/%s failed: %s", entity_id, token, entry.error)
                if isinstance(exc, FetchFailure):
                    raise
                raise FetchFailure(entry.error) from exc
            entry.state = RangeState.READY
            LOGGER.warning(
                "Refresh for %s/%s failed; keeping cached slice: %s",
                entity_id,
                token,
                entry.error,
            )
            return entry.slice
        finally:
            entry.inflight = None
        fetched_at = self._clock()
        range_slice = RangeSlice(range=token, samples=tuple(samples), fetched_at=fetched_at)
        entry.slice = range_slice
        entry.state = RangeState.READY
        entry.error = None
        if token == LIVE_RANGE:
            # Live mode reads the 4h window, so that entry is fresh too.
            seeded = self._entry((entity_id, fetch_range_for(token)))
            if seeded.inflight is None:
                seeded.slice = RangeSlice(
                    range=fetch_range_for(token), samples=range_slice.samples, fetched_at=fetched_at
                )
                seeded.state = RangeState.READY
                seeded.error = None
        return range_slice


class HistoryFetcher:
    """Range fetcher that reads windows from the durable store off the event loop."""

    def __init__(self, store: HistoryDB) -> None:
        self.store = store

    async def __call__(self, entity_id: str, token: str) -> list[Sample]:
        window_ms = range_window_ms(token)
        try:
            return await asyncio.to_thread(self.store.get_recent_window, entity_id, window_ms)
        except Exception as exc:
            raise FetchFailure(f"History read failed for {entity_id}/{token}: {exc}") from exc


class SeriesCoordinator:
    """Visible series for one entity across range switches and live updates."""

    def __init__(
        self,
        cache: RangeCache,
        entity_id: str,
        live_max_points: int = DEFAULT_LIVE_MAX_POINTS,
    ) -> None:
        self.cache = cache
        self.entity_id = entity_id
        self.selected = LIVE_RANGE
        self.error: str | None = None
        self._generation = 0
        self._history: list[Sample] = []
        self._live: deque[Sample] = deque(maxlen=max(1, int(live_max_points)))

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_live(self) -> bool:
        return self.selected == LIVE_RANGE

    def source(self) -> list[Sample]:
        return list(self._live) if self.is_live else list(self._history)

    async def select(self, token: str) -> list[Sample]:
        """Switch to *token* and return the resulting view.

        A result that arrives after a newer ``select`` call is dropped.
        """
        token = normalize_range_token(token)
        self._generation += 1
        generation = self._generation
        self.selected = token
        try:
            try:
                range_slice = await self.cache.get(self.entity_id, token)
            except FetchFailure as exc:
                self._check_current(generation, token)
                self.error = str(exc)
                self._apply(token, [])
                return self.view()
            self._check_current(generation, token)
        except StaleSelectionFailure:
            LOGGER.debug("Discarding superseded %s result for %s", token, self.entity_id)
            return self.view()
        self.error = self.cache.error(self.entity_id, token)
        if token == LIVE_RANGE:
            seed = self.cache.latest_slice(self.entity_id) or range_slice
            self._apply(token, seed.samples)
        else:
            self._apply(token, range_slice.samples)
        return self.view()

    def _check_current(self, generation: int, token: str) -> None:
        if generation != self._generation:
            raise StaleSelectionFailure(
                f"Selection {token} (generation {generation}) superseded by "
                f"generation {self._generation}"
            )

    def _apply(self, token: str, samples: Sequence[Sample]) -> None:
        if token == LIVE_RANGE:
            self._live.clear()
            self._live.extend(samples)
        else:
            self._history = list(samples)

    def push_live(self, message: BroadcastMessage) -> bool:
        """Append a live reading when the live range is selected."""
        if not self.is_live or message.entity_id != self.entity_id:
            return False
        if self._live and message.sample.timestamp_ms <= self._live[-1].timestamp_ms:
            return False
        self._live.append(message.sample)
        return True

    async def follow(self, channel: BroadcastChannel) -> None:
        """Feed live readings from *channel* until cancelled."""
        async with channel.subscribe(entity_id=self.entity_id) as sub:
            async for message in sub:
                if isinstance(message, BroadcastMessage):
                    self.push_live(message)

    def view(self) -> list[Sample]:
        return view_for_range(self.source(), self.selected)

    def stats(self) -> dict[str, Any]:
        samples = self.source()
        if not samples:
            return {"average": None, "total": None, "latest": None}
        values = np.fromiter((s.value for s in samples), dtype=np.float64, count=len(samples))
        total = float(values.sum())
        return {
            "average": total / len(samples),
            "total": total,
            "latest": samples[-1].to_dict(),
        }

    def meta(self) -> dict[str, Any]:
        return {
            "range": self.selected,
            "hours": RANGE_HOURS[self.selected],
            "count": len(self.source()),
            "state": self.cache.state(self.entity_id, self.selected).value,
            "error": self.error,
        }
