"""Bounded response cache with in-flight request coalescing."""
from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from ..utils.logging import get_logger
from ..utils.time import TimeRange

LOGGER = get_logger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
SeriesKey = Tuple[str, str]

_MISSING = object()


def request_key(endpoint: str, params: Mapping[str, Any]) -> str:
    """Canonical identity of a request, independent of parameter order."""

    clean = {key: value for key, value in params.items() if value is not None}
    return f"{endpoint}:{json.dumps(clean, sort_keys=True, default=str)}"


def _is_empty(data: Any) -> bool:
    if data is None:
        return True
    if isinstance(data, (list, tuple, dict)):
        return len(data) == 0
    return False


@dataclass(eq=False)
class _InFlight:
    key: str
    task: "asyncio.Task[Any]"
    series: Optional[SeriesKey] = None
    span: Optional[TimeRange] = None


class RequestCache:
    """Serve repeated requests from memory and share in-flight calls.

    Candle requests that pass ``series`` and ``span`` are also matched
    against in-flight requests for the same series: one whose span contains
    the new span, or overlaps more than ``overlap_threshold`` of it, is
    awaited instead of issuing another network call.
    """

    def __init__(
        self,
        *,
        capacity: int = 100,
        eviction: str = "lru",
        overlap_threshold: float = 0.7,
    ) -> None:
        if eviction not in {"lru", "fifo"}:
            raise ValueError(f"Unknown eviction policy: {eviction}")
        self.capacity = max(1, int(capacity))
        self.eviction = eviction
        self.overlap_threshold = float(overlap_threshold)
        self._entries: "OrderedDict[str, Any]" = OrderedDict()
        self._pending: Dict[str, _InFlight] = {}
        self._pending_by_series: Dict[SeriesKey, List[_InFlight]] = {}

    def get(self, cache_key: str, default: Any = None) -> Any:
        value = self._lookup(cache_key)
        return default if value is _MISSING else value

    def _lookup(self, cache_key: str) -> Any:
        if cache_key not in self._entries:
            return _MISSING
        if self.eviction == "lru":
            self._entries.move_to_end(cache_key)
        return self._entries[cache_key]

    def put(self, cache_key: str, data: Any) -> None:
        if cache_key in self._entries and self.eviction == "lru":
            self._entries.move_to_end(cache_key)
        self._entries[cache_key] = data
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            LOGGER.debug("Evicted cache entry %s", evicted)

    def invalidate(self, predicate: Callable[[str], bool]) -> int:
        keys = [key for key in self._entries if predicate(key)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, cache_key: str) -> bool:
        return cache_key in self._entries

    def _find_overlapping(self, series: SeriesKey, span: TimeRange) -> Optional[_InFlight]:
        for inflight in self._pending_by_series.get(series, []):
            if inflight.span is None:
                continue
            if inflight.span.contains(span):
                return inflight
            if span.duration > 0 and inflight.span.overlap(span) > span.duration * self.overlap_threshold:
                return inflight
        return None

    async def fetch(
        self,
        endpoint: str,
        params: Mapping[str, Any],
        cache_key: str,
        fetcher: Fetcher,
        *,
        series: Optional[SeriesKey] = None,
        span: Optional[TimeRange] = None,
    ) -> Any:
        cached = self._lookup(cache_key)
        if cached is not _MISSING:
            LOGGER.debug("Cache hit for %s", cache_key)
            return cached

        key = request_key(endpoint, params)
        inflight = self._pending.get(key)
        if inflight is None and series is not None and span is not None:
            inflight = self._find_overlapping(series, span)
            if inflight is not None:
                LOGGER.debug("Coalescing %s %s onto in-flight %s", series, span, inflight.span)
        elif inflight is not None:
            LOGGER.debug("Request already in flight for %s", key)
        if inflight is not None:
            return await asyncio.shield(inflight.task)

        task = asyncio.ensure_future(self._run(cache_key, fetcher))
        entry = _InFlight(key=key, task=task, series=series, span=span)
        self._pending[key] = entry
        if series is not None:
            self._pending_by_series.setdefault(series, []).append(entry)
        task.add_done_callback(lambda _task: self._settle(entry))
        # Callers may be cancelled (symbol switch); the shared request still completes.
        return await asyncio.shield(task)

    async def _run(self, cache_key: str, fetcher: Fetcher) -> Any:
        data = await fetcher()
        if not _is_empty(data):
            self.put(cache_key, data)
        return data

    def _settle(self, entry: _InFlight) -> None:
        if self._pending.get(entry.key) is entry:
            del self._pending[entry.key]
        if entry.series is not None:
            siblings = self._pending_by_series.get(entry.series, [])
            if entry in siblings:
                siblings.remove(entry)
            if not siblings:
                self._pending_by_series.pop(entry.series, None)
        if not entry.task.cancelled() and entry.task.exception() is not None:
            LOGGER.debug("In-flight request %s failed: %s", entry.key, entry.task.exception())
