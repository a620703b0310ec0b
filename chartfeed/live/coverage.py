"""Track which time spans have already been fetched per symbol and interval."""
from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Tuple

from ..utils.logging import get_logger
from ..utils.time import TimeRange

LOGGER = get_logger(__name__)

DEFAULT_MIN_EMPTY_SPAN_MS = 1_000
DEFAULT_MAX_EMPTY_SPANS = 20
DEFAULT_EMPTY_OVERLAP_THRESHOLD = 0.8

Key = Tuple[str, str]


@dataclass
class LoadedRangeState:
    """Coverage bookkeeping for one (symbol, interval).

    ``covered_span`` is a single convex span: a hole left inside it by a
    skipped fetch still counts as covered. Known-empty spans exist to avoid
    re-probing stretches that returned nothing (weekends, delistings).
    """

    covered_span: Optional[TimeRange] = None
    known_empty_spans: Deque[TimeRange] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_MAX_EMPTY_SPANS)
    )
    history_limit_reached: bool = False
    consecutive_empty: int = 0
    min_empty_span_ms: int = DEFAULT_MIN_EMPTY_SPAN_MS
    empty_overlap_threshold: float = DEFAULT_EMPTY_OVERLAP_THRESHOLD

    def record_covered(self, span: TimeRange) -> TimeRange:
        if self.covered_span is None:
            self.covered_span = span
        else:
            self.covered_span = self.covered_span.union(span)
        return self.covered_span

    def record_empty(self, span: TimeRange) -> bool:
        if span.duration < self.min_empty_span_ms:
            LOGGER.debug("Ignoring empty span %s shorter than %sms", span, self.min_empty_span_ms)
            return False
        if span in self.known_empty_spans:
            return False
        # deque(maxlen) drops the oldest span once the cap is reached
        self.known_empty_spans.append(span)
        return True

    def is_known_empty(self, span: TimeRange) -> bool:
        if span.duration <= 0:
            return any(empty.contains_point(span.start) for empty in self.known_empty_spans)
        threshold = span.duration * self.empty_overlap_threshold
        return any(empty.overlap(span) > threshold for empty in self.known_empty_spans)

    def is_covered(self, span: TimeRange) -> bool:
        return self.covered_span is not None and self.covered_span.contains(span)

    def reset_history_limit(self) -> None:
        self.history_limit_reached = False
        self.consecutive_empty = 0


class RangeCoverageIndex:
    """Coverage states keyed by ``(symbol, interval)``."""

    def __init__(
        self,
        *,
        min_empty_span_ms: int = DEFAULT_MIN_EMPTY_SPAN_MS,
        max_empty_spans: int = DEFAULT_MAX_EMPTY_SPANS,
        empty_overlap_threshold: float = DEFAULT_EMPTY_OVERLAP_THRESHOLD,
    ) -> None:
        self._min_empty_span_ms = max(0, int(min_empty_span_ms))
        self._max_empty_spans = max(1, int(max_empty_spans))
        self._empty_overlap_threshold = float(empty_overlap_threshold)
        self._states: Dict[Key, LoadedRangeState] = {}

    def _key(self, symbol: str, interval: str) -> Key:
        return symbol.upper(), interval

    def _new_state(self) -> LoadedRangeState:
        return LoadedRangeState(
            known_empty_spans=deque(maxlen=self._max_empty_spans),
            min_empty_span_ms=self._min_empty_span_ms,
            empty_overlap_threshold=self._empty_overlap_threshold,
        )

    def state(self, symbol: str, interval: str) -> LoadedRangeState:
        key = self._key(symbol, interval)
        current = self._states.get(key)
        if current is None:
            current = self._new_state()
            self._states[key] = current
        return current

    def record_covered(self, symbol: str, interval: str, span: TimeRange) -> TimeRange:
        return self.state(symbol, interval).record_covered(span)

    def record_empty(self, symbol: str, interval: str, span: TimeRange) -> bool:
        return self.state(symbol, interval).record_empty(span)

    def is_known_empty(self, symbol: str, interval: str, span: TimeRange) -> bool:
        return self.state(symbol, interval).is_known_empty(span)

    def is_covered(self, symbol: str, interval: str, span: TimeRange) -> bool:
        return self.state(symbol, interval).is_covered(span)

    def snapshot(self, symbol: str, interval: str) -> LoadedRangeState:
        return copy.deepcopy(self.state(symbol, interval))

    def restore(self, symbol: str, interval: str, saved: LoadedRangeState) -> LoadedRangeState:
        restored = copy.deepcopy(saved)
        self._states[self._key(symbol, interval)] = restored
        return restored

    def discard(self, symbol: str, interval: str) -> None:
        self._states.pop(self._key(symbol, interval), None)

    def clear(self) -> None:
        self._states.clear()

    def __contains__(self, key: Key) -> bool:
        symbol, interval = key
        return self._key(symbol, interval) in self._states

    def __len__(self) -> int:
        return len(self._states)
