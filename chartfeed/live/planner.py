"""Decide which time span to fetch for a given viewport."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import LoaderSettings
from ..utils.time import DAY_MS, TimeRange
from ..utils.timeframes import HOUR_MS, YEAR_MS, bars_in, initial_window, interval_to_ms
from .coverage import LoadedRangeState

INITIAL = "initial"
EARLIER = "earlier"
LATER = "later"
FORCED = "forced"


@dataclass(frozen=True, slots=True)
class FetchPlan:
    span: TimeRange
    limit: int
    direction: str
    at_floor: bool = False

    @property
    def historical(self) -> bool:
        return self.direction in (EARLIER, FORCED)


def buffer_for(interval_ms: int, covered: TimeRange) -> int:
    """Distance from a covered edge at which more data is requested."""

    if interval_ms < HOUR_MS:
        bars, fraction = 5, 0.1
    elif interval_ms < DAY_MS:
        bars, fraction = 10, 0.15
    else:
        bars, fraction = 20, 0.2
    return int(max(bars * interval_ms, covered.duration * fraction))


def history_floor(now_ms: int, settings: LoaderSettings) -> int:
    return now_ms - settings.history_floor_years * YEAR_MS


def reached_floor(covered: Optional[TimeRange], now_ms: int, settings: LoaderSettings) -> bool:
    return covered is not None and covered.start <= history_floor(now_ms, settings)


def limit_for(span: TimeRange, interval: str, settings: LoaderSettings) -> int:
    bars = bars_in(span, interval)
    return max(1, min(bars, settings.max_candles_per_request))


def initial_plan(
    interval: str,
    visible: Optional[TimeRange],
    now_ms: int,
    settings: LoaderSettings,
) -> FetchPlan:
    """First load for an interval, anchored on the visible end (or now)."""

    span_ms, limit = initial_window(interval)
    end = now_ms if visible is None else min(visible.end, now_ms)
    start = end - span_ms
    if visible is not None:
        start = min(start, visible.start)
    span = TimeRange(start, end)
    limit = max(limit, limit_for(span, interval, settings))
    return FetchPlan(span=span, limit=min(limit, settings.max_candles_per_request), direction=INITIAL)


def plan_viewport_fetch(
    visible: TimeRange,
    state: LoadedRangeState,
    interval: str,
    now_ms: int,
    settings: LoaderSettings,
    *,
    force_backfill: bool = False,
) -> Optional[FetchPlan]:
    """Return the next fetch for ``visible`` or ``None`` when nothing is needed.

    ``force_backfill`` skips the buffer check and asks for a block several
    times the current span before the covered start.
    """

    covered = state.covered_span
    if covered is None:
        return initial_plan(interval, visible, now_ms, settings)

    interval_ms = interval_to_ms(interval)
    buffer = buffer_for(interval_ms, covered)
    span_len = max(covered.duration, visible.duration, interval_ms)
    floor = history_floor(now_ms, settings)

    if force_backfill:
        if state.history_limit_reached:
            return None
        block = int(max(covered.duration, visible.duration, interval_ms) * settings.forced_span_multiplier)
        start = max(floor, covered.start - block)
        if start >= covered.start:
            return None
        span = TimeRange(start, covered.start)
        return FetchPlan(span, limit_for(span, interval, settings), FORCED, at_floor=start <= floor)

    if visible.start < covered.start + buffer and not state.history_limit_reached:
        multiplier = settings.extend_span_multiplier
        if now_ms - covered.start > settings.old_history_age_days * DAY_MS:
            multiplier *= settings.old_history_multiplier
        start = min(visible.start - buffer, covered.start - int(span_len * multiplier))
        start = max(start, floor)
        if start < covered.start:
            span = TimeRange(start, covered.start)
            return FetchPlan(span, limit_for(span, interval, settings), EARLIER, at_floor=start <= floor)

    if visible.end > covered.end - buffer and covered.end < now_ms:
        end = max(visible.end + buffer, covered.end + int(span_len * settings.extend_span_multiplier))
        end = min(end, now_ms)
        if end > covered.end:
            span = TimeRange(covered.end, end)
            return FetchPlan(span, limit_for(span, interval, settings), LATER)

    return None


class BackwardScrollTracker:
    """Count slow backward pans that never reach the buffer threshold."""

    def __init__(self, trigger: int = 3, *, min_bars: int = 5, min_ms: int = 60_000) -> None:
        self.trigger = max(1, int(trigger))
        self.min_bars = max(1, int(min_bars))
        self.min_ms = max(0, int(min_ms))
        self.count = 0
        self._last_start: Optional[int] = None

    @classmethod
    def from_settings(cls, settings: LoaderSettings) -> "BackwardScrollTracker":
        return cls(
            settings.backscroll_trigger,
            min_bars=settings.backscroll_min_bars,
            min_ms=settings.backscroll_min_ms,
        )

    def reset(self) -> None:
        self.count = 0
        self._last_start = None

    def seed(self, visible_start: int) -> None:
        """Use ``visible_start`` as the baseline for the next pan."""
        self.count = 0
        self._last_start = visible_start

    def observe(self, visible_start: int, interval_ms: int, *, crossed_buffer: bool) -> bool:
        """Record a settled viewport; True when a forced backfill is due."""

        previous, self._last_start = self._last_start, visible_start
        if previous is None:
            return False
        if crossed_buffer:
            self.count = 0
            return False
        moved_back = previous - visible_start
        if moved_back < 0:
            self.count = 0
            return False
        if moved_back > max(self.min_bars * interval_ms, self.min_ms):
            self.count += 1
        if self.count >= self.trigger:
            self.count = 0
            return True
        return False
