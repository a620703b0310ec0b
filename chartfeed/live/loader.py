"""Viewport-driven incremental history loading for one chart."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..config import LoaderSettings
from ..io.api_client import ApiClient, ApiError
from ..io.realtime import RealtimeSubscriptionManager, SubscriptionHandle
from ..services.calendar import TradingSchedule, nearest_trading_instant
from ..services.candles import Candle, merge, normalize, normalize_one, upsert_one
from ..utils.logging import get_logger
from ..utils.time import TimeRange, format_ms
from ..utils.time import now_ms as utc_now_ms
from ..utils.timeframes import interval_to_ms, parse_interval
from .coverage import LoadedRangeState, RangeCoverageIndex
from .planner import (
    BackwardScrollTracker,
    FetchPlan,
    initial_plan,
    plan_viewport_fetch,
    reached_floor,
)
from .presenter import ChartPresenter

LOGGER = get_logger(__name__)

FETCH_ERRORS = (ApiError, httpx.HTTPError, ValueError)


class LoaderState(str, Enum):
    IDLE = "idle"
    DEBOUNCE_PENDING = "debounce_pending"
    LOADING = "loading"


@dataclass(frozen=True, slots=True)
class LoadContext:
    """Identity of the series a load was issued for."""

    symbol: str
    interval: str
    generation: int


@dataclass
class LoadResult:
    context: LoadContext
    plan: FetchPlan
    requested: Optional[TimeRange] = None
    candles: List[Candle] = field(default_factory=list)
    error: Optional[BaseException] = None
    skipped: bool = False
    applied: bool = False

    @property
    def empty(self) -> bool:
        return self.error is None and not self.candles


@dataclass
class SeriesSnapshot:
    series: List[Candle]
    coverage: LoadedRangeState
    instrument: Optional[TradingSchedule]
    visible: Optional[TimeRange] = None


class ViewportLoader:
    """Fetch history around the visible range, one load at a time.

    Viewport signals are debounced; the settled range is compared with the
    covered span and at most one historical load is in flight. Signals that
    arrive during a load are kept (latest wins) and evaluated once it
    settles. Results whose ``LoadContext`` is no longer active are dropped.
    """

    def __init__(
        self,
        api: ApiClient,
        presenter: ChartPresenter,
        *,
        realtime: RealtimeSubscriptionManager | None = None,
        settings: LoaderSettings | None = None,
        coverage: RangeCoverageIndex | None = None,
        clock: Callable[[], float] = time.monotonic,
        now_ms: Callable[[], int] = utc_now_ms,
    ) -> None:
        self.api = api
        self.presenter = presenter
        self.realtime = realtime
        self.settings = settings or LoaderSettings()
        self.coverage = coverage or RangeCoverageIndex()
        self._clock = clock
        self._now_ms = now_ms

        self.symbol: Optional[str] = None
        self.interval: Optional[str] = None
        self.series: List[Candle] = []
        self.instrument: Optional[TradingSchedule] = None
        self.state = LoaderState.IDLE

        self._context: Optional[LoadContext] = None
        self._generation = 0
        self._task: Optional["asyncio.Task[None]"] = None
        self._latest_visible: Optional[TimeRange] = None
        self._pending_visible: Optional[TimeRange] = None
        self._cooldown_until = 0.0
        self._switching = False
        self._tracker = BackwardScrollTracker.from_settings(self.settings)
        self._snapshots: Dict[Tuple[str, str], SeriesSnapshot] = {}
        self._subscription: Optional[SubscriptionHandle] = None

    @property
    def context(self) -> Optional[LoadContext]:
        return self._context

    @property
    def coverage_state(self) -> Optional[LoadedRangeState]:
        if self._context is None:
            return None
        return self.coverage.state(self._context.symbol, self._context.interval)

    @property
    def history_limit_reached(self) -> bool:
        state = self.coverage_state
        return bool(state and state.history_limit_reached)

    @property
    def is_loading(self) -> bool:
        return self.state is LoaderState.LOADING

    def has_snapshot(self, symbol: str, interval: str) -> bool:
        return (symbol.upper(), interval) in self._snapshots

    # ------------------------------------------------------------------
    # viewport signals
    # ------------------------------------------------------------------
    def on_visible_range_changed(self, from_s: float, to_s: float) -> None:
        """Record a visible range in seconds and (re)arm the debounce timer."""

        if self._context is None:
            return
        try:
            visible = TimeRange.from_seconds(from_s, to_s)
        except (TypeError, ValueError, OverflowError) as exc:
            LOGGER.warning("Ignoring invalid visible range %s-%s: %s", from_s, to_s, exc)
            return
        self._latest_visible = visible
        if self.state is LoaderState.LOADING:
            self._pending_visible = visible
            return
        if self._clock() < self._cooldown_until:
            LOGGER.debug("Ignoring range change during switch cooldown")
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.state = LoaderState.DEBOUNCE_PENDING
        self._task = asyncio.get_running_loop().create_task(self._debounced(self._context))

    async def _debounced(self, context: LoadContext) -> None:
        await asyncio.sleep(self.settings.debounce_seconds)
        if context != self._context:
            return
        await self._evaluate(context)

    async def _evaluate(self, context: LoadContext) -> None:
        if self._switching:
            return
        visible = self._latest_visible
        while visible is not None and context == self._context:
            self._pending_visible = None
            plan = self.decide(visible)
            if plan is None:
                break
            self.state = LoaderState.LOADING
            try:
                await self._load(context, plan)
            finally:
                if context == self._context:
                    self.state = LoaderState.IDLE
            visible = self._pending_visible
        if context == self._context and self.state is not LoaderState.LOADING:
            self.state = LoaderState.IDLE

    def decide(self, visible: TimeRange) -> Optional[FetchPlan]:
        """Plan the next fetch for ``visible`` and update the scroll tracker."""

        context = self._context
        if context is None:
            return None
        state = self.coverage.state(context.symbol, context.interval)
        now = self._now_ms()
        if not state.history_limit_reached and reached_floor(state.covered_span, now, self.settings):
            state.history_limit_reached = True
            LOGGER.info("History floor reached for %s@%s", context.symbol, context.interval)

        interval_ms = interval_to_ms(context.interval)
        plan = plan_viewport_fetch(visible, state, context.interval, now, self.settings)
        if plan is not None:
            self._tracker.observe(visible.start, interval_ms, crossed_buffer=True)
            return plan
        if self._tracker.observe(visible.start, interval_ms, crossed_buffer=False):
            LOGGER.info(
                "Slow backward scroll on %s@%s, forcing a larger historical load",
                context.symbol,
                context.interval,
            )
            return plan_viewport_fetch(
                visible, state, context.interval, now, self.settings, force_backfill=True
            )
        return None

    async def wait_idle(self) -> None:
        """Wait for the pending debounce and any load it started."""

        task = self._task
        while task is not None and not task.done():
            await asyncio.wait({task})
            task = self._task

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------
    async def _load(self, context: LoadContext, plan: FetchPlan) -> LoadResult:
        state = self.coverage.state(context.symbol, context.interval)
        if plan.historical:
            if state.history_limit_reached:
                LOGGER.debug("History limit reached, skipping %s load", plan.direction)
                return LoadResult(context, plan, skipped=True)
            if state.is_known_empty(plan.span):
                LOGGER.info("Skipping known-empty span %s for %s@%s", plan.span, context.symbol, context.interval)
                state.record_covered(plan.span)
                self._register_empty(context, state)
                return LoadResult(context, plan, requested=plan.span, skipped=True, applied=True)

        self.presenter.set_loading(True)
        try:
            result = await asyncio.wait_for(
                self._fetch(context, plan), timeout=self.settings.load_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            LOGGER.warning(
                "Load for %s@%s timed out after %.1fs",
                context.symbol,
                context.interval,
                self.settings.load_timeout_seconds,
            )
            result = LoadResult(context, plan, requested=plan.span, error=exc)
        finally:
            self.presenter.set_loading(False)
        return self._apply(result)

    async def _fetch(self, context: LoadContext, plan: FetchPlan) -> LoadResult:
        start = plan.span.start
        if plan.direction != "later" and self.instrument is not None and not self.instrument.continuous:
            adjusted = min(nearest_trading_instant(self.instrument, start), plan.span.end)
            if adjusted != start:
                LOGGER.debug("Adjusted load start %s -> %s", format_ms(start), format_ms(adjusted))
                start = adjusted
        requested = TimeRange(min(start, plan.span.start), plan.span.end)
        LOGGER.info(
            "Loading %s data for %s@%s: %s -> %s (limit %s)",
            plan.direction,
            context.symbol,
            context.interval,
            format_ms(start),
            format_ms(plan.span.end),
            plan.limit,
        )
        try:
            raw = await self.api.fetch_candles(
                context.symbol,
                context.interval,
                start=start,
                end=plan.span.end,
                limit=plan.limit,
            )
        except FETCH_ERRORS as exc:
            return LoadResult(context, plan, requested=requested, error=exc)
        return LoadResult(context, plan, requested=requested, candles=normalize(raw))

    def _apply(self, result: LoadResult) -> LoadResult:
        context = result.context
        if context != self._context:
            LOGGER.info(
                "Discarding stale %s result for %s@%s", result.plan.direction, context.symbol, context.interval
            )
            return result
        if result.error is not None:
            LOGGER.warning(
                "Historical load failed for %s@%s: %s", context.symbol, context.interval, result.error
            )
            self.presenter.notify_error(f"Failed to load {context.symbol} {context.interval}: {result.error}")
            return result

        state = self.coverage.state(context.symbol, context.interval)
        requested = result.requested or result.plan.span
        if result.candles:
            before = len(self.series)
            self.series = merge(self.series, result.candles)
            state.record_covered(requested)
            state.consecutive_empty = 0
            self.presenter.set_series(list(self.series))
            LOGGER.info("Data after merge: %s -> %s candles", before, len(self.series))
        else:
            LOGGER.info("No candles for %s@%s in %s", context.symbol, context.interval, requested)
            state.record_covered(requested)
            if requested.duration >= interval_to_ms(context.interval):
                state.record_empty(requested)
            if result.plan.historical:
                self._register_empty(context, state)
        if result.plan.at_floor and not state.history_limit_reached:
            state.history_limit_reached = True
            LOGGER.info("History floor reached for %s@%s", context.symbol, context.interval)
        result.applied = True
        return result

    def _register_empty(self, context: LoadContext, state: LoadedRangeState) -> None:
        state.consecutive_empty += 1
        if state.consecutive_empty >= self.settings.max_consecutive_empty and not state.history_limit_reached:
            state.history_limit_reached = True
            LOGGER.info(
                "History limit reached for %s@%s after %s empty loads",
                context.symbol,
                context.interval,
                state.consecutive_empty,
            )

    async def _load_instrument(self, symbol: str) -> Optional[TradingSchedule]:
        try:
            payload = await self.api.fetch_instrument(symbol)
        except FETCH_ERRORS as exc:
            LOGGER.warning("Instrument lookup for %s failed, calendar adjustment disabled: %s", symbol, exc)
            return None
        return TradingSchedule.from_payload(payload)

    # ------------------------------------------------------------------
    # switching
    # ------------------------------------------------------------------
    async def load_symbol(self, symbol: str, interval: str) -> Optional[LoadResult]:
        """Make ``symbol@interval`` the active series.

        A previously viewed series is restored from its snapshot without a
        network call; otherwise the initial window is fetched.
        """

        if self._context is not None and (symbol, interval) == (self.symbol, self.interval):
            LOGGER.debug("%s@%s already active", symbol, interval)
            return None
        parse_interval(interval)

        await self._release_realtime()
        self._stash_current()
        self._cancel_pending()

        self._generation += 1
        context = LoadContext(symbol, interval, self._generation)
        self._context = context
        self.symbol, self.interval = symbol, interval
        self._tracker.reset()
        self._latest_visible = None
        self._pending_visible = None
        # Signals from post-switch layout settling are only recorded until the switch completes.
        self._switching = True
        self.state = LoaderState.LOADING
        self._cooldown_until = self._clock() + self.settings.switch_cooldown_seconds

        result: Optional[LoadResult] = None
        try:
            snapshot = self._snapshots.get((symbol.upper(), interval))
            if snapshot is not None:
                self._restore(snapshot)
            else:
                self.series = []
                self.coverage.discard(symbol, interval)
                self.presenter.set_series([])
                self.instrument = await self._load_instrument(symbol)
                if context != self._context:
                    return None
                plan = initial_plan(interval, None, self._now_ms(), self.settings)
                result = await self._load(context, plan)
                if context != self._context:
                    return result
            await self._open_realtime(context)
        finally:
            if context == self._context:
                self._switching = False
                self._pending_visible = None
                self.state = LoaderState.IDLE
                self._cooldown_until = self._clock() + self.settings.switch_cooldown_seconds
        return result

    def _restore(self, snapshot: SeriesSnapshot) -> None:
        context = self._context
        assert context is not None
        self.series = list(snapshot.series)
        restored = self.coverage.restore(context.symbol, context.interval, snapshot.coverage)
        restored.reset_history_limit()
        self.instrument = snapshot.instrument
        self.presenter.set_series(list(self.series))
        if snapshot.visible is not None:
            self._latest_visible = snapshot.visible
            self._tracker.seed(snapshot.visible.start)
            self.presenter.set_visible_range(snapshot.visible)
        LOGGER.info("Restored %s@%s from cache (%s candles)", context.symbol, context.interval, len(self.series))

    async def change_interval(self, interval: str) -> Optional[LoadResult]:
        if self.symbol is None or interval == self.interval:
            return None
        return await self.load_symbol(self.symbol, interval)

    def _stash_current(self) -> None:
        context = self._context
        if context is None or not self.series:
            return
        self._snapshots[(context.symbol.upper(), context.interval)] = SeriesSnapshot(
            series=list(self.series),
            coverage=self.coverage.snapshot(context.symbol, context.interval),
            instrument=self.instrument,
            visible=self._latest_visible,
        )
        LOGGER.debug("Cached %s@%s (%s candles)", context.symbol, context.interval, len(self.series))

    def _cancel_pending(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # realtime
    # ------------------------------------------------------------------
    async def _open_realtime(self, context: LoadContext) -> None:
        if self.realtime is None:
            return
        handle = await self.realtime.subscribe(context.symbol, context.interval, self._on_realtime)
        if context != self._context:
            await self.realtime.unsubscribe(handle)
            return
        self._subscription = handle

    async def _release_realtime(self) -> None:
        handle, self._subscription = self._subscription, None
        if handle is not None and self.realtime is not None:
            await self.realtime.unsubscribe(handle)

    def _on_realtime(self, message: Dict[str, Any]) -> None:
        context = self._context
        if context is None:
            return
        if str(message.get("symbol")) != context.symbol or str(message.get("width")) != context.interval:
            return
        candle = normalize_one(message)
        if candle is None:
            LOGGER.warning("Dropping malformed realtime candle: %.200s", message)
            return
        upsert_one(self.series, candle)
        state = self.coverage.state(context.symbol, context.interval)
        if state.covered_span is not None:
            state.record_covered(TimeRange(candle.time_ms, candle.time_ms))
        self.presenter.upsert_candle(candle)

    async def close(self) -> None:
        """Cancel timers, drop the subscription and forget cached series."""

        self._cancel_pending()
        await self._release_realtime()
        self._context = None
        self.symbol = self.interval = None
        self.series = []
        self.instrument = None
        self.state = LoaderState.IDLE
        self._switching = False
        self._snapshots.clear()
        self.coverage.clear()
