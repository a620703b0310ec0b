"""Rendering collaborator the loader pushes series updates into."""
from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, runtime_checkable

from ..services.candles import Candle
from ..utils.logging import get_logger
from ..utils.time import TimeRange

LOGGER = get_logger(__name__)


@runtime_checkable
class ChartPresenter(Protocol):
    def set_series(self, candles: Sequence[Candle]) -> None:
        ...

    def upsert_candle(self, candle: Candle) -> None:
        ...

    def set_loading(self, loading: bool) -> None:
        ...

    def notify_error(self, message: str) -> None:
        ...

    def set_visible_range(self, visible: TimeRange) -> None:
        ...


class LoggingPresenter:
    """Keep the latest series in memory and log what would be drawn."""

    def __init__(self) -> None:
        self.candles: List[Candle] = []
        self.loading = False
        self.errors: List[str] = []
        self.visible: Optional[TimeRange] = None

    def set_series(self, candles: Sequence[Candle]) -> None:
        self.candles = list(candles)
        if self.candles:
            LOGGER.info(
                "Series set: %s candles (%s -> %s)",
                len(self.candles),
                self.candles[0].time,
                self.candles[-1].time,
            )
        else:
            LOGGER.info("Series cleared")

    def upsert_candle(self, candle: Candle) -> None:
        if self.candles and self.candles[-1].time == candle.time:
            self.candles[-1] = candle
        elif not self.candles or self.candles[-1].time < candle.time:
            self.candles.append(candle)
        LOGGER.debug("Live candle %s close=%s", candle.time, candle.close)

    def set_loading(self, loading: bool) -> None:
        self.loading = loading

    def notify_error(self, message: str) -> None:
        self.errors.append(message)
        LOGGER.warning("Chart error: %s", message)

    def set_visible_range(self, visible: TimeRange) -> None:
        self.visible = visible
        LOGGER.debug("Visible range restored to %s", visible)
