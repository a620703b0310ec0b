"""Normalisation and merging of OHLCV candle series."""
from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import asdict, dataclass
from operator import attrgetter
from typing import Any, Dict, List, Mapping, MutableSequence, Sequence

from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

_time_of = attrgetter("time")


@dataclass(slots=True)
class Candle:
    """One OHLCV bar; ``time`` is the bucket start in UTC seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)  # type: ignore[return-value]

    @property
    def time_ms(self) -> int:
        return self.time * 1000


def _num(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_one(record: Mapping[str, Any] | None) -> Candle | None:
    """Convert one wire record (millisecond ``timestamp``) into a candle."""

    if not isinstance(record, Mapping):
        return None
    timestamp = _num(record.get("timestamp"))
    if timestamp is None:
        return None
    open_price = _num(record.get("open"))
    high_price = _num(record.get("high"))
    low_price = _num(record.get("low"))
    close_price = _num(record.get("close"))
    if open_price is None or high_price is None or low_price is None or close_price is None:
        return None
    volume = _num(record.get("volume"))
    if volume is None or volume < 0:
        volume = 0.0
    return Candle(
        time=int(timestamp) // 1000,
        open=open_price,
        high=high_price,
        low=low_price,
        close=close_price,
        volume=volume,
    )


def normalize(raw_records: Sequence[Mapping[str, Any]] | None) -> List[Candle]:
    """Validate raw records and return them ascending by time, one per bucket."""

    if raw_records is None:
        return []
    if not isinstance(raw_records, (list, tuple)):
        LOGGER.warning("Expected a list of candle records, got %s", type(raw_records).__name__)
        return []
    by_time: Dict[int, Candle] = {}
    total = 0
    for record in raw_records:
        total += 1
        candle = normalize_one(record)
        if candle is None:
            continue
        by_time[candle.time] = candle
    dropped = total - len(by_time)
    if dropped:
        LOGGER.debug("Dropped %s of %s candle records (invalid or duplicate)", dropped, total)
    return [by_time[ts] for ts in sorted(by_time)]


def merge(existing: Sequence[Candle], incoming: Sequence[Candle]) -> List[Candle]:
    """Merge two ascending series; ``incoming`` wins when times collide."""

    if not existing:
        return list(incoming)
    if not incoming:
        return list(existing)
    # Disjoint fragments keep their order without a rebuild.
    if incoming[0].time > existing[-1].time:
        return [*existing, *incoming]
    if incoming[-1].time < existing[0].time:
        return [*incoming, *existing]
    by_time: Dict[int, Candle] = {candle.time: candle for candle in existing}
    for candle in incoming:
        by_time[candle.time] = candle
    return [by_time[ts] for ts in sorted(by_time)]


def upsert_one(series: MutableSequence[Candle], candle: Candle) -> MutableSequence[Candle]:
    """Insert or replace a single candle in place, keeping ascending order."""

    if series and series[-1].time == candle.time:
        series[-1] = candle
        return series
    if not series or series[-1].time < candle.time:
        series.append(candle)
        return series
    index = bisect_left(series, candle.time, key=_time_of)
    if index < len(series) and series[index].time == candle.time:
        series[index] = candle
    else:
        series.insert(index, candle)
    return series
