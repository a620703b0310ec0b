"""Utilities for working with candle width tokens."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Set, Tuple

from .logging import get_logger
from .time import DAY_MS, TimeRange

LOGGER = get_logger(__name__)

MINUTE_MS = 60_000
HOUR_MS = 3_600_000
WEEK_MS = 7 * DAY_MS
MONTH_MS = 30 * DAY_MS
YEAR_MS = 365 * DAY_MS

DEFAULT_INTERVAL_MS = DAY_MS

UNIT_MS: Dict[str, int] = {
    "m": MINUTE_MS,
    "h": HOUR_MS,
    "d": DAY_MS,
    "w": WEEK_MS,
    "mo": MONTH_MS,
    "M": MONTH_MS,
}

# First load per width: (lookback span, bar limit).
INITIAL_WINDOWS: Dict[str, Tuple[int, int]] = {
    "1m": (12 * HOUR_MS, 720),
    "5m": (DAY_MS, 288),
    "15m": (3 * DAY_MS, 288),
    "30m": (WEEK_MS, 336),
    "1h": (2 * WEEK_MS, 336),
    "2h": (30 * DAY_MS, 360),
    "4h": (30 * DAY_MS, 180),
    "12h": (90 * DAY_MS, 180),
    "1d": (YEAR_MS, 365),
    "1w": (3 * YEAR_MS, 156),
    "1mo": (5 * YEAR_MS, 60),
}
DEFAULT_INITIAL_WINDOW: Tuple[int, int] = (30 * DAY_MS, 1000)

_warned_tokens: Set[str] = set()


@dataclass(frozen=True, slots=True)
class IntervalSpec:
    token: str
    ms: int
    valid: bool


def _split_token(token: str) -> Tuple[int, str] | None:
    digits = ""
    for char in token:
        if not char.isdigit():
            break
        digits += char
    unit = token[len(digits) :]
    if not digits or unit not in UNIT_MS:
        return None
    return int(digits), unit


def parse_interval(token: str) -> IntervalSpec:
    """Parse a width token such as ``"5m"`` or ``"1mo"``.

    Unknown tokens fall back to one day and come back with ``valid=False``
    instead of raising, since this runs on every viewport event.
    """

    cleaned = (token or "").strip()
    parsed = _split_token(cleaned)
    if parsed is None or parsed[0] <= 0:
        if cleaned not in _warned_tokens:
            _warned_tokens.add(cleaned)
            LOGGER.warning("Unrecognised interval %r, defaulting to 1d", token)
        return IntervalSpec(token=cleaned, ms=DEFAULT_INTERVAL_MS, valid=False)
    value, unit = parsed
    return IntervalSpec(token=cleaned, ms=value * UNIT_MS[unit], valid=True)


def interval_to_ms(token: str) -> int:
    """Duration of one bar in milliseconds."""
    return parse_interval(token).ms


def initial_window(token: str) -> Tuple[int, int]:
    """Return ``(span_ms, limit)`` for the first load of ``token``."""

    window = INITIAL_WINDOWS.get((token or "").strip())
    if window is not None:
        return window
    return DEFAULT_INITIAL_WINDOW


def bars_in(span: TimeRange, token: str) -> int:
    interval_ms = interval_to_ms(token)
    return max(1, math.ceil(span.duration / interval_ms) + 1)
