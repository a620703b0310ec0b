"""Weekly trading schedules for instruments that do not trade around the clock."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

from ..utils.logging import get_logger
from ..utils.time import DAY_MS, from_ms
from ..utils.timeframes import MINUTE_MS

LOGGER = get_logger(__name__)

CONTINUOUS_CATEGORIES = frozenset({"continuous", "crypto"})
MINUTES_PER_DAY = 24 * 60
MAX_LOOKBACK_DAYS = 30


@dataclass(frozen=True, slots=True)
class TradingSession:
    """Open interval ``[open_minute, close_minute)`` on ``day`` (0=Sunday)."""

    day: int
    open_minute: int
    close_minute: int

    def contains(self, minute: int) -> bool:
        return self.open_minute <= minute < self.close_minute


@dataclass(frozen=True, slots=True)
class TradingSchedule:
    category: str
    sessions: Tuple[TradingSession, ...] = ()
    has_market: bool = True

    @property
    def continuous(self) -> bool:
        return self.category.strip().lower() in CONTINUOUS_CATEGORIES

    def session_for(self, day: int) -> Optional[TradingSession]:
        for session in self.sessions:
            if session.day == day:
                return session
        return None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TradingSchedule":
        """Build a schedule from the instrument endpoint payload.

        Malformed market entries are skipped; a payload without a ``market``
        list yields a schedule with ``has_market=False``.
        """

        category = str(payload.get("category") or "")
        market = payload.get("market")
        if not isinstance(market, list):
            if category.strip().lower() not in CONTINUOUS_CATEGORIES:
                LOGGER.warning("Instrument payload for category %r has no market hours", category)
            return cls(category=category, has_market=False)
        sessions: List[TradingSession] = []
        for entry in market:
            session = _parse_session(entry)
            if session is None:
                LOGGER.debug("Skipping malformed market entry %r", entry)
                continue
            sessions.append(session)
        return cls(category=category, sessions=tuple(sessions))


def _parse_session(entry: Any) -> Optional[TradingSession]:
    if not isinstance(entry, Mapping):
        return None
    opening = entry.get("open")
    closing = entry.get("close")
    if not isinstance(opening, Mapping) or not isinstance(closing, Mapping):
        return None
    try:
        day = int(opening["day"])
        open_minute = int(opening.get("hour", 0)) * 60 + int(opening.get("minute", 0))
        close_minute = int(closing.get("hour", 0)) * 60 + int(closing.get("minute", 0))
        close_day = int(closing.get("day", day))
    except (KeyError, TypeError, ValueError):
        return None
    if close_day != day:
        # Sessions running past midnight are cut at the end of the open day.
        close_minute = MINUTES_PER_DAY
    return TradingSession(day=day % 7, open_minute=open_minute, close_minute=close_minute)


def _day_of_week(ts_ms: int) -> int:
    # datetime.weekday() is Monday=0; the wire format is Sunday=0.
    return (from_ms(ts_ms).weekday() + 1) % 7


def _minute_of_day(ts_ms: int) -> int:
    return (ts_ms % DAY_MS) // MINUTE_MS


def is_open(schedule: TradingSchedule, ts_ms: int) -> bool:
    if schedule.continuous:
        return True
    if not schedule.has_market:
        return False
    session = schedule.session_for(_day_of_week(ts_ms))
    if session is None:
        return False
    return session.contains(_minute_of_day(ts_ms))


def nearest_trading_instant(
    schedule: TradingSchedule, ts_ms: int, *, max_days: int = MAX_LOOKBACK_DAYS
) -> int:
    """Snap ``ts_ms`` onto the trading calendar.

    Before the open of a trading day the result is that day's open; otherwise
    it is the close of the most recent trading day at or before ``ts_ms``.
    Returns ``ts_ms`` unchanged when nothing is found within ``max_days``.
    """

    if schedule.continuous or not schedule.has_market or is_open(schedule, ts_ms):
        return ts_ms
    day_start = ts_ms - ts_ms % DAY_MS
    today = schedule.session_for(_day_of_week(ts_ms))
    if today is not None and _minute_of_day(ts_ms) < today.open_minute:
        return day_start + today.open_minute * MINUTE_MS
    for offset in range(max_days):
        candidate_start = day_start - offset * DAY_MS
        session = schedule.session_for(_day_of_week(candidate_start))
        if session is None:
            continue
        close_at = candidate_start + session.close_minute * MINUTE_MS
        if close_at <= ts_ms:
            return close_at
    LOGGER.warning(
        "No trading day within %s days of %s, keeping timestamp unadjusted", max_days, ts_ms
    )
    return ts_ms
