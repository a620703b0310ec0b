"""Pure candle and trading-calendar helpers."""

from .calendar import (
    CONTINUOUS_CATEGORIES,
    TradingSchedule,
    TradingSession,
    is_open,
    nearest_trading_instant,
)
from .candles import Candle, merge, normalize, normalize_one, upsert_one
