from datetime import datetime, timezone

from chartfeed.services.calendar import TradingSchedule, is_open, nearest_trading_instant


def _ms(*args: int) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def _weekday_schedule() -> TradingSchedule:
    # Monday..Friday 01:00-22:00 UTC, wire days use 0=Sunday.
    market = [
        {"open": {"day": day, "hour": 1, "minute": 0}, "close": {"day": day, "hour": 22, "minute": 0}}
        for day in range(1, 6)
    ]
    return TradingSchedule.from_payload({"category": "Commodities", "market": market})


def test_from_payload_skips_malformed_entries() -> None:
    payload = {
        "category": "Forex",
        "market": [
            {"open": {"day": 1, "hour": 0, "minute": 0}, "close": {"day": 2, "hour": 0, "minute": 0}},
            {"open": "bad"},
            "junk",
        ],
    }
    schedule = TradingSchedule.from_payload(payload)

    assert len(schedule.sessions) == 1
    assert schedule.sessions[0].close_minute == 24 * 60
    assert not schedule.continuous


def test_crypto_is_continuous() -> None:
    schedule = TradingSchedule.from_payload({"category": "Crypto"})
    saturday = _ms(2024, 1, 6, 12)

    assert schedule.continuous
    assert is_open(schedule, saturday)
    assert nearest_trading_instant(schedule, saturday) == saturday


def test_is_open_within_session() -> None:
    schedule = _weekday_schedule()

    assert is_open(schedule, _ms(2024, 1, 3, 12))
    assert not is_open(schedule, _ms(2024, 1, 3, 23))
    assert not is_open(schedule, _ms(2024, 1, 6, 12))


def test_weekend_snaps_back_to_friday_close() -> None:
    schedule = _weekday_schedule()

    result = nearest_trading_instant(schedule, _ms(2024, 1, 6, 12))

    assert result == _ms(2024, 1, 5, 22)


def test_before_open_snaps_to_same_day_open() -> None:
    schedule = _weekday_schedule()

    result = nearest_trading_instant(schedule, _ms(2024, 1, 3, 0, 30))

    assert result == _ms(2024, 1, 3, 1)


def test_open_instant_is_unchanged() -> None:
    schedule = _weekday_schedule()
    ts = _ms(2024, 1, 3, 12)

    assert nearest_trading_instant(schedule, ts) == ts


def test_no_market_fails_open() -> None:
    schedule = TradingSchedule.from_payload({"category": "Indices"})
    ts = _ms(2024, 1, 6, 12)

    assert not schedule.has_market
    assert not is_open(schedule, ts)
    assert nearest_trading_instant(schedule, ts) == ts


def test_nothing_within_lookback_returns_input() -> None:
    schedule = TradingSchedule.from_payload({"category": "Stocks", "market": []})
    ts = _ms(2024, 1, 6, 12)

    assert nearest_trading_instant(schedule, ts, max_days=3) == ts
