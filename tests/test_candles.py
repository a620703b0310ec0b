import math

from chartfeed.services import candles
from chartfeed.services.candles import Candle


def _record(ts_s: int, close: float = 1.0, **extra: object) -> dict:
    payload = {
        "timestamp": ts_s * 1000,
        "open": close,
        "high": close + 1,
        "low": close - 1,
        "close": close,
        "volume": 10,
    }
    payload.update(extra)
    return payload


def _candle(ts: int, close: float = 1.0) -> Candle:
    return Candle(time=ts, open=close, high=close, low=close, close=close, volume=1.0)


def test_normalize_sorts_dedups_and_drops_invalid() -> None:
    raw = [
        _record(300, 3.0),
        _record(100, 1.0),
        {"timestamp": 200_000, "open": "x", "high": 1, "low": 1, "close": 1},
        _record(100, 1.5),
        {"open": 1, "high": 1, "low": 1, "close": 1},
        None,
        _record(200, close=math.nan),
    ]

    result = candles.normalize(raw)

    assert [c.time for c in result] == [100, 300]
    assert result[0].close == 1.5


def test_normalize_rejects_non_list_payload() -> None:
    assert candles.normalize({"timestamp": 1}) == []
    assert candles.normalize(None) == []


def test_normalize_one_defaults_volume() -> None:
    missing = candles.normalize_one(_record(60, volume=None))
    negative = candles.normalize_one(_record(60, volume=-5))

    assert missing is not None and missing.volume == 0.0
    assert negative is not None and negative.volume == 0.0
    assert missing.time == 60
    assert missing.time_ms == 60_000


def test_normalize_one_rejects_boolean_prices() -> None:
    assert candles.normalize_one(_record(60, open=True)) is None


def test_merge_is_idempotent() -> None:
    series = [_candle(100), _candle(200), _candle(300)]
    assert candles.merge(series, series) == series


def test_merge_incoming_wins_on_same_time() -> None:
    merged = candles.merge([_candle(100, 1.0)], [_candle(100, 2.0)])
    assert len(merged) == 1
    assert merged[0].close == 2.0


def test_merge_keeps_strict_ascending_order() -> None:
    existing = [_candle(100), _candle(300), _candle(500)]
    incoming = [_candle(200), _candle(300, 9.0), _candle(600)]

    merged = candles.merge(existing, incoming)

    times = [c.time for c in merged]
    assert times == sorted(set(times))
    assert times == [100, 200, 300, 500, 600]
    assert merged[2].close == 9.0


def test_merge_disjoint_fragments() -> None:
    older = [_candle(100), _candle(200)]
    newer = [_candle(300), _candle(400)]

    assert [c.time for c in candles.merge(newer, older)] == [100, 200, 300, 400]
    assert [c.time for c in candles.merge(older, newer)] == [100, 200, 300, 400]


def test_upsert_one_replaces_appends_and_inserts() -> None:
    series = [_candle(100), _candle(300)]

    candles.upsert_one(series, _candle(300, 5.0))
    assert series[-1].close == 5.0

    candles.upsert_one(series, _candle(400))
    candles.upsert_one(series, _candle(200))
    candles.upsert_one(series, _candle(100, 7.0))

    assert [c.time for c in series] == [100, 200, 300, 400]
    assert series[0].close == 7.0


def test_merge_with_contained_fragment_changes_nothing() -> None:
    series = [_candle(100), _candle(200), _candle(300), _candle(400)]
    inner = [_candle(200), _candle(300)]

    assert candles.merge(series, inner) == series


def test_merge_is_associative_for_overlapping_fragments() -> None:
    first = [_candle(100), _candle(200)]
    second = [_candle(200, 2.0), _candle(300)]
    third = [_candle(250), _candle(300, 3.0)]

    left = candles.merge(candles.merge(first, second), third)
    right = candles.merge(first, candles.merge(second, third))

    assert left == right
    assert [c.time for c in left] == [100, 200, 250, 300]
    assert left[1].close == 2.0
    assert left[3].close == 3.0


def test_merge_is_associative_for_disjoint_fragments() -> None:
    first = [_candle(100), _candle(200)]
    second = [_candle(300), _candle(400)]
    third = [_candle(500)]

    left = candles.merge(candles.merge(first, second), third)
    right = candles.merge(first, candles.merge(second, third))

    assert left == right
    assert [c.time for c in left] == [100, 200, 300, 400, 500]
