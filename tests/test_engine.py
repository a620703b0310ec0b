import asyncio
from typing import List

import httpx
import pytest

from chartfeed.config import Settings
from chartfeed.live.engine import ChartEngine
from chartfeed.io.auth import StaticTokenProvider
from chartfeed.live.presenter import ChartPresenter, LoggingPresenter


def _settings() -> Settings:
    return Settings.model_validate(
        {
            "api": {"api_base_url": "https://api.test", "token": "abc"},
            "cache": {"capacity": 5, "eviction": "fifo"},
            "loader": {"debounce_seconds": 0.01, "switch_cooldown_seconds": 0.0},
            "realtime": {"enabled": False},
        }
    )


def test_from_settings_wires_collaborators() -> None:
    engine = ChartEngine.from_settings(_settings())

    assert engine.realtime is None
    assert engine.api.cache.capacity == 5
    assert engine.api.cache.eviction == "fifo"
    assert engine.loader.settings.debounce_seconds == pytest.approx(0.01)
    assert isinstance(engine.loader.presenter, ChartPresenter)
    asyncio.run(engine.cleanup())


def test_from_settings_requires_credentials() -> None:
    settings = _settings()
    settings.api.token = None

    with pytest.raises(ValueError):
        ChartEngine.from_settings(settings)


def test_engine_loads_and_cleans_up() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.startswith("/instrument/"):
            return httpx.Response(200, json={"category": "Crypto"})
        end = int(request.url.params["end"])
        rows = [
            {"timestamp": end - idx * 86_400_000, "open": 1, "high": 2, "low": 0, "close": 1, "volume": 1}
            for idx in range(3)
        ]
        return httpx.Response(200, json=rows)

    presenter = LoggingPresenter()

    async def run() -> None:
        async with ChartEngine.from_settings(
            _settings(),
            StaticTokenProvider("xyz"),
            presenter,
            transport=httpx.MockTransport(handler),
        ) as engine:
            await engine.load_symbol("BTC", "1d")
            await engine.change_interval("1d")
            assert engine.loader.symbol == "BTC"
        assert engine.loader.symbol is None
        assert len(engine.api.cache) == 0

    asyncio.run(run())
    assert len(presenter.candles) == 3
    assert requests[-1].headers["Authorization"] == "Bearer xyz"
