from pathlib import Path

import pytest
from pydantic import ValidationError

from chartfeed import config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("API_BASE_URL", "WS_BASE_URL", "API_REFERER", "API_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "load_dotenv", lambda: False)


def test_defaults_without_file() -> None:
    settings = config.load_settings()

    assert settings.cache.capacity == 100
    assert settings.cache.eviction == "lru"
    assert settings.loader.debounce_seconds == pytest.approx(0.3)
    assert settings.loader.history_floor_years == 10
    assert settings.realtime.max_reconnect_attempts == 5
    assert settings.api.request_history_size == 50


def test_yaml_values_and_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text(
        "cache:\n  capacity: 10\n  eviction: fifo\nloader:\n  debounce_seconds: 0.15\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("API_TOKEN", "abc")
    monkeypatch.setenv("WS_BASE_URL", "wss://example.test")

    settings = config.load_settings(path)

    assert settings.cache.capacity == 10
    assert settings.cache.eviction == "fifo"
    assert settings.loader.debounce_seconds == pytest.approx(0.15)
    assert settings.api.token == "abc"
    assert settings.api.ws_base_url == "wss://example.test"


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        config.load_settings(tmp_path / "missing.yaml")


def test_invalid_eviction_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("cache:\n  eviction: random\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        config.load_settings(path)


def test_shipped_sample_config_is_valid() -> None:
    sample = Path(__file__).resolve().parents[1] / "configs" / "settings.yaml"

    settings = config.load_settings(sample)

    assert settings.realtime.enabled
    assert settings.cache.overlap_threshold == pytest.approx(0.7)
