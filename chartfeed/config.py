"""Configuration loading utilities for the chart data engine."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ApiSettings(BaseModel):
    api_base_url: str = "https://api.embedded.eightcap.com"
    ws_base_url: str = "wss://quote.embedded.eightcap.com"
    referer: Optional[str] = None
    token: Optional[str] = None
    request_timeout: float = Field(15.0, gt=0.0)
    max_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0.0)
    retry_max_delay: float = Field(30.0, ge=0.0)
    request_history_size: int = Field(50, ge=0)


class CacheSettings(BaseModel):
    capacity: int = Field(100, ge=1)
    eviction: str = Field("lru", pattern="^(lru|fifo)$")
    overlap_threshold: float = Field(0.7, gt=0.0, le=1.0)


class CoverageSettings(BaseModel):
    min_empty_span_ms: int = Field(1_000, ge=0)
    max_empty_spans: int = Field(20, ge=1)
    empty_overlap_threshold: float = Field(0.8, gt=0.0, le=1.0)


class LoaderSettings(BaseModel):
    debounce_seconds: float = Field(0.3, ge=0.0)
    switch_cooldown_seconds: float = Field(0.5, ge=0.0)
    load_timeout_seconds: float = Field(30.0, gt=0.0)
    backscroll_trigger: int = Field(3, ge=1)
    backscroll_min_bars: int = Field(5, ge=1)
    backscroll_min_ms: int = Field(60_000, ge=0)
    forced_span_multiplier: float = Field(3.0, ge=1.0)
    extend_span_multiplier: float = Field(1.0, gt=0.0)
    old_history_multiplier: float = Field(3.0, ge=1.0)
    old_history_age_days: int = Field(90, ge=1)
    history_floor_years: int = Field(10, ge=1)
    max_consecutive_empty: int = Field(2, ge=1)
    max_candles_per_request: int = Field(5_000, ge=1)


class RealtimeSettings(BaseModel):
    enabled: bool = True
    max_reconnect_attempts: int = Field(5, ge=0)
    reconnect_base_delay: float = Field(1.0, ge=0.0)
    reconnect_max_delay: float = Field(30.0, ge=0.0)


class Settings(BaseModel):
    api: ApiSettings = Field(default_factory=ApiSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    coverage: CoverageSettings = Field(default_factory=CoverageSettings)
    loader: LoaderSettings = Field(default_factory=LoaderSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_settings(path: Path | str | None = None) -> Settings:
    """Load settings from YAML (optional) and environment variables."""
    load_dotenv()
    raw = _load_yaml(Path(path)) if path is not None else {}
    settings = Settings.model_validate(raw)

    # allow overriding via environment variables
    api_base_url = os.getenv("API_BASE_URL")
    ws_base_url = os.getenv("WS_BASE_URL")
    referer = os.getenv("API_REFERER")
    token = os.getenv("API_TOKEN")
    if api_base_url:
        settings.api.api_base_url = api_base_url
    if ws_base_url:
        settings.api.ws_base_url = ws_base_url
    if referer:
        settings.api.referer = referer
    if token:
        settings.api.token = token
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    default_path = Path("configs/settings.yaml")
    return load_settings(default_path if default_path.exists() else None)
