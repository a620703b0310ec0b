"""Composition root wiring the API client, realtime feed and loader."""
from __future__ import annotations

from typing import Optional

import httpx

from ..config import Settings, get_settings
from ..io.api_client import ApiClient
from ..io.auth import StaticTokenProvider, TokenProvider
from ..io.realtime import Connector, RealtimeSubscriptionManager
from ..io.request_cache import RequestCache
from ..utils.logging import get_logger
from .coverage import RangeCoverageIndex
from .loader import LoadResult, ViewportLoader
from .presenter import ChartPresenter, LoggingPresenter

LOGGER = get_logger(__name__)


class ChartEngine:
    """Owns every stateful collaborator of one chart instance."""

    def __init__(
        self,
        api: ApiClient,
        loader: ViewportLoader,
        realtime: RealtimeSubscriptionManager | None = None,
    ) -> None:
        self.api = api
        self.loader = loader
        self.realtime = realtime
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        auth: TokenProvider | None = None,
        presenter: ChartPresenter | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        connect: Connector | None = None,
    ) -> "ChartEngine":
        settings = settings or get_settings()
        if auth is None:
            if not settings.api.token:
                raise ValueError("An auth provider or API_TOKEN is required")
            auth = StaticTokenProvider(settings.api.token)
        cache = RequestCache(
            capacity=settings.cache.capacity,
            eviction=settings.cache.eviction,
            overlap_threshold=settings.cache.overlap_threshold,
        )
        api = ApiClient(auth, settings=settings.api, cache=cache, transport=transport)
        realtime: Optional[RealtimeSubscriptionManager] = None
        if settings.realtime.enabled:
            realtime = RealtimeSubscriptionManager(
                settings.api.ws_base_url,
                referer=settings.api.referer,
                settings=settings.realtime,
                connect=connect,
            )
        coverage = RangeCoverageIndex(
            min_empty_span_ms=settings.coverage.min_empty_span_ms,
            max_empty_spans=settings.coverage.max_empty_spans,
            empty_overlap_threshold=settings.coverage.empty_overlap_threshold,
        )
        loader = ViewportLoader(
            api,
            presenter or LoggingPresenter(),
            realtime=realtime,
            settings=settings.loader,
            coverage=coverage,
        )
        return cls(api, loader, realtime)

    async def load_symbol(self, symbol: str, interval: str) -> Optional[LoadResult]:
        return await self.loader.load_symbol(symbol, interval)

    async def change_interval(self, interval: str) -> Optional[LoadResult]:
        return await self.loader.change_interval(interval)

    def visible_range_changed(self, from_s: float, to_s: float) -> None:
        self.loader.on_visible_range_changed(from_s, to_s)

    async def cleanup(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.loader.close()
        if self.realtime is not None:
            await self.realtime.close()
        await self.api.aclose()
        LOGGER.info("Chart engine cleaned up")

    async def __aenter__(self) -> "ChartEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup()
