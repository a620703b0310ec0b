"""REST client for candle history and instrument metadata."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import httpx

from ..config import ApiSettings, CacheSettings
from ..utils.logging import get_logger
from ..utils.time import TimeRange, format_ms
from .auth import TokenProvider
from .request_cache import RequestCache

LOGGER = get_logger(__name__)

CANDLE_ENDPOINT = "/candle"
INSTRUMENT_ENDPOINT = "/instrument/{symbol}"
RATE_LIMIT_STATUSES = {418, 429}


class ApiError(RuntimeError):
    def __init__(self, message: str, *, endpoint: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status


@dataclass
class RequestRecord:
    endpoint: str
    params: Dict[str, Any]
    url: str = ""
    status: Any = "pending"
    timestamp: float = field(default_factory=time.time)
    duration_ms: Optional[float] = None
    response_size: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ApiClient:
    """Fetch history and instrument data through a shared ``RequestCache``."""

    def __init__(
        self,
        auth: TokenProvider,
        *,
        settings: ApiSettings | None = None,
        cache: RequestCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or ApiSettings()
        self.auth = auth
        if cache is None:
            defaults = CacheSettings()
            cache = RequestCache(
                capacity=defaults.capacity,
                eviction=defaults.eviction,
                overlap_threshold=defaults.overlap_threshold,
            )
        self.cache = cache
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout,
            transport=transport,
        )
        self._sleep = sleep
        self._instruments: Dict[str, Dict[str, Any]] = {}
        self._history: Deque[RequestRecord] = deque(maxlen=self.settings.request_history_size)

    async def headers(self) -> Dict[str, str]:
        token = await self.auth.get_token()
        return {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}

    def _with_referer(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {key: value for key, value in params.items() if value is not None}
        if self.settings.referer and "referer" not in query:
            query["referer"] = self.settings.referer
        return query

    async def _get_json(self, endpoint: str, params: Dict[str, Any]) -> Any:
        query = self._with_referer(params)
        record = RequestRecord(endpoint=endpoint, params=dict(query))
        if self._history.maxlen:
            self._history.appendleft(record)

        max_attempts = self.settings.max_attempts
        delay = self.settings.retry_base_delay
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            headers = await self.headers()
            started = time.perf_counter()
            try:
                resp = await self._client.get(endpoint, params=query, headers=headers)
            except httpx.RequestError as exc:
                last_error = exc
                if attempt >= max_attempts:
                    LOGGER.warning("Request to %s failed after %s attempts: %s", endpoint, attempt, exc)
                    break
                LOGGER.warning("Request to %s failed (%s), retrying", endpoint, exc)
                await self._sleep(min(delay, 0.5))
                delay = min(delay * 2, self.settings.retry_max_delay)
                continue

            record.url = str(resp.request.url)
            record.status = resp.status_code
            record.duration_ms = (time.perf_counter() - started) * 1000.0
            if resp.status_code in RATE_LIMIT_STATUSES and attempt < max_attempts:
                LOGGER.warning(
                    "HTTP %s from %s, backing off %.1fs (attempt %s/%s)",
                    resp.status_code,
                    endpoint,
                    delay,
                    attempt,
                    max_attempts,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self.settings.retry_max_delay)
                continue
            if resp.is_error:
                record.error = f"{resp.status_code} {resp.reason_phrase}"
                LOGGER.warning("API request failed: %s %s - %s", endpoint, record.error, resp.text[:200])
                raise ApiError(
                    f"API request failed: {record.error}", endpoint=endpoint, status=resp.status_code
                )
            data = resp.json()
            record.response_size = len(data) if isinstance(data, list) else 1
            LOGGER.debug(
                "Request successful: %s, items: %s, duration: %.0fms",
                endpoint,
                record.response_size,
                record.duration_ms,
            )
            return data

        record.status = "error"
        record.error = str(last_error)
        raise ApiError(f"API request failed: {last_error}", endpoint=endpoint) from last_error

    async def fetch_candles(
        self,
        symbol: str,
        width: str,
        *,
        start: int | None = None,
        end: int | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        """Return raw candle records for ``[start, end]`` (milliseconds)."""

        start_ms = int(start) if start is not None else None
        end_ms = int(end) if end is not None else None
        params: Dict[str, Any] = {
            "symbol": symbol,
            "width": width,
            "limit": int(limit) if limit else None,
            "start": start_ms,
            "end": end_ms,
        }
        cache_key = (
            f"candles:{symbol}:{width}:{start_ms if start_ms is not None else 'start'}:"
            f"{end_ms if end_ms is not None else 'end'}:{limit or 'nolimit'}"
        )
        span = TimeRange(start_ms, end_ms) if start_ms is not None and end_ms is not None else None

        async def _fetch() -> List[Dict[str, Any]]:
            data = await self._get_json(CANDLE_ENDPOINT, params)
            if not isinstance(data, list):
                raise ApiError("Unexpected candle response format", endpoint=CANDLE_ENDPOINT)
            return data

        LOGGER.debug(
            "Fetching candles for %s@%s from %s to %s, limit: %s",
            symbol,
            width,
            format_ms(start_ms),
            format_ms(end_ms),
            limit,
        )
        return await self.cache.fetch(
            CANDLE_ENDPOINT,
            params,
            cache_key,
            _fetch,
            series=(symbol.upper(), width),
            span=span,
        )

    async def fetch_instrument(self, symbol: str) -> Dict[str, Any]:
        cached = self._instruments.get(symbol)
        if cached is not None:
            return cached
        endpoint = INSTRUMENT_ENDPOINT.format(symbol=symbol)

        async def _fetch() -> Dict[str, Any]:
            data = await self._get_json(endpoint, {})
            if not isinstance(data, dict):
                raise ApiError("Unexpected instrument response format", endpoint=endpoint)
            return data

        data = await self.cache.fetch(endpoint, {}, f"instrument:{symbol}", _fetch)
        self._instruments[symbol] = data
        return data

    def request_history(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self._history]

    def clear_cache(self, symbol: str | None = None) -> int:
        """Drop cached responses for ``symbol`` (or everything); returns the count."""

        if symbol is None:
            count = self.cache.clear() + len(self._instruments)
            self._instruments.clear()
            LOGGER.info("Cleared entire cache (%s items)", count)
            return count
        count = self.cache.invalidate(lambda key: f":{symbol}:" in f"{key}:")
        if self._instruments.pop(symbol, None) is not None:
            count += 1
        LOGGER.info("Cleared %s cached items for %s", count, symbol)
        return count

    async def aclose(self) -> None:
        self.cache.clear()
        self._instruments.clear()
        self._history.clear()
        await self._client.aclose()
