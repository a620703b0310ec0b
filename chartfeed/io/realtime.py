"""Shared WebSocket connection with ref-counted candle subscriptions."""
from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import RealtimeSettings
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)

Callback = Callable[[Dict[str, Any]], None]
Connector = Callable[[str], Awaitable[Any]]

CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class RealtimeError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Opaque token returned by ``subscribe``; pass it back to ``unsubscribe``."""

    key: str
    token: int


def subscription_key(symbol: str, width: str) -> str:
    return f"{symbol}@{width}"


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Delay before reconnect ``attempt`` (1-based): doubling, capped."""

    exponent = max(0, int(attempt) - 1)
    return min(base * (2 ** exponent), cap)


class RealtimeSubscriptionManager:
    """One lazily opened WebSocket shared by every subscription.

    Wire protocol: the client sends ``SYMBOL@WIDTH`` to subscribe,
    ``-SYMBOL@WIDTH`` to unsubscribe and ``pong`` to answer ``ping``; the
    server pushes JSON candle updates carrying ``symbol`` and ``width``.
    """

    def __init__(
        self,
        ws_base_url: str,
        *,
        referer: str | None = None,
        settings: RealtimeSettings | None = None,
        connect: Connector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or RealtimeSettings()
        self.ws_base_url = ws_base_url.rstrip("/")
        self.referer = referer
        self._connect_fn: Connector = connect or websockets.connect
        self._sleep = sleep
        self._socket: Any = None
        self._connecting: Optional["asyncio.Future[Any]"] = None
        self._reader: Optional["asyncio.Task[None]"] = None
        self._reconnect_task: Optional["asyncio.Task[None]"] = None
        self._subscriptions: Dict[str, Dict[int, Callback]] = {}
        self._wire_keys: Set[str] = set()
        self._tokens = itertools.count(1)
        self._closed = False
        self.reconnect_attempts = 0
        self.exhausted = False

    @property
    def url(self) -> str:
        query = urlencode({"referer": self.referer}) if self.referer else ""
        return f"{self.ws_base_url}/candle" + (f"?{query}" if query else "")

    @property
    def connected(self) -> bool:
        return self._socket is not None

    def keys(self) -> List[str]:
        return list(self._subscriptions)

    def callback_count(self, key: str) -> int:
        return len(self._subscriptions.get(key, {}))

    async def connect(self) -> Any:
        """Open the connection, or join an attempt already in progress."""

        if self._socket is not None:
            return self._socket
        if self._closed:
            raise RealtimeError("Realtime manager is closed")
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.ensure_future(self._open())
        return await asyncio.shield(self._connecting)

    async def _open(self) -> Any:
        LOGGER.info("Connecting to WebSocket: %s", self.url)
        socket = await self._connect_fn(self.url)
        self._socket = socket
        self._wire_keys = set()
        self.reconnect_attempts = 0
        self.exhausted = False
        LOGGER.info("WebSocket connection opened")
        for key in list(self._subscriptions):
            await self._send_key(key)
        self._reader = asyncio.ensure_future(self._read_loop(socket))
        return socket

    async def _send(self, message: str) -> bool:
        socket = self._socket
        if socket is None:
            return False
        try:
            await socket.send(message)
        except ConnectionClosed as exc:
            LOGGER.warning("Could not send %r, connection closed: %s", message, exc)
            return False
        return True

    async def _send_key(self, key: str) -> None:
        if await self._send(key):
            self._wire_keys.add(key)
            LOGGER.info("Subscribed to %s", key)

    async def _read_loop(self, socket: Any) -> None:
        try:
            async for message in socket:
                await self._handle_message(socket, message)
        except ConnectionClosed as exc:
            LOGGER.info("WebSocket closed: %s", exc)
        except CONNECT_ERRORS as exc:
            LOGGER.warning("WebSocket error: %s", exc)
        finally:
            if self._socket is socket:
                self._socket = None
                self._wire_keys = set()
            if not self._closed:
                self._schedule_reconnect()

    async def _handle_message(self, socket: Any, message: Any) -> None:
        if isinstance(message, (bytes, bytearray)):
            message = bytes(message).decode("utf-8", errors="replace")
        if message == "ping":
            await socket.send("pong")
            return
        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            LOGGER.warning("Dropping malformed realtime frame: %.200s", message)
            return
        self.dispatch(data)

    def dispatch(self, data: Any) -> int:
        """Deliver an update to every callback registered for its key."""

        if not isinstance(data, dict) or not data.get("symbol") or not data.get("width"):
            LOGGER.warning("Received invalid realtime message: %.200s", data)
            return 0
        key = subscription_key(str(data["symbol"]), str(data["width"]))
        callbacks = self._subscriptions.get(key)
        if not callbacks:
            LOGGER.debug("No callbacks registered for %s", key)
            return 0
        delivered = 0
        for callback in list(callbacks.values()):
            try:
                callback(data)
            except Exception:
                LOGGER.exception("Error in realtime callback for %s", key)
                continue
            delivered += 1
        return delivered

    def _schedule_reconnect(self) -> None:
        if self._closed:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self.reconnect_attempts >= self.settings.max_reconnect_attempts:
            self.exhausted = True
            LOGGER.error(
                "Maximum reconnection attempts reached (%s), live updates stopped",
                self.settings.max_reconnect_attempts,
            )
            return
        self.reconnect_attempts += 1
        delay = backoff_delay(
            self.reconnect_attempts,
            base=self.settings.reconnect_base_delay,
            cap=self.settings.reconnect_max_delay,
        )
        LOGGER.warning(
            "Will attempt to reconnect in %.1fs (attempt %s of %s)",
            delay,
            self.reconnect_attempts,
            self.settings.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect(delay))

    async def _reconnect(self, delay: float) -> None:
        await self._sleep(delay)
        if self._closed:
            return
        try:
            await self.connect()
        except CONNECT_ERRORS as exc:
            LOGGER.warning("WebSocket reconnection failed: %s", exc)
            self._reconnect_task = None
            self._schedule_reconnect()

    async def subscribe(self, symbol: str, width: str, callback: Callback) -> SubscriptionHandle:
        key = subscription_key(symbol, width)
        callbacks = self._subscriptions.setdefault(key, {})
        handle = SubscriptionHandle(key=key, token=next(self._tokens))
        callbacks[handle.token] = callback
        LOGGER.debug("Added callback for %s, now has %s callbacks", key, len(callbacks))
        if self._socket is None:
            try:
                await self.connect()
            except CONNECT_ERRORS as exc:
                LOGGER.warning("Failed to open realtime connection for %s: %s", key, exc)
                self._schedule_reconnect()
                return handle
        if key in self._subscriptions and key not in self._wire_keys:
            await self._send_key(key)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> bool:
        callbacks = self._subscriptions.get(handle.key)
        if not callbacks or handle.token not in callbacks:
            LOGGER.debug("No subscription found for %s/%s", handle.key, handle.token)
            return False
        del callbacks[handle.token]
        if callbacks:
            return True
        del self._subscriptions[handle.key]
        if handle.key in self._wire_keys:
            self._wire_keys.discard(handle.key)
            await self._send(f"-{handle.key}")
            LOGGER.info("Unsubscribed from %s", handle.key)
        return True

    async def close(self) -> None:
        self._closed = True
        for task in (self._reconnect_task, self._reader):
            if task is not None and not task.done():
                task.cancel()
        socket, self._socket = self._socket, None
        if socket is not None:
            await socket.close()
        self._subscriptions.clear()
        self._wire_keys = set()
        LOGGER.info("Realtime manager closed")
