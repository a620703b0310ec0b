import asyncio
import json
from typing import Any, Dict, List, Optional

from chartfeed.config import RealtimeSettings
from chartfeed.io.realtime import RealtimeSubscriptionManager, backoff_delay, subscription_key


class FakeSocket:
    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed = False
        self._inbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def push(self, message: Optional[str]) -> None:
        self._inbox.put_nowait(message)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        message = await self._inbox.get()
        if message is None:
            raise StopAsyncIteration
        return message


class FakeConnector:
    def __init__(self, *, failures: int = 0) -> None:
        self.failures = failures
        self.urls: List[str] = []
        self.sockets: List[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        await asyncio.sleep(0)
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _manager(connector: FakeConnector, sleep: RecordingSleep | None = None, **settings: Any) -> RealtimeSubscriptionManager:
    return RealtimeSubscriptionManager(
        "wss://quote.test/",
        referer="chart.test",
        settings=RealtimeSettings(**settings),
        connect=connector,
        sleep=sleep or RecordingSleep(),
    )


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def test_url_carries_referer() -> None:
    manager = _manager(FakeConnector())
    assert manager.url == "wss://quote.test/candle?referer=chart.test"
    assert subscription_key("XAU", "1h") == "XAU@1h"


def test_backoff_is_non_decreasing_and_capped() -> None:
    delays = [backoff_delay(attempt, base=1.0, cap=30.0) for attempt in range(1, 12)]

    assert delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == 30.0


def test_concurrent_connects_share_one_attempt() -> None:
    connector = FakeConnector()
    manager = _manager(connector)

    async def run() -> List[Any]:
        sockets = await asyncio.gather(manager.connect(), manager.connect(), manager.connect())
        await manager.close()
        return list(sockets)

    sockets = asyncio.run(run())
    assert len(connector.urls) == 1
    assert sockets[0] is sockets[1] is sockets[2]


def test_wire_messages_follow_refcount_transitions() -> None:
    connector = FakeConnector()
    manager = _manager(connector)

    async def run() -> List[str]:
        first = await manager.subscribe("XAU", "1h", lambda data: None)
        second = await manager.subscribe("XAU", "1h", lambda data: None)
        assert manager.callback_count("XAU@1h") == 2
        assert await manager.unsubscribe(first)
        sent_after_first = list(connector.sockets[0].sent)
        assert await manager.unsubscribe(second)
        assert not await manager.unsubscribe(second)
        sent = list(connector.sockets[0].sent)
        await manager.close()
        assert sent_after_first == ["XAU@1h"]
        return sent

    assert asyncio.run(run()) == ["XAU@1h", "-XAU@1h"]


def test_ping_is_answered_and_updates_are_routed() -> None:
    connector = FakeConnector()
    manager = _manager(connector)
    received: List[Dict[str, Any]] = []

    async def run() -> FakeSocket:
        await manager.subscribe("XAU", "1h", received.append)
        socket = connector.sockets[0]
        socket.push("ping")
        socket.push("not json")
        socket.push(json.dumps({"symbol": "BTC", "width": "1h", "close": 1}))
        socket.push(json.dumps({"symbol": "XAU", "width": "1h", "close": 2}))
        await _settle()
        await manager.close()
        return socket

    socket = asyncio.run(run())
    assert "pong" in socket.sent
    assert received == [{"symbol": "XAU", "width": "1h", "close": 2}]


def test_failing_callback_does_not_block_others() -> None:
    manager = _manager(FakeConnector())
    received: List[Dict[str, Any]] = []

    def broken(data: Dict[str, Any]) -> None:
        raise RuntimeError("render failed")

    async def run() -> int:
        await manager.subscribe("XAU", "1h", broken)
        await manager.subscribe("XAU", "1h", received.append)
        delivered = manager.dispatch({"symbol": "XAU", "width": "1h", "close": 1})
        assert manager.dispatch({"width": "1h"}) == 0
        await manager.close()
        return delivered

    assert asyncio.run(run()) == 1
    assert len(received) == 1


def test_reconnect_resubscribes_every_key() -> None:
    connector = FakeConnector()
    sleep = RecordingSleep()
    manager = _manager(connector, sleep)

    async def run() -> None:
        await manager.subscribe("XAU", "1h", lambda data: None)
        await manager.subscribe("BTC", "1d", lambda data: None)
        connector.sockets[0].push(None)
        await _settle(50)
        assert len(connector.sockets) == 2
        assert manager.connected
        await manager.close()

    asyncio.run(run())
    assert sorted(connector.sockets[1].sent) == ["BTC@1d", "XAU@1h"]
    assert sleep.delays == [1.0]
    assert manager.reconnect_attempts == 0


def test_reconnect_gives_up_after_max_attempts() -> None:
    connector = FakeConnector(failures=100)
    sleep = RecordingSleep()
    manager = _manager(connector, sleep, max_reconnect_attempts=5, reconnect_base_delay=1.0, reconnect_max_delay=10.0)

    async def run() -> None:
        await manager.subscribe("XAU", "1h", lambda data: None)
        await _settle(200)
        await manager.close()

    asyncio.run(run())
    assert manager.exhausted
    assert sleep.delays == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert len(connector.urls) == 6
