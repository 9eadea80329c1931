import asyncio
import json
from typing import Any, Optional

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web

from fleetlink.telemetry import DeviceStateStore, Event, EventBus, TelemetryRouter


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def names(self, device_id: Optional[int] = None) -> list[str]:
        return [
            event.name.value
            for event in self.events
            if device_id is None or event.device_id == device_id
        ]

    def of(self, name: Any) -> list[Event]:
        return [event for event in self.events if event.name == name]


class WebSocketServer:
    """aiohttp websocket server that records inbound text and can push frames."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.received: list[str] = []
        self.connections = 0
        self.sockets: list[web.WebSocketResponse] = []
        self.connected = asyncio.Event()
        self.message_received = asyncio.Event()
        self._runner: Optional[web.AppRunner] = None

    def make_url(self, path: str = "/") -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"ws://127.0.0.1:{self.port}{path}"

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/{tail:.*}", self._handler)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", self.port)
        await site.start()

    async def stop(self) -> None:
        for ws in list(self.sockets):
            await ws.close()
        if self._runner is not None:
            await self._runner.cleanup()

    async def push(self, payload: Any) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        for ws in list(self.sockets):
            if not ws.closed:
                await ws.send_str(text)

    async def drop_all(self) -> None:
        for ws in list(self.sockets):
            await ws.close()

    async def wait_for_messages(self, count: int, timeout: float = 2.0) -> list[str]:
        async def _wait() -> None:
            while len(self.received) < count:
                self.message_received.clear()
                await self.message_received.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
        return list(self.received)

    async def _handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.connections += 1
        self.sockets.append(ws)
        self.connected.set()
        async for message in ws:
            if message.type == aiohttp.WSMsgType.TEXT:
                self.received.append(message.data)
                self.message_received.set()
        self.sockets.remove(ws)
        return ws


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    recorder = EventRecorder()
    bus.subscribe(recorder)
    return recorder


@pytest.fixture
def store() -> DeviceStateStore:
    return DeviceStateStore()


@pytest.fixture
def router(store: DeviceStateStore, bus: EventBus) -> TelemetryRouter:
    return TelemetryRouter(store, bus)


@pytest_asyncio.fixture
async def ws_server(unused_tcp_port_factory):
    server = WebSocketServer(unused_tcp_port_factory())
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


def envelope(device_id: int, data: Any, *, channel: str = "websocket", **extra: Any) -> str:
    message = {
        "type": "realtime_data",
        "device_id": device_id,
        "message_type": channel,
        "data": data,
        "timestamp": "2025-08-21T10:00:00Z",
    }
    message.update(extra)
    return json.dumps(message)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
