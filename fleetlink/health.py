"""Health reporting and a read-only status endpoint for fleetlink."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from aiohttp import web

from .telemetry.event_types import Event, EventName
from .telemetry.events import EventBus
from .telemetry.message_log import MessageLog
from .telemetry.state_store import DeviceStateStore

LOGGER = logging.getLogger(__name__)

TELEMETRY_COMPONENT = "telemetry"


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running service."""

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def remove(self, name: str) -> None:
        async with self._lock:
            self._status.pop(name, None)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]

        overall = "ok" if all(item["healthy"] for item in components) else "degraded"
        return {"status": overall, "components": components}

    def track(self, bus: EventBus) -> Callable[[], None]:
        """Follow link and channel lifecycle events published on ``bus``."""

        return bus.subscribe(
            self._on_event,
            names=[
                EventName.CONNECTION_OPENED,
                EventName.CONNECTION_LOST,
                EventName.CONNECTION_ERROR,
                EventName.RECONNECT_SCHEDULED,
                EventName.RECONNECT_EXHAUSTED,
                EventName.CHANNEL_OPENED,
                EventName.CHANNEL_CLOSED,
            ],
        )

    async def _on_event(self, event: Event) -> None:
        name = event.name
        if name is EventName.CHANNEL_OPENED:
            await self.update(f"command:{event.device_id}", True, "open")
        elif name is EventName.CHANNEL_CLOSED:
            await self.update(f"command:{event.device_id}", False, "closed")
        elif event.device_id is not None:
            # Per-device connect failures are reported through channel events.
            return
        elif name is EventName.CONNECTION_OPENED:
            await self.update(TELEMETRY_COMPONENT, True, "connected")
        elif name is EventName.RECONNECT_SCHEDULED:
            await self.update(
                TELEMETRY_COMPONENT,
                False,
                f"reconnect attempt {event.payload.get('attempt')} "
                f"in {event.payload.get('delay')}s",
            )
        elif name is EventName.RECONNECT_EXHAUSTED:
            await self.update(TELEMETRY_COMPONENT, False, "reconnect attempts exhausted")
        else:
            await self.update(
                TELEMETRY_COMPONENT, False, str(event.payload.get("detail") or name.value)
            )


class HealthServer:
    """Minimal HTTP server exposing ``/healthz`` and device state views."""

    def __init__(
        self,
        reporter: HealthReporter,
        host: str,
        port: int,
        *,
        store: Optional[DeviceStateStore] = None,
        message_log: Optional[MessageLog] = None,
    ) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._store = store
        self._message_log = message_log
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        if self._store is not None:
            app.router.add_get("/devices", self._handle_devices)
            app.router.add_get("/devices/{device_id}", self._handle_device)
        if self._message_log is not None:
            app.router.add_get("/devices/{device_id}/messages", self._handle_messages)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_devices(self, request: web.Request) -> web.Response:
        assert self._store is not None
        states = self._store.get_all_states()
        return web.json_response(
            {"devices": [states[key].as_dict() for key in sorted(states)]}
        )

    async def _handle_device(self, request: web.Request) -> web.Response:
        assert self._store is not None
        device_id = _device_id(request)
        state = self._store.get_state(device_id)
        if state is None:
            raise web.HTTPNotFound(text=f"Unknown device {device_id}")
        return web.json_response(state.as_dict())

    async def _handle_messages(self, request: web.Request) -> web.Response:
        assert self._message_log is not None
        device_id = _device_id(request)
        messages = [
            {"text": entry.text, "receivedAt": entry.received_at.isoformat()}
            for entry in self._message_log.entries(device_id)
        ]
        return web.json_response({"deviceId": device_id, "messages": messages})


def _device_id(request: web.Request) -> int:
    try:
        return int(request.match_info["device_id"])
    except ValueError:
        raise web.HTTPBadRequest(text="device id must be an integer") from None
