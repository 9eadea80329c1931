"""Unified telemetry stream connection and reconnection management.

One websocket carries frames for every device. Frames are handed to the
telemetry router one at a time in arrival order. When the link drops the
connection reconnects with exponential backoff (``base * 2**(n-1)``) until
``max_attempts`` consecutive attempts have failed; after that it stays down
until :meth:`TelemetryConnection.connect` is called again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

import aiohttp

from .telemetry.event_types import EventName
from .telemetry.events import EventBus

if TYPE_CHECKING:
    from .telemetry.router import TelemetryRouter

LOGGER = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Current state of the telemetry link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    base_delay: float = 1.0
    max_attempts: int = 5

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return self.base_delay * (2 ** (max(attempt, 1) - 1))

    def delays(self) -> List[float]:
        return [self.delay_for(attempt) for attempt in range(1, self.max_attempts + 1)]


class TelemetryConnection:
    """Owns the single multiplexed websocket to the telemetry endpoint.

    Link failures never propagate to callers other than as a ``False`` return
    from :meth:`connect`; they are reported as events on the bus.
    """

    def __init__(
        self,
        url: str,
        router: TelemetryRouter,
        bus: EventBus,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        policy: Optional[ReconnectPolicy] = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.connect_timeout = connect_timeout

        self._router = router
        self._bus = bus
        self._session = session
        self._owns_session = session is None

        self._state = ConnectionState.DISCONNECTED
        self._connecting = False
        self._stop_requested = False
        self._attempts = 0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def connect(self) -> bool:
        """Open the stream.

        Returns True when connected. Returns False immediately, without a
        second socket, if an attempt is already in flight. An explicit call
        resets the backoff counter and pre-empts a pending reconnect.
        """

        if self._state == ConnectionState.CONNECTED:
            return True
        if self._connecting:
            LOGGER.debug("Telemetry connect already in progress")
            return False

        self._stop_requested = False
        self._attempts = 0
        self._cancel_reconnect()
        return await self._open()

    async def close(self) -> None:
        """Close the stream and stop reconnecting."""

        self._stop_requested = True
        self._cancel_reconnect()

        ws = self._ws
        if ws is not None and not ws.closed:
            with contextlib.suppress(Exception):
                await ws.close()

        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None

        self._ws = None
        self._state = ConnectionState.DISCONNECTED

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def ping(self) -> bool:
        """Send a liveness probe. Returns False when the link is down."""

        return await self._send_json(
            {"type": "ping", "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    async def subscribe_device(self, device_id: int) -> bool:
        """Ask the backend to focus the stream on one device."""

        return await self._send_json({"type": "subscribe_device", "device_id": device_id})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _open(self) -> bool:
        self._connecting = True
        self._state = (
            ConnectionState.RECONNECTING if self._attempts else ConnectionState.CONNECTING
        )
        try:
            session = await self._ensure_session()
            async with asyncio.timeout(self.connect_timeout):
                ws = await session.ws_connect(self.url)
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            LOGGER.warning("Telemetry connection to %s failed: %s", self.url, exc)
            self._state = ConnectionState.DISCONNECTED
            self._bus.emit(EventName.CONNECTION_ERROR, detail=str(exc) or type(exc).__name__)
            self._schedule_reconnect()
            return False
        finally:
            self._connecting = False

        if self._stop_requested:
            await ws.close()
            self._state = ConnectionState.DISCONNECTED
            return False

        LOGGER.info("Connected to telemetry stream at %s", self.url)
        self._ws = ws
        self._attempts = 0
        self._state = ConnectionState.CONNECTED
        self._bus.emit(EventName.CONNECTION_OPENED, url=self.url)
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        return True

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    self._router.handle_envelope(message.data)
                elif message.type == aiohttp.WSMsgType.BINARY:
                    pass  # Ignore binary messages
                elif message.type == aiohttp.WSMsgType.ERROR:
                    LOGGER.warning("Telemetry websocket error: %s", ws.exception())
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Telemetry stream failed: %s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
        self._on_link_lost()

    def _on_link_lost(self) -> None:
        if self._stop_requested:
            return
        LOGGER.info("Telemetry stream disconnected")
        self._state = ConnectionState.DISCONNECTED
        self._bus.emit(EventName.CONNECTION_LOST, url=self.url)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._stop_requested or self.reconnect_pending:
            return

        if self._attempts >= self.policy.max_attempts:
            LOGGER.error(
                "Telemetry reconnect gave up after %d attempts", self._attempts
            )
            self._bus.emit(EventName.RECONNECT_EXHAUSTED, attempts=self._attempts)
            return

        self._attempts += 1
        delay = self.policy.delay_for(self._attempts)
        LOGGER.info(
            "Reconnecting to telemetry stream in %.1fs (attempt %d)",
            delay,
            self._attempts,
        )
        self._bus.emit(
            EventName.RECONNECT_SCHEDULED, attempt=self._attempts, delay=delay
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if not self._stop_requested and not self._connecting:
            await self._open()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _send_json(self, payload: dict) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_json(payload)
        except Exception as exc:
            LOGGER.warning("Telemetry send failed: %s", exc)
            return False
        return True
