"""Per-device command channels.

Each device gets its own websocket for outbound commands. The same socket
also carries the device's legacy ``key:value`` telemetry, which is routed
through the shared demultiplexer so both paths reconcile into one state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

import aiohttp

from .config import CommandConfig
from .core import DeviceIdentity, SendResult
from .telemetry.demux import HEARTBEAT_KEY
from .telemetry.event_types import Event, EventName
from .telemetry.router import TelemetryRouter

LOGGER = logging.getLogger(__name__)

DEFAULT_URL_TEMPLATE = "ws://{host}:{port}/{uuid}"
BOOTSTRAP_COMMANDS = ("get status", "vstick")
BOOTSTRAP_FOLLOWUP = "vastick"

EndpointResolver = Callable[[DeviceIdentity], str]


def resolve_endpoint(identity: DeviceIdentity, config: CommandConfig) -> str:
    """Build the command channel URL for ``identity``.

    The registry-provided ``command_port`` wins; otherwise the port is
    ``base_port + device_id``.
    """

    port = identity.command_port or config.base_port + identity.device_id
    template = config.url_template or DEFAULT_URL_TEMPLATE
    return template.format(
        host=config.host,
        port=port,
        uuid=identity.uuid,
        device_id=identity.device_id,
    )


@dataclass
class _Channel:
    identity: DeviceIdentity
    url: str
    ws: aiohttp.ClientWebSocketResponse
    reader: Optional[asyncio.Task[None]] = None
    heartbeat: Optional[asyncio.Task[None]] = None
    bootstrap: Optional[asyncio.Task[None]] = None
    closed: bool = False

    @property
    def is_open(self) -> bool:
        return not self.closed and not self.ws.closed


class CommandChannelManager:
    """Opens, tracks and closes command channels keyed by device id."""

    def __init__(
        self,
        router: TelemetryRouter,
        *,
        endpoint_resolver: EndpointResolver,
        heartbeat_interval: float = 15.0,
        bootstrap: bool = True,
        bootstrap_delay: float = 2.0,
        connect_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._router = router
        self._bus = router.bus
        self._resolve = endpoint_resolver
        self.heartbeat_interval = heartbeat_interval
        self.bootstrap_enabled = bootstrap
        self.bootstrap_delay = bootstrap_delay
        self.connect_timeout = connect_timeout

        self._session = session
        self._owns_session = session is None
        self._channels: Dict[int, _Channel] = {}
        self._opening: Set[int] = set()

        self._unsubscribe = self._bus.subscribe(
            self._on_connected_changed, names=[EventName.IS_CONNECTED]
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def is_ready(self, device_id: int) -> bool:
        channel = self._channels.get(device_id)
        return channel is not None and channel.is_open

    def has_channel(self, device_id: int) -> bool:
        return device_id in self._channels

    @property
    def device_ids(self) -> list[int]:
        return sorted(self._channels)

    async def open(self, identity: DeviceIdentity) -> bool:
        """Open the command channel for ``identity``.

        Returns True if a channel is (or already was) open, False if another
        open for the same device is in flight or the connection failed.
        """

        device_id = identity.device_id
        if self.is_ready(device_id):
            return True
        if device_id in self._opening:
            return False

        url = self._resolve(identity)
        self._opening.add(device_id)
        try:
            session = await self._ensure_session()
            async with asyncio.timeout(self.connect_timeout):
                ws = await session.ws_connect(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning(
                "Failed to open command channel for device %s at %s: %s",
                device_id,
                url,
                exc,
            )
            self._bus.emit(
                EventName.CONNECTION_ERROR,
                device_id=device_id,
                detail=str(exc) or type(exc).__name__,
            )
            return False
        finally:
            self._opening.discard(device_id)

        stale = self._channels.pop(device_id, None)
        if stale is not None:
            await self._shutdown(stale)

        channel = _Channel(identity=identity, url=url, ws=ws)
        self._channels[device_id] = channel
        channel.reader = asyncio.create_task(self._read_loop(channel))
        channel.heartbeat = asyncio.create_task(self._heartbeat_loop(channel))

        LOGGER.info("Command channel open for device %s (%s)", device_id, url)
        self._bus.emit(EventName.CHANNEL_OPENED, device_id=device_id, url=url)

        if self.bootstrap_enabled:
            self._start_bootstrap(channel)
        return True

    async def close(self, device_id: int) -> bool:
        channel = self._channels.get(device_id)
        if channel is None:
            return False
        await self._shutdown(channel)
        return True

    async def close_all(self) -> None:
        for channel in list(self._channels.values()):
            await self._shutdown(channel)
        self._unsubscribe()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def send(self, device_id: int, command: str) -> SendResult:
        """Transmit ``command`` verbatim on the device's channel."""

        channel = self._channels.get(device_id)
        if channel is None:
            LOGGER.debug("No command channel for device %s", device_id)
            return SendResult.NO_CHANNEL
        if not channel.is_open:
            LOGGER.debug("Command channel for device %s not open", device_id)
            return SendResult.NOT_READY

        try:
            await channel.ws.send_str(command)
        except Exception as exc:
            LOGGER.warning("Send to device %s failed: %s", device_id, exc)
            return SendResult.SEND_FAILED

        LOGGER.debug("Sent %r to device %s", command, device_id)
        return SendResult.SENT

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            )
            self._owns_session = True
        return self._session

    async def _read_loop(self, channel: _Channel) -> None:
        device_id = channel.identity.device_id
        try:
            async for message in channel.ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    self._router.handle_legacy(device_id, message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    LOGGER.warning(
                        "Command channel error for device %s: %s",
                        device_id,
                        channel.ws.exception(),
                    )
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Command channel for device %s failed: %s", device_id, exc)
        finally:
            self._finalize(channel)

    async def _heartbeat_loop(self, channel: _Channel) -> None:
        while channel.is_open:
            await asyncio.sleep(self.heartbeat_interval)
            if not channel.is_open:
                return
            try:
                await channel.ws.send_str(HEARTBEAT_KEY)
            except Exception as exc:
                LOGGER.debug(
                    "Heartbeat to device %s failed: %s", channel.identity.device_id, exc
                )
                return

    def _start_bootstrap(self, channel: _Channel) -> None:
        if channel.bootstrap is not None and not channel.bootstrap.done():
            return
        channel.bootstrap = asyncio.create_task(self._bootstrap(channel))

    async def _bootstrap(self, channel: _Channel) -> None:
        device_id = channel.identity.device_id
        for command in BOOTSTRAP_COMMANDS:
            await self.send(device_id, command)
        await asyncio.sleep(self.bootstrap_delay)
        if channel.is_open:
            await self.send(device_id, BOOTSTRAP_FOLLOWUP)

    def _on_connected_changed(self, event: Event) -> None:
        if not event.payload.get("value") or event.device_id is None:
            return
        channel = self._channels.get(event.device_id)
        if channel is None or not channel.is_open or not self.bootstrap_enabled:
            return
        state = self._router.store.get_state(event.device_id)
        if state is not None and state.is_virtual_stick_engaged:
            return
        self._start_bootstrap(channel)

    async def _shutdown(self, channel: _Channel) -> None:
        if not channel.ws.closed:
            with contextlib.suppress(Exception):
                await channel.ws.close()
        reader = channel.reader
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self._finalize(channel)

    def _finalize(self, channel: _Channel) -> None:
        if channel.closed:
            return
        channel.closed = True

        current = asyncio.current_task()
        for task in (channel.heartbeat, channel.bootstrap):
            if task is not None and not task.done() and task is not current:
                task.cancel()

        device_id = channel.identity.device_id
        if self._channels.get(device_id) is channel:
            del self._channels[device_id]

        change = self._router.store.mark_disconnected(device_id)
        if change.has_changes:
            self._bus.emit(EventName.IS_CONNECTED, device_id=device_id, value=False)

        LOGGER.info("Command channel closed for device %s", device_id)
        self._bus.emit(EventName.CHANNEL_CLOSED, device_id=device_id)
