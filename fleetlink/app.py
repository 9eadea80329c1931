"""Application wiring for fleetlink.

:class:`FleetLinkContext` owns one instance of every collaborator and is
passed explicitly to whatever needs it; nothing in the package reaches for
process-wide singletons.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from functools import partial
from typing import Iterable, List, Optional

from . import constants
from .adapters import MQTTConnectionError, RegistryClient, SensorMQTTClient
from .commands import CommandChannelManager, resolve_endpoint
from .config import FleetLinkConfig, load_config
from .connection import ReconnectPolicy, TelemetryConnection
from .core import DeviceIdentity, FleetLinkError
from .health import HealthReporter, HealthServer
from .history import HistoryRecorder, JsonLinesSink
from .logging import configure_logging
from .tasks import TaskSequencer
from .telemetry import DeviceStateStore, EventBus, MessageLog, TelemetryRouter
from .telemetry.events import EventHandler

LOGGER = logging.getLogger(__name__)


class FleetLinkContext:
    """Builds and owns the telemetry, command and task components."""

    def __init__(
        self,
        config: FleetLinkConfig,
        *,
        registry: Optional[RegistryClient] = None,
    ) -> None:
        self.config = config

        self.bus = EventBus()
        self.store = DeviceStateStore()
        self.message_log = MessageLog()

        self.history: Optional[HistoryRecorder] = None
        if config.history.enabled:
            self.history = HistoryRecorder(
                JsonLinesSink(config.history.path),
                immediate_interval=config.history.immediate_interval_seconds,
                flush_interval=config.history.flush_interval_seconds,
            )

        self.router = TelemetryRouter(
            self.store,
            self.bus,
            message_log=self.message_log,
            history=self.history,
        )

        resilience = config.resilience
        self.connection = TelemetryConnection(
            config.telemetry.url,
            self.router,
            self.bus,
            policy=ReconnectPolicy(
                base_delay=resilience.reconnect_initial_seconds,
                max_attempts=resilience.reconnect_max_attempts,
            ),
            connect_timeout=config.telemetry.connect_timeout_seconds,
        )

        self.commands = CommandChannelManager(
            self.router,
            endpoint_resolver=partial(resolve_endpoint, config=config.commands),
            heartbeat_interval=resilience.heartbeat_interval_seconds,
            bootstrap=config.commands.bootstrap_on_connect,
            bootstrap_delay=config.commands.bootstrap_delay_seconds,
            connect_timeout=config.commands.connect_timeout_seconds,
        )

        self.tasks = TaskSequencer(
            self.store,
            self.commands,
            bus=self.bus,
            poll_interval=config.tasks.poll_interval_seconds,
            settle_seconds=config.tasks.settle_seconds,
            height_tolerance=config.tasks.height_tolerance,
            heading_tolerance=config.tasks.heading_tolerance,
        )

        self.registry = registry or RegistryClient(
            config.registry.base_url,
            api_token=config.registry.api_token,
            timeout=config.registry.request_timeout_seconds,
            default_step_timeout=config.tasks.default_step_timeout_seconds,
        )

        self.sensors: Optional[SensorMQTTClient] = None
        if config.sensors.enabled and config.sensors.topics:
            self.sensors = SensorMQTTClient(
                config.sensors,
                self.router,
                client_id=f"{constants.APP_NAME}-{os.getpid()}",
            )

        self.health = HealthReporter()
        self._untrack_health = self.health.track(self.bus)
        self._health_server: Optional[HealthServer] = None

    async def start(
        self, device_refs: Iterable[int | str] = (), *, stream: bool = True
    ) -> bool:
        """Start background components and open the requested devices.

        Returns False when any part came up degraded; the components that
        did start keep running.
        """

        ok = True
        await self._start_health_server()

        if self.history is not None:
            self.history.start()

        if stream and not await self.connection.connect():
            LOGGER.warning("Telemetry stream unavailable; reconnect scheduled")
            ok = False

        if self.sensors is not None:
            try:
                await self.sensors.connect()
            except MQTTConnectionError as exc:
                LOGGER.error("Sensor broker unavailable: %s", exc)
                await self.health.update("sensors", False, str(exc))
                self.sensors = None
                ok = False
            else:
                await self.health.update("sensors", True, "connected")

        for device_ref in device_refs:
            if await self.open_device(device_ref) is None:
                ok = False

        return ok

    async def open_device(self, device_ref: int | str) -> Optional[DeviceIdentity]:
        """Resolve a device through the registry and open its command channel."""

        try:
            identity = await self.registry.get_device(device_ref)
        except FleetLinkError as exc:
            LOGGER.error("Could not resolve device %s: %s", device_ref, exc)
            return None

        if not await self.commands.open(identity):
            return None
        if self.connection.is_connected:
            await self.connection.subscribe_device(identity.device_id)
        return identity

    async def stop(self) -> None:
        self.tasks.stop()
        await self.commands.close_all()
        await self.connection.close()

        if self.sensors is not None:
            await self.sensors.disconnect()
            self.sensors = None

        if self.history is not None:
            await self.history.stop()

        await self.bus.drain()
        self._untrack_health()
        await self._stop_health_server()
        await self.registry.close()

    async def _start_health_server(self) -> None:
        resilience = self.config.resilience
        if not resilience.health_enabled or resilience.health_port <= 0:
            return

        server = HealthServer(
            self.health,
            resilience.health_host,
            resilience.health_port,
            store=self.store,
            message_log=self.message_log,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self.health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self.health.update("health-endpoint", True, None)

    async def _stop_health_server(self) -> None:
        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None


class FleetLinkApp:
    """Long-running monitor: keeps the stream and channels up until stopped."""

    def __init__(
        self,
        config: Optional[FleetLinkConfig] = None,
        *,
        device_refs: Iterable[int | str] = (),
        event_handler: Optional[EventHandler] = None,
    ) -> None:
        self._config = config or load_config()
        self._event_handler = event_handler
        self._device_refs: List[int | str] = list(device_refs)
        self.context: Optional[FleetLinkContext] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    async def run(self, duration: Optional[float] = None) -> None:
        self._shutdown_event = asyncio.Event()
        self.context = FleetLinkContext(self._config)
        if self._event_handler is not None:
            self.context.bus.subscribe(self._event_handler)

        LOGGER.info("fleetlink starting with config: %s", self._config.path)
        if not await self.context.start(self._device_refs):
            LOGGER.warning("Startup incomplete; running in degraded mode")

        try:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=duration)
        except asyncio.CancelledError:
            LOGGER.info("fleetlink received shutdown signal")
            raise
        finally:
            await self.context.stop()

    def request_stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(
        cls,
        config: Optional[FleetLinkConfig] = None,
        *,
        device_refs: Iterable[int | str] = (),
        duration: Optional[float] = None,
        event_handler: Optional[EventHandler] = None,
    ) -> None:
        instance = cls(
            config=config, device_refs=device_refs, event_handler=event_handler
        )
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run(duration))
        except KeyboardInterrupt:
            LOGGER.info("fleetlink received shutdown signal")
