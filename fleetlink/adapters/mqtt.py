"""Direct environmental-sensor ingest over MQTT.

Normally sensor readings reach us wrapped inside the unified telemetry
stream. When a broker is reachable directly, this adapter subscribes to the
configured topics and feeds each payload to the router as a secondary
channel update for the device the topic is mapped to.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import paho.mqtt.client as mqtt

from ..config import SensorConfig
from ..telemetry.router import TelemetryRouter

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


class SensorMQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho invokes callbacks on its network thread; every message is handed
    back to the event loop before it touches the router.
    """

    def __init__(
        self,
        config: SensorConfig,
        router: TelemetryRouter,
        *,
        client_id: str,
        keepalive: int = 60,
        qos: int = 0,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive
        self.qos = qos

        self._router = router
        self._topics: Dict[str, int] = dict(config.topics)
        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Optional[int] = None
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def resolve_device(self, topic: str) -> Optional[int]:
        device_id = self._topics.get(topic)
        if device_id is not None:
            return device_id
        for subscription, candidate in self._topics.items():
            if mqtt.topic_matches_sub(subscription, topic):
                return candidate
        return None

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the broker, wait for the acknowledgement and subscribe."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to sensor broker %s:%s",
            self.config.broker_host,
            self.config.broker_port,
        )

        client.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"Sensor broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to sensor broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()
        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.debug("Sensor broker did not acknowledge disconnect")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def _subscribe_all(self, client: mqtt.Client) -> None:
        for topic in self._topics:
            result, _ = client.subscribe(topic, qos=self.qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                LOGGER.warning("Subscribe to %s failed with rc=%s", topic, result)
            else:
                LOGGER.debug("Subscribed to sensor topic %s", topic)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = getattr(reason_code, "value", reason_code)
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to sensor broker")
            self._connected = True
            # Resubscribe on every (re)connect; paho does not persist them.
            self._subscribe_all(client)
        else:
            LOGGER.error("Sensor broker connection failed with rc=%s", reason_code)
            self._connected = False
        if self._loop and self._connected_event:
            self._loop.call_soon_threadsafe(self._connected_event.set)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        LOGGER.info("Disconnected from sensor broker (rc=%s)", reason_code)
        self._connected = False
        if self._loop and self._disconnect_event:
            self._loop.call_soon_threadsafe(self._disconnect_event.set)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.call_soon_threadsafe(self._dispatch, message.topic, message.payload)

    # ------------------------------------------------------------------
    # Event loop side
    # ------------------------------------------------------------------
    def _dispatch(self, topic: str, payload: bytes) -> None:
        device_id = self.resolve_device(topic)
        if device_id is None:
            LOGGER.debug("Ignoring message on unmapped topic %s", topic)
            return
        try:
            self._router.handle_sensor_payload(device_id, payload)
        except Exception:
            LOGGER.exception("Sensor payload handling failed for %s", topic)
