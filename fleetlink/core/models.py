"""Domain models for device telemetry and command dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class ChannelKind(str, Enum):
    """Onboard subsystem that produced a message.

    The values are the tags used on the wire by the unified telemetry stream.
    """

    PRIMARY = "websocket"
    """Flight controller telemetry."""

    SECONDARY = "mqtt"
    """Environmental sensor readings."""


class SendResult(str, Enum):
    """Outcome of an outbound command send."""

    SENT = "sent"
    NO_CHANNEL = "no_channel"
    NOT_READY = "not_ready"
    SEND_FAILED = "send_failed"

    @property
    def ok(self) -> bool:
        return self is SendResult.SENT


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    """Registry-owned identity of a device.

    ``command_port`` is the port configured for the device's command channel
    by the registry; when absent the endpoint is derived from a base port.
    """

    device_id: int
    uuid: str
    name: Optional[str] = None
    command_port: Optional[int] = None


@dataclass(slots=True)
class Location:
    # Decimal strings, kept verbatim from the wire.
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    altitude: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
        }


@dataclass(slots=True)
class DeviceState:
    """Reconciled state of one device."""

    device_id: int
    battery: Optional[str] = None
    location: Location = field(default_factory=Location)
    heading: Optional[float] = None
    is_flying: bool = False
    is_connected: bool = False
    is_virtual_stick_engaged: bool = False
    is_virtual_stick_advanced_engaged: bool = False
    sensor_reading: Dict[str, Any] = field(default_factory=dict)
    last_update: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def altitude(self) -> Optional[float]:
        """Altitude as a number, or ``None`` when unknown or unparsable."""

        try:
            return float(self.location.altitude) if self.location.altitude else None
        except ValueError:
            return None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "battery": self.battery,
            "location": self.location.as_dict(),
            "heading": self.heading,
            "isFlying": self.is_flying,
            "isConnected": self.is_connected,
            "isVirtualStickEngaged": self.is_virtual_stick_engaged,
            "isVirtualStickAdvancedEngaged": self.is_virtual_stick_advanced_engaged,
            "sensorReading": dict(self.sensor_reading),
            "lastUpdate": (
                self.last_update.isoformat(timespec="seconds")
                if self.last_update
                else None
            ),
            "extra": dict(self.extra),
        }


@dataclass(frozen=True, slots=True)
class DecodedFrame:
    """Normalized result of demultiplexing one inbound frame."""

    device_id: int
    channel: ChannelKind
    fields: Mapping[str, Any]
    raw: str = ""
    is_heartbeat: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class ControlFrame:
    """Non-telemetry envelope such as ``welcome`` or ``pong``."""

    kind: str
    payload: Mapping[str, Any]
