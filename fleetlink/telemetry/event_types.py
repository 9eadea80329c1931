"""Event type definitions for the realtime layer.

Events fall into four groups:

- Device state changes, one per named attribute of ``DeviceState`` plus a
  ``rawUpdate`` carrying every field of the update (including open-ended
  sensor and extra fields).
- Raw human-facing messages (never heartbeats), for message-log views.
- Telemetry link and command channel lifecycle.
- Task run lifecycle.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class EventName(str, Enum):
    # Device state
    BATTERY = "battery"
    LOCATION = "location"
    HEADING = "heading"
    IS_FLYING = "isFlying"
    IS_CONNECTED = "isConnected"
    IS_VIRTUAL_STICK_ENGAGED = "isVirtualStickEngaged"
    IS_VIRTUAL_STICK_ADVANCED_ENGAGED = "isVirtualStickAdvancedEngaged"
    RAW_UPDATE = "rawUpdate"
    RAW_MESSAGE = "rawMessage"

    # Telemetry link
    CONNECTION_OPENED = "connectionOpened"
    CONNECTION_LOST = "connectionLost"
    CONNECTION_ERROR = "connectionError"
    RECONNECT_SCHEDULED = "reconnectScheduled"
    RECONNECT_EXHAUSTED = "reconnectExhausted"

    # Command channels
    CHANNEL_OPENED = "channelOpened"
    CHANNEL_CLOSED = "channelClosed"

    # Task runs
    TASK_STARTED = "taskStarted"
    TASK_STEP_COMPLETED = "taskStepCompleted"
    TASK_FINISHED = "taskFinished"


# DeviceState attribute -> change event
ATTRIBUTE_EVENTS: Dict[str, EventName] = {
    "battery": EventName.BATTERY,
    "location": EventName.LOCATION,
    "heading": EventName.HEADING,
    "is_flying": EventName.IS_FLYING,
    "is_connected": EventName.IS_CONNECTED,
    "is_virtual_stick_engaged": EventName.IS_VIRTUAL_STICK_ENGAGED,
    "is_virtual_stick_advanced_engaged": EventName.IS_VIRTUAL_STICK_ADVANCED_ENGAGED,
}

NAMED_ATTRIBUTES = tuple(ATTRIBUTE_EVENTS)


def generate_event_id() -> str:
    """Generate an event id, time-ordered where the interpreter supports it."""
    try:
        return str(uuid.uuid7())  # type: ignore[attr-defined]
    except AttributeError:
        return str(uuid.uuid4())


@dataclass(frozen=True)
class Event:
    """A discrete notification fanned out by the event bus.

    Attributes:
        name: What happened.
        device_id: Device concerned, or None for link-wide events.
        payload: Event-specific data (new attribute value, update fields,
            error detail, task status).
        occurred_at: When the event was raised (UTC).
        event_id: Unique identifier.
    """

    name: EventName
    device_id: Optional[int] = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=generate_event_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "eventName": self.name.value,
            "deviceId": self.device_id,
            "occurredAt": self.occurred_at.isoformat(),
            "payload": dict(self.payload),
        }
