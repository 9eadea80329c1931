"""Inbound telemetry: demultiplexing, state reconciliation and event fan-out."""

from .demux import (
    FieldUpdate,
    MessageDemultiplexer,
    UpdateKind,
    classify_field,
    decode_envelope,
    decode_legacy,
)
from .event_types import Event, EventName
from .events import EventBus
from .message_log import MessageLog
from .router import TelemetryRouter
from .state_store import DeviceStateStore, StateChange

__all__ = [
    "DeviceStateStore",
    "Event",
    "EventBus",
    "EventName",
    "FieldUpdate",
    "MessageDemultiplexer",
    "MessageLog",
    "StateChange",
    "TelemetryRouter",
    "UpdateKind",
    "classify_field",
    "decode_envelope",
    "decode_legacy",
]
