"""Core primitives for fleetlink."""

from .errors import (
    DeviceBusyError,
    DeviceNotConnectedError,
    FleetLinkError,
    FrameDecodeError,
    RegistryError,
    TaskDefinitionError,
)
from .models import (
    ChannelKind,
    ControlFrame,
    DecodedFrame,
    DeviceIdentity,
    DeviceState,
    Location,
    SendResult,
)
from .protocols import CommandSender, HistorySink, StateReader
from .utils import deep_merge

__all__ = [
    "ChannelKind",
    "CommandSender",
    "ControlFrame",
    "DecodedFrame",
    "DeviceBusyError",
    "DeviceIdentity",
    "DeviceNotConnectedError",
    "DeviceState",
    "FleetLinkError",
    "FrameDecodeError",
    "HistorySink",
    "Location",
    "RegistryError",
    "SendResult",
    "StateReader",
    "TaskDefinitionError",
    "deep_merge",
]
