"""Error types shared by the telemetry and command layers."""

from __future__ import annotations

from typing import Optional


class FleetLinkError(RuntimeError):
    """Base error carrying a stable ``code`` for presentation layers."""

    code = "fleetlink_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class FrameDecodeError(FleetLinkError):
    """Raised when an inbound frame cannot be decoded."""

    code = "decode_error"


class DeviceBusyError(FleetLinkError):
    """Raised when a task run is requested for a device that already has one."""

    code = "device_busy"

    def __init__(self, device_id: int) -> None:
        super().__init__(f"Device {device_id} already has a running task")
        self.device_id = device_id


class DeviceNotConnectedError(FleetLinkError):
    """Raised when a device has no ready command channel."""

    code = "device_not_connected"

    def __init__(self, device_id: int) -> None:
        super().__init__(f"Device {device_id} is not connected")
        self.device_id = device_id


class TaskDefinitionError(FleetLinkError):
    """Raised when a task definition cannot be turned into steps."""

    code = "invalid_task"


class RegistryError(FleetLinkError):
    """Raised when the device registry returns an unusable response."""

    code = "registry_error"
