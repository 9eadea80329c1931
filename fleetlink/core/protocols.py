"""Protocol definitions for collaborators consumed by the core."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence

from .models import DeviceState, SendResult


class CommandSender(Protocol):
    """Anything able to deliver a literal command string to a device."""

    async def send(self, device_id: int, command: str) -> SendResult:
        ...

    def is_ready(self, device_id: int) -> bool:
        ...


class StateReader(Protocol):
    def get_state(self, device_id: int) -> Optional[DeviceState]:
        ...


HistorySink = Callable[[Sequence[Mapping[str, Any]]], Awaitable[None] | None]
