"""Bounded per-device log of human-facing messages."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Dict, List

from ..core import DecodedFrame

DEFAULT_LOG_SIZE = 50


@dataclass(frozen=True, slots=True)
class LoggedMessage:
    text: str
    received_at: datetime


class MessageLog:
    """Newest-first message history per device. Heartbeats are never kept."""

    def __init__(self, max_entries: int = DEFAULT_LOG_SIZE) -> None:
        self._max_entries = max(1, max_entries)
        self._entries: Dict[int, Deque[LoggedMessage]] = {}

    def record(self, frame: DecodedFrame) -> bool:
        if frame.is_heartbeat or not frame.raw:
            return False

        entries = self._entries.get(frame.device_id)
        if entries is None:
            entries = deque(maxlen=self._max_entries)
            self._entries[frame.device_id] = entries

        entries.appendleft(
            LoggedMessage(
                text=frame.raw,
                received_at=frame.timestamp or datetime.now(timezone.utc),
            )
        )
        return True

    def messages(self, device_id: int) -> List[str]:
        return [entry.text for entry in self._entries.get(device_id, ())]

    def entries(self, device_id: int) -> List[LoggedMessage]:
        return list(self._entries.get(device_id, ()))

    def clear(self, device_id: int) -> None:
        self._entries.pop(device_id, None)
