"""Per-device state reconciliation.

Updates are always merged into the existing state, never replace it, so a
flag flip and an unrelated field update arriving back to back both stay
visible. States are created on the first frame that references a device and
are never deleted; a disconnect only clears ``is_connected``.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..core import ChannelKind, DeviceState
from ..core.utils import deep_merge
from .demux import UpdateKind, classify_field
from .event_types import NAMED_ATTRIBUTES

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChange:
    """Result of applying one update.

    Attributes:
        device_id: Device the update applied to.
        changed: Named attributes whose value changed, in declaration order.
        state: Snapshot of the state after the update.
    """

    device_id: int
    changed: Tuple[str, ...]
    state: DeviceState

    @property
    def has_changes(self) -> bool:
        return bool(self.changed)


class DeviceStateStore:
    """Maps device ids to their reconciled :class:`DeviceState`.

    Writes are serialized and reads return deep copies, so a reader polling
    from a task sequencer never observes a partially applied update.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._states: Dict[int, DeviceState] = {}
        self._lock = threading.RLock()

    def apply_update(
        self,
        device_id: int,
        channel: ChannelKind,
        fields: Mapping[str, Any],
        *,
        observed_at: Optional[datetime] = None,
    ) -> StateChange:
        with self._lock:
            state = self._ensure(device_id)
            before = _named_values(state)

            for key, value in fields.items():
                self._apply_field(state, channel, key, value)

            state.last_update = observed_at or self._clock()
            after = _named_values(state)

            changed = tuple(
                name for name in NAMED_ATTRIBUTES if before[name] != after[name]
            )
            return StateChange(device_id, changed, copy.deepcopy(state))

    def touch(self, device_id: int, *, observed_at: Optional[datetime] = None) -> None:
        """Record liveness without changing any field."""

        with self._lock:
            state = self._ensure(device_id)
            state.last_update = observed_at or self._clock()

    def mark_disconnected(self, device_id: int) -> StateChange:
        with self._lock:
            state = self._ensure(device_id)
            was_connected = state.is_connected
            state.is_connected = False
            changed = ("is_connected",) if was_connected else ()
            return StateChange(device_id, changed, copy.deepcopy(state))

    def get_state(self, device_id: int) -> Optional[DeviceState]:
        with self._lock:
            state = self._states.get(device_id)
            return copy.deepcopy(state) if state is not None else None

    def get_all_states(self) -> Dict[int, DeviceState]:
        with self._lock:
            return copy.deepcopy(self._states)

    def __contains__(self, device_id: object) -> bool:
        with self._lock:
            return device_id in self._states

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def _ensure(self, device_id: int) -> DeviceState:
        state = self._states.get(device_id)
        if state is None:
            LOGGER.debug("Tracking new device %s", device_id)
            state = DeviceState(device_id=device_id)
            self._states[device_id] = state
        return state

    def _apply_field(
        self, state: DeviceState, channel: ChannelKind, key: str, value: Any
    ) -> None:
        update = classify_field(channel, key, value)

        if update.kind is UpdateKind.BATTERY:
            state.battery = update.value
        elif update.kind is UpdateKind.LOCATION:
            for name, coordinate in update.value.items():
                setattr(state.location, name, coordinate)
        elif update.kind is UpdateKind.ALTITUDE:
            state.location.altitude = update.value
        elif update.kind is UpdateKind.HEADING:
            state.heading = update.value
        elif update.kind is UpdateKind.FLAG:
            setattr(state, update.attribute, update.value)
        elif update.kind is UpdateKind.SENSOR:
            deep_merge(state.sensor_reading, {update.attribute: update.value})
        elif update.kind is UpdateKind.EXTRA:
            state.extra[update.attribute] = copy.deepcopy(update.value)
        else:  # pragma: no cover - exhaustive over UpdateKind
            raise AssertionError(f"Unhandled update kind {update.kind}")


def _named_values(state: DeviceState) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in NAMED_ATTRIBUTES:
        value = getattr(state, name)
        values[name] = value.as_dict() if name == "location" else value
    return values
