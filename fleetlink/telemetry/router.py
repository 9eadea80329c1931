"""Routes decoded frames into the state store and onto the event bus."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Union

from ..core import ChannelKind, ControlFrame, DecodedFrame
from .demux import MessageDemultiplexer
from .event_types import ATTRIBUTE_EVENTS, Event, EventName
from .events import EventBus
from .message_log import MessageLog
from .state_store import DeviceStateStore, StateChange

if TYPE_CHECKING:
    from ..history import HistoryRecorder

LOGGER = logging.getLogger(__name__)


class TelemetryRouter:
    """Single entry point for inbound frames from every channel.

    Frames must be handed over in arrival order; each one is applied to the
    store atomically before the next is looked at.
    """

    def __init__(
        self,
        store: DeviceStateStore,
        bus: EventBus,
        *,
        demux: Optional[MessageDemultiplexer] = None,
        message_log: Optional[MessageLog] = None,
        history: Optional[HistoryRecorder] = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.demux = demux or MessageDemultiplexer()
        self.message_log = message_log or MessageLog()
        self.history = history
        self.last_control: Optional[ControlFrame] = None

    def handle_envelope(self, frame: Union[str, bytes]) -> Optional[StateChange]:
        decoded = self.demux.decode_envelope(frame)
        if decoded is None:
            return None
        if isinstance(decoded, ControlFrame):
            LOGGER.debug("Control frame received: %s", decoded.kind)
            self.last_control = decoded
            return None
        return self.ingest(decoded)

    def handle_legacy(self, device_id: int, frame: str) -> Optional[StateChange]:
        decoded = self.demux.decode_legacy(device_id, frame)
        if decoded is None:
            return None
        return self.ingest(decoded)

    def handle_sensor_payload(
        self, device_id: int, payload: Union[str, bytes]
    ) -> Optional[StateChange]:
        decoded = self.demux.decode_sensor_payload(device_id, payload)
        if decoded is None:
            return None
        return self.ingest(decoded)

    def ingest(self, frame: DecodedFrame) -> Optional[StateChange]:
        if frame.is_heartbeat:
            self.store.touch(frame.device_id, observed_at=frame.timestamp)
            return None

        if frame.channel is ChannelKind.PRIMARY and self.message_log.record(frame):
            self.bus.publish(
                Event(
                    name=EventName.RAW_MESSAGE,
                    device_id=frame.device_id,
                    payload={"channel": frame.channel.value, "message": frame.raw},
                )
            )

        change = self.store.apply_update(
            frame.device_id, frame.channel, frame.fields, observed_at=frame.timestamp
        )

        for attribute in change.changed:
            self.bus.publish(
                Event(
                    name=ATTRIBUTE_EVENTS[attribute],
                    device_id=frame.device_id,
                    payload={"value": _attribute_value(change, attribute)},
                )
            )

        self.bus.publish(
            Event(
                name=EventName.RAW_UPDATE,
                device_id=frame.device_id,
                payload={
                    "channel": frame.channel.value,
                    "fields": dict(frame.fields),
                    "changed": list(change.changed),
                },
            )
        )

        if self.history is not None:
            self.history.record(frame)

        return change


def _attribute_value(change: StateChange, attribute: str):
    value = getattr(change.state, attribute)
    if attribute == "location":
        return value.as_dict()
    return value
