"""Inbound frame demultiplexing.

Two wire shapes reach the client:

* Tagged envelopes on the unified telemetry stream::

    {"type": "realtime_data", "device_id": 7, "message_type": "websocket",
     "data": "battery:77", "timestamp": "2025-08-21T10:00:00+08:00"}

  ``message_type`` is the channel kind. Primary-channel ``data`` is usually a
  legacy ``key:value`` string, secondary-channel ``data`` an object that may
  wrap the sensor payload in a ``raw_message`` string.

* Legacy ``key:value`` frames on a device's own command channel. The
  ``mqtt`` key carries an escaped secondary-channel payload.

Decoding yields a :class:`DecodedFrame`; :func:`classify_field` then maps a
single field onto the closed set of update kinds the state store applies.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from ..core import ChannelKind, ControlFrame, DecodedFrame, FrameDecodeError
from ..core.utils import parse_timestamp, strip_enclosing_quotes, strip_stray_quotes

LOGGER = logging.getLogger(__name__)

ENVELOPE_DATA_TYPE = "realtime_data"
HEARTBEAT_KEY = "heart"
SECONDARY_MARKER = ChannelKind.SECONDARY.value
SECONDARY_PREFIX = f"{SECONDARY_MARKER}:"
RAW_MESSAGE_KEY = "raw_message"

FLAG_FIELDS: Dict[str, str] = {
    "isfly": "is_flying",
    "isconn": "is_connected",
    "isvt": "is_virtual_stick_engaged",
    "isvta": "is_virtual_stick_advanced_engaged",
}

_JSON_DECODER = json.JSONDecoder()


class UpdateKind(str, Enum):
    BATTERY = "battery"
    LOCATION = "location"
    ALTITUDE = "altitude"
    HEADING = "heading"
    FLAG = "flag"
    SENSOR = "sensor"
    EXTRA = "extra"


@dataclass(frozen=True, slots=True)
class FieldUpdate:
    """One typed field update.

    ``attribute`` names the :class:`DeviceState` attribute for flag updates
    and the original key for sensor and extra updates.
    """

    kind: UpdateKind
    attribute: str
    value: Any


def coerce_flag(value: Any) -> bool:
    """Only ``"1"``, integer ``1`` and ``True`` are true; anything else is false."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip() == "1"
    return False


def classify_field(channel: ChannelKind, key: str, value: Any) -> FieldUpdate:
    """Map one wire field onto a typed update.

    Values that carry a known key but an unusable shape fall back to
    ``EXTRA`` so nothing is discarded.
    """

    if channel is ChannelKind.SECONDARY:
        return FieldUpdate(UpdateKind.SENSOR, key, value)

    if key == "battery":
        return FieldUpdate(UpdateKind.BATTERY, key, str(value))

    if key == "location":
        location = _parse_location(value)
        if location is not None:
            return FieldUpdate(UpdateKind.LOCATION, key, location)

    elif key == "height":
        return FieldUpdate(UpdateKind.ALTITUDE, key, str(value))

    elif key == "attitude":
        heading = _parse_attitude(value)
        if heading is not None:
            return FieldUpdate(UpdateKind.HEADING, key, heading)

    elif key in ("heading", "direction"):
        heading = _parse_number(value)
        if heading is not None:
            return FieldUpdate(UpdateKind.HEADING, key, heading)

    elif key in FLAG_FIELDS:
        return FieldUpdate(UpdateKind.FLAG, FLAG_FIELDS[key], coerce_flag(value))

    return FieldUpdate(UpdateKind.EXTRA, key, value)


def decode_legacy(
    device_id: int, frame: str, *, timestamp: Optional[datetime] = None
) -> DecodedFrame:
    """Decode a ``key:value`` frame from a device command channel."""

    if not isinstance(frame, str):
        raise FrameDecodeError(f"Legacy frame must be text, got {type(frame).__name__}")

    text = strip_enclosing_quotes(frame.strip())
    key, separator, value = text.partition(":")
    key = strip_stray_quotes(key)
    if not separator or not key:
        raise FrameDecodeError(f"Frame has no key:value separator: {frame[:80]!r}")

    if key == SECONDARY_MARKER:
        return DecodedFrame(
            device_id=device_id,
            channel=ChannelKind.SECONDARY,
            fields=unwrap_secondary(text),
            raw=text,
            timestamp=timestamp,
        )

    return DecodedFrame(
        device_id=device_id,
        channel=ChannelKind.PRIMARY,
        fields={key: strip_stray_quotes(value)},
        raw=text,
        is_heartbeat=key == HEARTBEAT_KEY,
        timestamp=timestamp,
    )


def unwrap_secondary(text: str) -> Dict[str, Any]:
    """Unwrap an ``mqtt:`` legacy frame into its sensor fields."""

    body = strip_enclosing_quotes(text.strip())
    if body.startswith(SECONDARY_PREFIX):
        body = body[len(SECONDARY_PREFIX) :]
    body = strip_enclosing_quotes(body.strip())

    try:
        payload: Any = json.loads(body)
    except json.JSONDecodeError:
        payload = body
    return extract_sensor_fields(payload)


def extract_sensor_fields(payload: Any) -> Dict[str, Any]:
    """Return the sensor key-value set carried by a secondary payload."""

    if isinstance(payload, Mapping):
        raw_message = payload.get(RAW_MESSAGE_KEY)
        if isinstance(raw_message, str):
            return find_embedded_object(raw_message)
        return dict(payload)

    if isinstance(payload, str):
        return find_embedded_object(payload)

    raise FrameDecodeError(
        f"Unsupported secondary payload type {type(payload).__name__}"
    )


def find_embedded_object(text: str) -> Dict[str, Any]:
    """Return the first well-formed JSON object embedded in ``text``.

    Sensor payloads arrive with control bytes and the topic name in front of
    the JSON body.
    """

    index = text.find("{")
    while index != -1:
        try:
            candidate, _ = _JSON_DECODER.raw_decode(text, index)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(candidate, dict):
                return candidate
        index = text.find("{", index + 1)

    raise FrameDecodeError(f"No embedded object in payload: {text[:80]!r}")


def decode_envelope(frame: Union[str, bytes]) -> Union[DecodedFrame, ControlFrame]:
    """Decode one tagged envelope from the unified telemetry stream."""

    try:
        message = json.loads(frame)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise FrameDecodeError(f"Envelope is not valid JSON: {exc}") from exc

    if not isinstance(message, dict):
        raise FrameDecodeError("Envelope must be a JSON object")

    kind = message.get("type")
    if kind != ENVELOPE_DATA_TYPE:
        return ControlFrame(kind=str(kind), payload=message)

    device_id = _coerce_device_id(message.get("device_id"))
    channel = _coerce_channel(message.get("message_type"))
    timestamp = parse_timestamp(message.get("timestamp"))
    data = message.get("data")

    if channel is ChannelKind.SECONDARY:
        if isinstance(data, str):
            fields = unwrap_secondary(data)
        else:
            fields = extract_sensor_fields(data)
        return DecodedFrame(
            device_id=device_id,
            channel=channel,
            fields=fields,
            raw=json.dumps(data, ensure_ascii=False) if data is not None else "",
            timestamp=timestamp,
        )

    if isinstance(data, str):
        return decode_legacy(device_id, data, timestamp=timestamp)

    if isinstance(data, Mapping):
        fields = dict(data)
        return DecodedFrame(
            device_id=device_id,
            channel=channel,
            fields=fields,
            raw=json.dumps(fields, ensure_ascii=False),
            is_heartbeat=set(fields) == {HEARTBEAT_KEY},
            timestamp=timestamp,
        )

    raise FrameDecodeError(
        f"Unsupported primary payload type {type(data).__name__} for device {device_id}"
    )


class MessageDemultiplexer:
    """Decodes frames, logging and dropping the ones that fail.

    Malformed frames from flaky links are expected; the stream keeps going.
    """

    def __init__(self) -> None:
        self.dropped_frames = 0

    def decode_envelope(
        self, frame: Union[str, bytes]
    ) -> Optional[Union[DecodedFrame, ControlFrame]]:
        try:
            return decode_envelope(frame)
        except FrameDecodeError as exc:
            self.dropped_frames += 1
            LOGGER.warning("Dropping telemetry frame: %s", exc)
            return None

    def decode_legacy(self, device_id: int, frame: str) -> Optional[DecodedFrame]:
        try:
            return decode_legacy(device_id, frame)
        except FrameDecodeError as exc:
            self.dropped_frames += 1
            LOGGER.warning("Dropping frame from device %s: %s", device_id, exc)
            return None

    def decode_sensor_payload(
        self, device_id: int, payload: Union[str, bytes]
    ) -> Optional[DecodedFrame]:
        """Decode a payload received straight from a sensor broker."""

        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        try:
            try:
                parsed: Any = json.loads(text)
            except json.JSONDecodeError:
                parsed = text
            fields = extract_sensor_fields(parsed)
        except FrameDecodeError as exc:
            self.dropped_frames += 1
            LOGGER.warning("Dropping sensor payload for device %s: %s", device_id, exc)
            return None

        return DecodedFrame(
            device_id=device_id,
            channel=ChannelKind.SECONDARY,
            fields=fields,
            raw=text,
        )


def _parse_location(value: Any) -> Optional[Dict[str, str]]:
    if isinstance(value, str):
        tokens = value.split()
        if len(tokens) >= 3:
            return {
                "latitude": tokens[0],
                "longitude": tokens[1],
                "altitude": tokens[2],
            }
        return None

    if isinstance(value, Mapping):
        location = {
            name: str(value[name])
            for name in ("latitude", "longitude", "altitude")
            if value.get(name) is not None
        }
        return location or None

    return None


def _parse_attitude(value: Any) -> Optional[float]:
    if isinstance(value, str):
        tokens = value.split()
        if len(tokens) >= 3:
            return _parse_number(tokens[2])
        if len(tokens) == 1:
            return _parse_number(tokens[0])
        return None
    if isinstance(value, Mapping):
        return _parse_number(value.get("heading"))
    return _parse_number(value)


def _parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_device_id(value: Any) -> int:
    if isinstance(value, bool):
        raise FrameDecodeError(f"Invalid device id {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise FrameDecodeError(f"Invalid device id {value!r}") from exc


def _coerce_channel(value: Any) -> ChannelKind:
    try:
        return ChannelKind(value)
    except ValueError as exc:
        raise FrameDecodeError(f"Unknown channel kind {value!r}") from exc
