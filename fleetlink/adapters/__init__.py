"""Adapter modules for external integrations."""

from .mqtt import MQTTConnectionError, SensorMQTTClient
from .registry import RegistryClient, identity_from_payload

__all__ = [
    "MQTTConnectionError",
    "RegistryClient",
    "SensorMQTTClient",
    "identity_from_payload",
]
