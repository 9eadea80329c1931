"""Realtime telemetry and command dispatch for the device fleet console."""

from .version import __version__

__all__ = ["__version__"]
