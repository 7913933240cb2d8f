"""Adapter modules for external integrations."""

from .mqtt import MQTTClient, MQTTConnectionError
from .serial_link import (
    LINK_ERRORS,
    DeviceLinkError,
    LinkOpener,
    LinkTimeouts,
    close_link,
    open_serial_link,
)

__all__ = [
    "LINK_ERRORS",
    "DeviceLinkError",
    "LinkOpener",
    "LinkTimeouts",
    "MQTTClient",
    "MQTTConnectionError",
    "close_link",
    "open_serial_link",
]
