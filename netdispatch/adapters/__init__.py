"""Adapter modules for external integrations."""

from .directory import BillingDirectoryClient
from .mqtt import MQTTClient, MQTTConnectionError
from .routeros import RouterOSClient

__all__ = [
    "BillingDirectoryClient",
    "MQTTClient",
    "MQTTConnectionError",
    "RouterOSClient",
]
