"""Contracts for the collaborators the dispatch pipeline depends on.

The broker, the device/account directory and the vendor device control
protocol all live outside this package. Components only talk to them through
the protocols below so that transports can be swapped (and faked in tests)
without touching the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable


# Handlers receive the concrete topic and the raw payload.
MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class DeviceControlError(RuntimeError):
    """Raised when a device rejects an action or cannot be reached."""


class DirectoryError(RuntimeError):
    """Raised when the device/account directory cannot be queried."""


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    """Connection parameters for one managed router."""

    id: str
    host: str
    username: str
    password: str = ""
    port: Optional[int] = None


@dataclass(frozen=True, slots=True)
class AccountRecord:
    """Subscriber account a command acts on behalf of."""

    id: str
    account_number: str
    client_name: str = ""


@runtime_checkable
class BrokerClient(Protocol):
    """Publish/subscribe channel with consumer groups and at-least-once delivery."""

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        """Publish a payload; raises when the broker does not accept it."""
        ...

    def subscribe(
        self,
        topic: str,
        handler: MessageHandler,
        *,
        group: Optional[str] = None,
        qos: int = 1,
    ) -> None:
        """Route messages on ``topic`` to ``handler``.

        When ``group`` is given, members of the same group compete for
        messages while distinct groups each receive every message.
        """
        ...

    def unsubscribe(self, topic: str, *, group: Optional[str] = None) -> None:
        ...


class DeviceDirectory(Protocol):
    """Lookup of devices and accounts owned by the billing store."""

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        """Return the device, or None when it does not exist."""
        ...

    async def get_account(self, account_id: str) -> Optional[AccountRecord]:
        """Return the account, or None when it does not exist."""
        ...


class DeviceController(Protocol):
    """Vendor-specific device actions.

    Implementations must be idempotent: repeating an action that already took
    effect (adding a lease that exists, blocking a blocked client) succeeds
    without corrupting device state. Failures raise :class:`DeviceControlError`.
    """

    async def add_lease(
        self,
        device: DeviceRecord,
        *,
        mac_address: str,
        ip_address: str,
        pool_name: str,
        comment: str,
    ) -> dict[str, Any]:
        ...

    async def remove_lease(
        self, device: DeviceRecord, mac_address: str
    ) -> dict[str, Any]:
        ...

    async def block_client(
        self, device: DeviceRecord, mac_address: str
    ) -> dict[str, Any]:
        ...

    async def unblock_client(
        self, device: DeviceRecord, mac_address: str
    ) -> dict[str, Any]:
        ...

    async def get_client_stats(
        self, device: DeviceRecord, mac_address: str
    ) -> Optional[dict[str, Any]]:
        """Return usage counters for the client, or None when it is unknown."""
        ...


__all__ = [
    "AccountRecord",
    "BrokerClient",
    "DeviceControlError",
    "DeviceController",
    "DeviceDirectory",
    "DeviceRecord",
    "DirectoryError",
    "MessageHandler",
]
