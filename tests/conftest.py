import asyncio
import json
from typing import Any, Optional

import pytest

from netdispatch.core.protocols import AccountRecord, DeviceRecord


class FakeBroker:
    """In-memory broker recording publishes and routing deliveries to handlers."""

    def __init__(self) -> None:
        self.subscriptions: dict[tuple[str, Optional[str]], Any] = {}
        self.unsubscriptions: list[tuple[str, Optional[str]]] = []
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.fail_publish: Optional[Exception] = None
        self.connected = False
        self.connect_handlers: list[Any] = []
        self.disconnect_handlers: list[Any] = []

    async def connect(self, timeout: float = 30.0) -> None:
        self.connected = True

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.connected = False

    def register_connect_handler(self, handler) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler) -> None:
        self.disconnect_handlers.append(handler)

    def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False):
        if self.fail_publish is not None:
            raise self.fail_publish
        self.published.append((topic, payload, qos, retain))

    def subscribe(self, topic: str, handler, *, group=None, qos: int = 1) -> None:
        self.subscriptions[(topic, group)] = handler

    def unsubscribe(self, topic: str, *, group=None) -> None:
        self.subscriptions.pop((topic, group), None)
        self.unsubscriptions.append((topic, group))

    async def deliver(self, topic: str, document: Any) -> None:
        payload = document if isinstance(document, bytes) else json.dumps(document).encode()
        for (sub_topic, _group), handler in list(self.subscriptions.items()):
            if sub_topic == topic:
                result = handler(topic, payload)
                if asyncio.iscoroutine(result):
                    await result

    def messages(self, topic: str) -> list[dict[str, Any]]:
        return [json.loads(payload) for t, payload, _, _ in self.published if t == topic]


class FakeDirectory:
    def __init__(self) -> None:
        self.devices: dict[str, DeviceRecord] = {
            "dev-1": DeviceRecord(id="dev-1", host="10.0.0.1", username="admin")
        }
        self.accounts: dict[str, AccountRecord] = {
            "acc-1": AccountRecord(id="acc-1", account_number="100200", client_name="Ada Lovelace")
        }
        self.lookups: list[tuple[str, str]] = []
        self.error: Optional[Exception] = None

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        self.lookups.append(("device", device_id))
        if self.error is not None:
            raise self.error
        return self.devices.get(device_id)

    async def get_account(self, account_id: str) -> Optional[AccountRecord]:
        self.lookups.append(("account", account_id))
        if self.error is not None:
            raise self.error
        return self.accounts.get(account_id)


class FakeController:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.error: Optional[Exception] = None
        self.stats: Optional[dict[str, Any]] = {"rxBitsPerSecond": 10}
        self.delay = 0.0

    async def _record(self, action: str, device: DeviceRecord, **kwargs) -> dict[str, Any]:
        self.calls.append((action, device.id, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"action": action}

    async def add_lease(self, device, *, mac_address, ip_address, pool_name, comment):
        return await self._record(
            "add_lease",
            device,
            mac_address=mac_address,
            ip_address=ip_address,
            pool_name=pool_name,
            comment=comment,
        )

    async def remove_lease(self, device, mac_address):
        return await self._record("remove_lease", device, mac_address=mac_address)

    async def block_client(self, device, mac_address):
        return await self._record("block_client", device, mac_address=mac_address)

    async def unblock_client(self, device, mac_address):
        return await self._record("unblock_client", device, mac_address=mac_address)

    async def get_client_stats(self, device, mac_address):
        await self._record("get_client_stats", device, mac_address=mac_address)
        return self.stats


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def controller() -> FakeController:
    return FakeController()



@pytest.fixture
def broker_factory():
    return FakeBroker
