"""RouterOS v7 REST adapter implementing the device controller actions."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Mapping, Optional

import aiohttp

from ..config import RouterOSConfig
from ..core.protocols import DeviceControlError, DeviceRecord

LOGGER = logging.getLogger(__name__)

LEASE_PATH = "/ip/dhcp-server/lease"
SWITCH_RULE_PATH = "/interface/ethernet/switch/rule"
MONITOR_TRAFFIC_PATH = "/interface/monitor-traffic"

BLOCK_COMMENT = "blocked by netdispatch"

_UPTIME_PATTERN = re.compile(r"(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?")


def parse_uptime(value: Optional[str]) -> int:
    """Convert a RouterOS duration such as ``1d2h3m4s`` into seconds."""

    if not value:
        return 0
    match = _UPTIME_PATTERN.fullmatch(value.strip())
    if match is None:
        return 0
    weeks, days, hours, minutes, seconds = (int(part or 0) for part in match.groups())
    return (((weeks * 7 + days) * 24 + hours) * 60 + minutes) * 60 + seconds


class RouterOSClient:
    """Drives MikroTik routers over the RouterOS REST API.

    Every action first looks at the current device state so that repeating it
    is harmless: adding an existing lease updates it in place, blocking an
    already blocked client and unblocking a free one both succeed untouched.
    """

    def __init__(
        self,
        config: Optional[RouterOSConfig] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or RouterOSConfig()
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Device actions
    # ------------------------------------------------------------------
    async def add_lease(
        self,
        device: DeviceRecord,
        *,
        mac_address: str,
        ip_address: str,
        pool_name: str,
        comment: str,
    ) -> dict[str, Any]:
        desired = {
            "mac-address": mac_address,
            "address": ip_address,
            "server": pool_name,
            "comment": comment,
        }
        existing = await self._find_one(device, LEASE_PATH, {"mac-address": mac_address})

        if existing is None:
            created = await self._request(device, "PUT", LEASE_PATH, json=desired)
            LOGGER.info("Added DHCP lease %s -> %s on %s", mac_address, ip_address, device.host)
            return {"action": "created", "id": _item_id(created), **_lease_view(desired)}

        lease_id = _item_id(existing)
        changes = {
            key: value for key, value in desired.items() if existing.get(key) != value
        }
        if not changes:
            return {"action": "unchanged", "id": lease_id, **_lease_view(existing)}

        await self._request(device, "PATCH", f"{LEASE_PATH}/{lease_id}", json=changes)
        LOGGER.info("Updated DHCP lease %s on %s", mac_address, device.host)
        return {"action": "updated", "id": lease_id, **_lease_view({**existing, **changes})}

    async def remove_lease(self, device: DeviceRecord, mac_address: str) -> dict[str, Any]:
        leases = await self._find(device, LEASE_PATH, {"mac-address": mac_address})
        for lease in leases:
            await self._request(device, "DELETE", f"{LEASE_PATH}/{_item_id(lease)}")
        if leases:
            LOGGER.info("Removed DHCP lease %s on %s", mac_address, device.host)
        return {
            "action": "removed" if leases else "absent",
            "macAddress": mac_address,
            "count": len(leases),
        }

    async def block_client(self, device: DeviceRecord, mac_address: str) -> dict[str, Any]:
        existing = await self._find_one(
            device, SWITCH_RULE_PATH, {"src-mac-address": mac_address}
        )
        if existing is not None:
            return {"action": "unchanged", "id": _item_id(existing), "macAddress": mac_address}

        created = await self._request(
            device,
            "PUT",
            SWITCH_RULE_PATH,
            json={
                "src-mac-address": mac_address,
                "new-dst-ports": "",
                "comment": BLOCK_COMMENT,
            },
        )
        LOGGER.info("Blocked client %s on %s", mac_address, device.host)
        return {"action": "blocked", "id": _item_id(created), "macAddress": mac_address}

    async def unblock_client(self, device: DeviceRecord, mac_address: str) -> dict[str, Any]:
        rules = await self._find(device, SWITCH_RULE_PATH, {"src-mac-address": mac_address})
        for rule in rules:
            await self._request(device, "DELETE", f"{SWITCH_RULE_PATH}/{_item_id(rule)}")
        if rules:
            LOGGER.info("Unblocked client %s on %s", mac_address, device.host)
        return {
            "action": "unblocked" if rules else "unchanged",
            "macAddress": mac_address,
            "count": len(rules),
        }

    async def get_client_stats(
        self, device: DeviceRecord, mac_address: str
    ) -> Optional[dict[str, Any]]:
        lease = await self._find_one(device, LEASE_PATH, {"mac-address": mac_address})
        if lease is None:
            return None

        traffic = await self._request(
            device,
            "POST",
            MONITOR_TRAFFIC_PATH,
            json={"interface": self.config.stats_interface, "once": True},
        )
        if isinstance(traffic, list):
            traffic = traffic[0] if traffic else {}
        if not isinstance(traffic, Mapping):
            traffic = {}

        return {
            "macAddress": mac_address,
            "ipAddress": lease.get("address"),
            "rxBitsPerSecond": _as_int(traffic.get("rx-bits-per-second")),
            "txBitsPerSecond": _as_int(traffic.get("tx-bits-per-second")),
            "rxPacketsPerSecond": _as_int(traffic.get("rx-packets-per-second")),
            "txPacketsPerSecond": _as_int(traffic.get("tx-packets-per-second")),
            "uptime": parse_uptime(lease.get("last-seen")),
            "status": lease.get("status"),
        }

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    async def _find(
        self, device: DeviceRecord, path: str, query: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        items = await self._request(device, "GET", path, params=query)
        if not isinstance(items, list):
            raise DeviceControlError(
                f"Unexpected response from {device.host}{path}: {type(items).__name__}"
            )
        return [item for item in items if isinstance(item, dict)]

    async def _find_one(
        self, device: DeviceRecord, path: str, query: Mapping[str, str]
    ) -> Optional[dict[str, Any]]:
        items = await self._find(device, path, query)
        return items[0] if items else None

    async def _request(
        self,
        device: DeviceRecord,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        json: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        session = await self._ensure_session()
        url = f"{self._base_url(device)}{path}"
        auth = aiohttp.BasicAuth(device.username, device.password or "")

        try:
            async with asyncio.timeout(self.config.request_timeout_seconds):
                async with session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    auth=auth,
                    ssl=self.config.verify_tls,
                ) as response:
                    if response.status >= 400:
                        detail = await _error_detail(response)
                        raise DeviceControlError(
                            f"{method} {path} on {device.host} failed "
                            f"({response.status}): {detail}"
                        )
                    if response.status == 204:
                        return None
                    text = await response.text()
                    if not text:
                        return None
                    return await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise DeviceControlError(
                f"{method} {path} on {device.host} timed out after "
                f"{self.config.request_timeout_seconds:.1f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise DeviceControlError(
                f"{method} {path} on {device.host} failed: {exc}"
            ) from exc

    def _base_url(self, device: DeviceRecord) -> str:
        host = device.host
        if device.port:
            host = f"{host}:{device.port}"
        return f"{self.config.scheme}://{host}/rest"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


async def _error_detail(response: aiohttp.ClientResponse) -> str:
    try:
        body = await response.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        return (await response.text()).strip() or response.reason or "error"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)


def _item_id(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        value = item.get(".id")
        return str(value) if value is not None else None
    return None


def _lease_view(lease: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "macAddress": lease.get("mac-address"),
        "ipAddress": lease.get("address"),
        "poolName": lease.get("server"),
        "comment": lease.get("comment"),
    }


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
