"""HTTP client resolving devices and accounts from the billing API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

import aiohttp

from ..config import DirectoryConfig
from ..core.protocols import AccountRecord, DeviceRecord, DirectoryError

LOGGER = logging.getLogger(__name__)


class BillingDirectoryClient:
    """Looks up devices and accounts owned by the billing store.

    Endpoints::

        GET {base_url}/api/devices/{id}   -> {"id", "ipAddress", "username", "password", "port"}
        GET {base_url}/api/accounts/{id}  -> {"id", "accountNumber", "client": {"firstName", "lastName"}}

    A 404 means the record does not exist and yields ``None``. Any other
    failure raises :class:`DirectoryError`.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 5.0,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self._base_url = config.base_url.rstrip("/")
        self._headers: dict[str, str] = {"Accept": "application/json"}
        if config.api_key:
            self._headers["X-Api-Key"] = config.api_key

        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        data = await self._get(f"/api/devices/{quote(device_id, safe='')}")
        if data is None:
            return None
        try:
            host = data.get("ipAddress") or data["host"]
            port = data.get("port")
            return DeviceRecord(
                id=str(data.get("id", device_id)),
                host=str(host),
                username=str(data.get("username") or ""),
                password=str(data.get("password") or ""),
                port=int(port) if port else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DirectoryError(f"Malformed device record {device_id}: {exc}") from exc

    async def get_account(self, account_id: str) -> Optional[AccountRecord]:
        data = await self._get(f"/api/accounts/{quote(account_id, safe='')}")
        if data is None:
            return None
        try:
            return AccountRecord(
                id=str(data.get("id", account_id)),
                account_number=str(data["accountNumber"]),
                client_name=_client_name(data.get("client")),
            )
        except (KeyError, TypeError) as exc:
            raise DirectoryError(f"Malformed account record {account_id}: {exc}") from exc

    async def _get(self, path: str) -> Optional[Mapping[str, Any]]:
        session = await self._ensure_session()
        url = f"{self._base_url}{path}"

        try:
            async with asyncio.timeout(self.timeout):
                async with session.get(url, headers=self._headers) as response:
                    if response.status == 404:
                        LOGGER.debug("Directory has no record at %s", path)
                        return None
                    if response.status >= 400:
                        body = await response.text()
                        raise DirectoryError(
                            f"Directory request {path} failed ({response.status}): {body}"
                        )
                    data = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise DirectoryError(
                f"Directory request {path} timed out after {self.timeout:.1f}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise DirectoryError(f"Directory request {path} failed: {exc}") from exc
        except ValueError as exc:
            raise DirectoryError(f"Directory returned invalid JSON for {path}") from exc

        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        if not isinstance(data, dict):
            raise DirectoryError(f"Directory returned unexpected payload for {path}")
        return data

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


def _client_name(client: Any) -> str:
    if not isinstance(client, Mapping):
        return ""
    parts = [str(client.get(key) or "").strip() for key in ("firstName", "lastName")]
    return " ".join(part for part in parts if part)
