"""Health reporting for the dispatch service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

StatsProvider = Callable[[], Mapping[str, int]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses and live counters for the running service."""

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._stats: Dict[str, StatsProvider] = {}
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    def register_stats(self, name: str, provider: StatsProvider) -> None:
        """Include ``provider()`` under ``stats[name]`` in every snapshot."""
        self._stats[name] = provider

    def unregister_stats(self, name: str) -> None:
        self._stats.pop(name, None)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._status.values())

        components = [status.as_dict() for status in entries]
        overall = "ok" if all(item["healthy"] for item in components) else "degraded"

        payload: Dict[str, object] = {"status": overall, "components": components}

        stats: Dict[str, object] = {}
        for name, provider in list(self._stats.items()):
            try:
                stats[name] = dict(provider())
            except Exception as exc:  # pragma: no cover - provider bugs only
                LOGGER.warning("Stats provider %s failed: %s", name, exc)
        if stats:
            payload["stats"] = stats

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
