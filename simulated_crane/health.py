"""Health reporting for the simulated crane."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

MetricsProvider = Callable[[], Dict[str, Any]]


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
    """Tracks the device state plus per-component health (hub, telemetry, commands)."""

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._device_state: Optional[ComponentStatus] = None
        self._metrics: Dict[str, MetricsProvider] = {}
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_device_state(self, state: str, *, healthy: bool) -> None:
        async with self._lock:
            self._device_state = ComponentStatus(
                name="device", healthy=healthy, detail=state
            )

    def register_metrics(self, name: str, provider: MetricsProvider) -> None:
        """Attach a callable whose mapping is embedded in every snapshot."""
        self._metrics[name] = provider

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._components.values()]
            device_state = self._device_state

        healthy = all(item["healthy"] for item in components)
        if device_state is not None and not device_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if device_state is not None:
            payload["deviceState"] = {
                "state": device_state.detail,
                "healthy": device_state.healthy,
                "updatedAt": device_state.updated_at.isoformat(timespec="seconds"),
            }
        for name, provider in self._metrics.items():
            try:
                payload[name] = provider()
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Health metrics provider %s failed", name)
        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz`."""

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
