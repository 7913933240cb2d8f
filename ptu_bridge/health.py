"""Health state for the bridge and the optional ``/healthz`` endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ComponentStatus:
    """Last reported status of one component ("device", "mqtt", ...)."""

    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


@dataclass(slots=True)
class SupervisorStatus:
    state: str
    healthy: bool
    detail: str
    updated_at: datetime = field(default_factory=_now)

    def as_dict(self) -> Dict[str, object]:
        return {
            "state": self.state,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Collects component statuses and the supervisor state.

    The overall status is ``ok`` only while every component is healthy and
    the supervisor (if it has reported) holds an active session.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._supervisor: Optional[SupervisorStatus] = None
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            previous = self._components.get(name)
            self._components[name] = ComponentStatus(name, healthy, detail)
        if previous is not None and previous.healthy != healthy:
            LOGGER.debug(
                "Component %s is now %s", name, "healthy" if healthy else "unhealthy"
            )

    async def set_supervisor_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._supervisor = SupervisorStatus(
                state=state, healthy=healthy, detail=detail or state
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._components.values()]
            supervisor = self._supervisor

        healthy = all(item["healthy"] for item in components)
        if supervisor is not None:
            healthy = healthy and supervisor.healthy

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if supervisor is not None:
            payload["supervisor"] = supervisor.as_dict()
        return payload


class HealthServer:
    """Serves :meth:`HealthReporter.snapshot` as JSON on ``GET /healthz``.

    Responds 200 while the bridge is healthy and 503 otherwise, so it can be
    used directly as a container or systemd watchdog probe.
    """

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
