from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import anyio
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from aichat.logging_config import logger
from aichat.provider.generation import GenerationClient
from aichat.schemas.health import DependencyStatus, HealthReport

from .cancellation import CancellationToken

CONNECTED: DependencyStatus = "connected"
DISCONNECTED: DependencyStatus = "disconnected"
NOT_CONFIGURED: DependencyStatus = "not_configured"


def format_uptime(seconds: float) -> str:
    """``1h2m3s`` / ``2m3s`` / ``3s``."""
    total = max(int(seconds), 0)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h{minutes}m{secs}s"
    if minutes > 0:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class HealthService:
    def __init__(
        self,
        *,
        version: str,
        started_at: float,
        generation_client: GenerationClient | None,
        session_factory: sessionmaker[Session] | None,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._version = version
        self._started_at = started_at
        self._client = generation_client
        self._session_factory = session_factory
        self._timeout = timeout
        self._clock = clock

    async def check(self) -> HealthReport:
        dependencies: dict[str, DependencyStatus] = {
            "genkit": await self._check_genkit(),
            "database": await self._check_database(),
        }
        healthy = all(status != DISCONNECTED for status in dependencies.values())
        return HealthReport(
            status="healthy" if healthy else "unhealthy",
            version=self._version,
            uptime=format_uptime(self._clock() - self._started_at),
            dependencies=dependencies,
        )

    async def _probe(self, name: str, probe: Callable[[], Awaitable[object]]) -> DependencyStatus:
        try:
            with anyio.fail_after(self._timeout):
                await probe()
        except Exception as exc:
            logger.warning("健康检查失败: dependency=%s error=%r", name, exc)
            return DISCONNECTED
        return CONNECTED

    async def _check_genkit(self) -> DependencyStatus:
        client = self._client
        if client is None:
            return NOT_CONFIGURED
        return await self._probe(
            "genkit", lambda: client.generate("test", cancellation=CancellationToken())
        )

    async def _check_database(self) -> DependencyStatus:
        factory = self._session_factory
        if factory is None:
            return NOT_CONFIGURED

        def ping() -> None:
            with factory() as db:
                db.execute(text("SELECT 1"))

        return await self._probe(
            "database", lambda: anyio.to_thread.run_sync(ping, abandon_on_cancel=True)
        )


__all__ = ["HealthService", "format_uptime"]
