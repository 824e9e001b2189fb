from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

DependencyStatus = Literal["connected", "disconnected", "not_configured"]


class HealthReport(BaseModel):
    status: Literal["healthy", "unhealthy"]
    version: str
    uptime: str
    dependencies: dict[str, DependencyStatus]


__all__ = ["DependencyStatus", "HealthReport"]
