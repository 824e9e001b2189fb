from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ConfigDict

from .common import CamelModel


class MessagePreview(CamelModel):
    id: str
    role: str
    content: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessageOut(CamelModel):
    id: str
    session_id: str
    role: str
    content: str
    sequence: int
    tokens: int = 0
    tool_calls: list[dict[str, Any]] | None = None
    error: str | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


__all__ = ["MessageOut", "MessagePreview"]
