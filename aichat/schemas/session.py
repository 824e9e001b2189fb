from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import ConfigDict, Field, model_validator

from .common import CamelModel
from .message import MessagePreview


class SamplingDefaults(CamelModel):
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=0)
    max_tokens: int | None = Field(default=None, gt=0)


class SessionCreateRequest(SamplingDefaults):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    model_name: str | None = Field(
        default=None,
        min_length=1,
        max_length=128,
        description="为空时使用 GENKIT_MODEL",
    )
    system_prompt: str | None = Field(default=None, max_length=20000)
    meta: dict[str, Any] | None = None

    model_config = ConfigDict(extra="forbid")


class SessionUpdateRequest(SamplingDefaults):
    """
    Partial update: only the fields present in the body are written.
    Nullable fields (system prompt, sampling defaults) may be cleared with null.
    """

    title: str | None = Field(default=None, min_length=1, max_length=255)
    system_prompt: str | None = Field(default=None, max_length=20000)
    is_pinned: bool | None = None
    is_archived: bool | None = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _reject_null_for_required_fields(self) -> "SessionUpdateRequest":
        for name in ("title", "is_pinned", "is_archived"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class SessionOut(CamelModel):
    id: str
    user_id: str
    title: str
    model_name: str
    system_prompt: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    is_pinned: bool
    is_archived: bool
    message_count: int
    last_message_id: str | None = None
    last_message: MessagePreview | None = None
    meta: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


__all__ = [
    "SamplingDefaults",
    "SessionCreateRequest",
    "SessionOut",
    "SessionUpdateRequest",
]
