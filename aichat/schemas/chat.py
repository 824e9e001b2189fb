from __future__ import annotations

from pydantic import ConfigDict, Field, field_validator

from .common import CamelModel
from .message import MessageOut


class ChatOptions(CamelModel):
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(extra="forbid")


class MessageSendRequest(CamelModel):
    message: str = Field(..., min_length=1, max_length=100000)
    options: ChatOptions | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


class ChatRequest(MessageSendRequest):
    session_id: str | None = Field(default=None, min_length=1, max_length=64)
    model: str | None = Field(default=None, min_length=1, max_length=128)


class AbortRequest(CamelModel):
    session_id: str = Field(..., min_length=1, max_length=64)

    model_config = ConfigDict(extra="forbid")


class UsageOut(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatResponse(CamelModel):
    session_id: str
    message_id: str
    message: str
    model: str
    usage: UsageOut


class MessageSendResponse(CamelModel):
    session_id: str
    user_message: MessageOut
    assistant_message: MessageOut
    model: str
    usage: UsageOut


__all__ = [
    "AbortRequest",
    "ChatOptions",
    "ChatRequest",
    "ChatResponse",
    "MessageSendRequest",
    "MessageSendResponse",
    "UsageOut",
]
