"""
Pydantic request/response models. JSON keys are camelCase on the wire.
"""

from .chat import (
    AbortRequest,
    ChatOptions,
    ChatRequest,
    ChatResponse,
    MessageSendRequest,
    MessageSendResponse,
    UsageOut,
)
from .common import ApiResponse, CamelModel, PageData, page_of, success
from .health import DependencyStatus, HealthReport
from .message import MessageOut, MessagePreview
from .session import SessionCreateRequest, SessionOut, SessionUpdateRequest

__all__ = [
    "AbortRequest",
    "ApiResponse",
    "CamelModel",
    "ChatOptions",
    "ChatRequest",
    "ChatResponse",
    "DependencyStatus",
    "HealthReport",
    "MessageOut",
    "MessagePreview",
    "MessageSendRequest",
    "MessageSendResponse",
    "PageData",
    "SessionCreateRequest",
    "SessionOut",
    "SessionUpdateRequest",
    "UsageOut",
    "page_of",
    "success",
]
