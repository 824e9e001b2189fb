"""
Generation client contract.

A generation client turns one prompt into one reply. Implementations must
observe the cancellation token they are given and surface exactly three kinds
of failure: cancellation, transport failure and upstream failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from aichat.services.cancellation import CancellationToken


class GenerationError(Exception):
    """Base class for generation failures."""


class GenerationCancelledError(GenerationError):
    """The cancellation token fired before the upstream call returned."""


class GenerationTransportError(GenerationError):
    """The upstream could not be reached (DNS, connect, timeout, ...)."""


class GenerationUpstreamError(GenerationError):
    """The upstream answered with an error or an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(slots=True)
class GenerateOptions:
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    model: str | None = None
    system_prompt: str | None = None

    def merged_with(self, fallback: GenerateOptions) -> GenerateOptions:
        """Fill every unset field from ``fallback``."""
        return GenerateOptions(
            temperature=self.temperature if self.temperature is not None else fallback.temperature,
            max_tokens=self.max_tokens if self.max_tokens is not None else fallback.max_tokens,
            top_p=self.top_p if self.top_p is not None else fallback.top_p,
            top_k=self.top_k if self.top_k is not None else fallback.top_k,
            model=self.model or fallback.model,
            system_prompt=self.system_prompt or fallback.system_prompt,
        )


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(slots=True)
class GenerateResult:
    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)


class GenerationClient(Protocol):
    async def generate(
        self,
        prompt: str,
        options: GenerateOptions | None = None,
        *,
        cancellation: CancellationToken,
    ) -> GenerateResult: ...

    async def aclose(self) -> None: ...


__all__ = [
    "GenerateOptions",
    "GenerateResult",
    "GenerationCancelledError",
    "GenerationClient",
    "GenerationError",
    "GenerationTransportError",
    "GenerationUpstreamError",
    "TokenUsage",
]
