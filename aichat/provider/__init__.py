from .gemini import GeminiGenerationClient
from .generation import (
    GenerateOptions,
    GenerateResult,
    GenerationCancelledError,
    GenerationClient,
    GenerationError,
    GenerationTransportError,
    GenerationUpstreamError,
    TokenUsage,
)

__all__ = [
    "GeminiGenerationClient",
    "GenerateOptions",
    "GenerateResult",
    "GenerationCancelledError",
    "GenerationClient",
    "GenerationError",
    "GenerationTransportError",
    "GenerationUpstreamError",
    "TokenUsage",
]
