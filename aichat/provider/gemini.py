from __future__ import annotations

import json
from typing import Any

import httpx

from aichat.logging_config import logger
from aichat.services.cancellation import CancellationToken, OperationCancelled
from aichat.settings import Settings

from .generation import (
    GenerateOptions,
    GenerateResult,
    GenerationCancelledError,
    GenerationTransportError,
    GenerationUpstreamError,
    TokenUsage,
)


def _normalize_model(model: str) -> str:
    model = model.strip()
    if model.startswith("models/"):
        return model[len("models/"):]
    return model


def build_generate_content_payload(prompt: str, options: GenerateOptions) -> dict[str, Any]:
    """
    Build the body for ``models/{model}:generateContent``:

    {
        "contents": [{"role": "user", "parts": [{"text": "..."}]}],
        "systemInstruction": {"parts": [{"text": "..."}]},
        "generationConfig": {"temperature": 0.7, "maxOutputTokens": 2000, ...}
    }
    """
    payload: dict[str, Any] = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
    }
    if options.system_prompt:
        payload["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}

    config: dict[str, Any] = {}
    if options.temperature is not None:
        config["temperature"] = options.temperature
    if options.max_tokens is not None:
        config["maxOutputTokens"] = options.max_tokens
    if options.top_p is not None:
        config["topP"] = options.top_p
    if options.top_k is not None:
        config["topK"] = options.top_k
    if config:
        payload["generationConfig"] = config
    return payload


def _token_count(usage_meta: dict[str, Any], key: str) -> int | None:
    value = usage_meta.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise GenerationUpstreamError(f"Gemini usageMetadata.{key} is not a number: {value!r}")
    try:
        count = int(value)
    except (ValueError, OverflowError) as exc:
        raise GenerationUpstreamError(
            f"Gemini usageMetadata.{key} is not a number: {value!r}"
        ) from exc
    if count < 0:
        raise GenerationUpstreamError(f"Gemini usageMetadata.{key} is negative: {count}")
    return count


def parse_generate_content_response(data: dict[str, Any], *, model: str) -> GenerateResult:
    """
    解析 generateContent 响应；结构不符合预期时抛出 GenerationUpstreamError，
    不让 AttributeError / ValueError 之类的异常泄漏给调用方。
    """
    candidates = data.get("candidates") or []
    if not isinstance(candidates, list):
        raise GenerationUpstreamError("Gemini candidates is not a list")
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        raise GenerationUpstreamError(f"Gemini returned no candidates: {reason or 'no candidates'}")

    candidate = candidates[0]
    if not isinstance(candidate, dict):
        raise GenerationUpstreamError(f"Gemini candidate has unexpected type: {type(candidate).__name__}")
    content = candidate.get("content") or {}
    if not isinstance(content, dict):
        raise GenerationUpstreamError("Gemini candidate content is not an object")
    parts = content.get("parts") or []
    if not isinstance(parts, list):
        raise GenerationUpstreamError("Gemini candidate parts is not a list")
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))

    usage_meta = data.get("usageMetadata") or {}
    if not isinstance(usage_meta, dict):
        raise GenerationUpstreamError("Gemini usageMetadata is not an object")
    prompt_tokens = _token_count(usage_meta, "promptTokenCount") or 0
    completion_tokens = _token_count(usage_meta, "candidatesTokenCount") or 0
    total_tokens = _token_count(usage_meta, "totalTokenCount")
    if not total_tokens:
        total_tokens = prompt_tokens + completion_tokens

    return GenerateResult(
        text=text,
        model=str(data.get("modelVersion") or model),
        usage=TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        ),
    )


class GeminiGenerationClient:
    """
    Gemini ``generateContent`` over httpx.

    The HTTP call runs under ``CancellationToken.guard`` so an abort tears down
    the in-flight request instead of waiting for the reply.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        default_temperature: float | None = None,
        default_max_tokens: int | None = None,
        timeout: float = 120.0,
        cancel_grace: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Gemini API key is required")
        self._api_key = api_key
        self._model = _normalize_model(model)
        self._base_url = base_url.rstrip("/")
        self._defaults = GenerateOptions(
            temperature=default_temperature,
            max_tokens=default_max_tokens,
            model=self._model,
        )
        self._cancel_grace = cancel_grace
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @classmethod
    def from_settings(cls, settings: Settings) -> GeminiGenerationClient:
        return cls(
            api_key=settings.genkit_api_key or "",
            model=settings.genkit_model,
            base_url=settings.genkit_base_url,
            default_temperature=settings.genkit_default_temperature,
            default_max_tokens=settings.genkit_default_max_tokens,
            timeout=settings.genkit_timeout_seconds,
            cancel_grace=settings.genkit_cancel_grace_seconds,
        )

    @property
    def model(self) -> str:
        return self._model

    def _endpoint(self, model: str) -> str:
        return f"{self._base_url}/v1beta/models/{_normalize_model(model)}:generateContent"

    async def generate(
        self,
        prompt: str,
        options: GenerateOptions | None = None,
        *,
        cancellation: CancellationToken,
    ) -> GenerateResult:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be empty")

        effective = (options or GenerateOptions()).merged_with(self._defaults)
        model = effective.model or self._model
        url = self._endpoint(model)
        payload = build_generate_content_payload(prompt, effective)

        try:
            response = await cancellation.guard(
                self._client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": self._api_key},
                ),
                grace=self._cancel_grace,
            )
        except OperationCancelled as exc:
            logger.info("Gemini 请求已取消: model=%s reason=%s", model, exc.reason)
            raise GenerationCancelledError(str(exc)) from exc
        except httpx.TransportError as exc:
            logger.warning("Gemini 请求失败（网络）: model=%s error=%s", model, exc)
            raise GenerationTransportError(str(exc) or exc.__class__.__name__) from exc
        except httpx.RequestError as exc:
            # TooManyRedirects / DecodingError：连上了上游，但响应不可用
            logger.warning("Gemini 响应不可用: model=%s error=%r", model, exc)
            raise GenerationUpstreamError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code >= 400:
            text = response.text
            logger.warning(
                "Gemini 返回错误状态 %s: model=%s response=%s",
                response.status_code,
                model,
                text[:500],
            )
            raise GenerationUpstreamError(
                f"Gemini HTTP error {response.status_code}",
                status_code=response.status_code,
                body=text,
            )

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise GenerationUpstreamError(
                "Gemini returned a non-JSON body",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        if not isinstance(data, dict):
            raise GenerationUpstreamError("Gemini returned an unexpected payload")

        result = parse_generate_content_response(data, model=model)
        logger.debug(
            "Gemini 生成完成: model=%s prompt_tokens=%s completion_tokens=%s",
            result.model,
            result.usage.prompt_tokens,
            result.usage.completion_tokens,
        )
        return result

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "GeminiGenerationClient",
    "build_generate_content_payload",
    "parse_generate_content_response",
]
