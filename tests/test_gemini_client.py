from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from aichat.provider.gemini import GeminiGenerationClient, build_generate_content_payload
from aichat.provider.generation import (
    GenerateOptions,
    GenerationCancelledError,
    GenerationTransportError,
    GenerationUpstreamError,
)
from aichat.services.cancellation import CancellationToken

_OK_BODY = {
    "candidates": [
        {"content": {"role": "model", "parts": [{"text": "你好，"}, {"text": "世界"}]}}
    ],
    "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 4, "totalTokenCount": 9},
    "modelVersion": "gemini-2.5-flash-001",
}


def _client(handler, **kwargs) -> GeminiGenerationClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiGenerationClient(
        api_key="test-key",
        model=kwargs.pop("model", "gemini-2.5-flash"),
        base_url="https://gemini.test",
        default_temperature=0.7,
        default_max_tokens=2000,
        cancel_grace=0.1,
        client=http_client,
        **kwargs,
    )


def test_payload_includes_system_prompt_and_generation_config():
    payload = build_generate_content_payload(
        "hi",
        GenerateOptions(temperature=0.2, max_tokens=64, top_p=0.9, top_k=20, system_prompt="be brief"),
    )
    assert payload["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]
    assert payload["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    assert payload["generationConfig"] == {
        "temperature": 0.2,
        "maxOutputTokens": 64,
        "topP": 0.9,
        "topK": 20,
    }


def test_payload_omits_unset_options():
    payload = build_generate_content_payload("hi", GenerateOptions())
    assert set(payload) == {"contents"}


@pytest.mark.asyncio
async def test_generate_posts_to_generate_content_and_parses_reply():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_OK_BODY)

    client = _client(handler)
    result = await client.generate(
        "你好", GenerateOptions(top_k=10), cancellation=CancellationToken()
    )

    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-2.5-flash:generateContent"
    assert seen["api_key"] == "test-key"
    assert seen["body"]["generationConfig"] == {
        "temperature": 0.7,
        "maxOutputTokens": 2000,
        "topK": 10,
    }
    assert result.text == "你好，世界"
    assert result.model == "gemini-2.5-flash-001"
    assert (result.usage.prompt_tokens, result.usage.completion_tokens, result.usage.total_tokens) == (
        5,
        4,
        9,
    )


@pytest.mark.asyncio
async def test_generate_uses_requested_model():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "ok"}]}}]})

    client = _client(handler, model="models/gemini-2.5-flash")
    result = await client.generate(
        "hi", GenerateOptions(model="gemini-2.5-pro"), cancellation=CancellationToken()
    )

    assert seen == ["/v1beta/models/gemini-2.5-pro:generateContent"]
    assert result.model == "gemini-2.5-pro"
    assert result.usage.total_tokens == 0


@pytest.mark.asyncio
async def test_http_error_is_upstream_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "quota exceeded"}})

    with pytest.raises(GenerationUpstreamError) as exc_info:
        await _client(handler).generate("hi", cancellation=CancellationToken())

    assert exc_info.value.status_code == 429
    assert "quota exceeded" in (exc_info.value.body or "")


@pytest.mark.asyncio
async def test_empty_candidates_is_upstream_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(GenerationUpstreamError, match="SAFETY"):
        await _client(handler).generate("hi", cancellation=CancellationToken())


@pytest.mark.asyncio
async def test_non_json_body_is_upstream_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>bad gateway</html>")

    with pytest.raises(GenerationUpstreamError):
        await _client(handler).generate("hi", cancellation=CancellationToken())


@pytest.mark.asyncio
async def test_network_error_is_transport_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GenerationTransportError):
        await _client(handler).generate("hi", cancellation=CancellationToken())


@pytest.mark.asyncio
async def test_cancellation_interrupts_in_flight_request():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, json=_OK_BODY)

    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel, "aborted")

    with pytest.raises(GenerationCancelledError):
        await asyncio.wait_for(
            _client(handler).generate("hi", cancellation=token), timeout=2
        )


@pytest.mark.asyncio
async def test_empty_prompt_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("must not be called")

    with pytest.raises(ValueError):
        await _client(handler).generate("  ", cancellation=CancellationToken())


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=_OK_BODY))
    )
    client = GeminiGenerationClient(api_key="k", model="gemini-2.5-flash", client=http_client)

    await client.aclose()

    assert not http_client.is_closed
    await http_client.aclose()


def test_missing_api_key_is_rejected():
    with pytest.raises(ValueError):
        GeminiGenerationClient(api_key="", model="gemini-2.5-flash")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"candidates": ["oops"]},
        {"candidates": {"content": {}}},
        {"candidates": [{"content": "text"}]},
        {"candidates": [{"content": {"parts": "text"}}]},
        {**_OK_BODY, "usageMetadata": {"promptTokenCount": "n/a"}},
        {**_OK_BODY, "usageMetadata": {"candidatesTokenCount": {"n": 1}}},
        {**_OK_BODY, "usageMetadata": [5, 4, 9]},
    ],
)
async def test_malformed_reply_is_upstream_failure(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(GenerationUpstreamError):
        await _client(handler).generate("hi", cancellation=CancellationToken())


@pytest.mark.asyncio
async def test_numeric_strings_in_usage_are_accepted():
    body = {**_OK_BODY, "usageMetadata": {"promptTokenCount": "5", "candidatesTokenCount": 4}}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    result = await _client(handler).generate("hi", cancellation=CancellationToken())

    assert result.usage.prompt_tokens == 5
    assert result.usage.total_tokens == 9


@pytest.mark.asyncio
async def test_redirect_loop_is_upstream_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": str(request.url)})

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), follow_redirects=True
    )
    client = GeminiGenerationClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        base_url="https://gemini.test",
        client=http_client,
    )

    with pytest.raises(GenerationUpstreamError):
        await client.generate("hi", cancellation=CancellationToken())
    await http_client.aclose()


@pytest.mark.asyncio
async def test_undecodable_body_is_upstream_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.DecodingError("invalid gzip stream", request=request)

    with pytest.raises(GenerationUpstreamError):
        await _client(handler).generate("hi", cancellation=CancellationToken())
