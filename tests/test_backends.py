"""Tests for the streaming backend adapters and chunk mapping."""

import json
from typing import Any, Dict, List

import httpx
import pytest

from gateway.backends import (
    BackendError,
    CerebrasChunk,
    GroqChunk,
    OpenAICompatibleBackend,
    OpenRouterChunk,
    build_backends,
    chunk_text,
    parse_chunk,
)
from gateway.config import ConfigurationError, GatewayConfig
from gateway.models import ChatMessage

MESSAGES = [
    ChatMessage(role="system", content="Be brief."),
    ChatMessage(role="user", content="Hi"),
]


def _delta_chunk(content: Any = None, role: Any = None) -> Dict[str, Any]:
    delta: Dict[str, Any] = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    return {
        "id": "chatcmpl-upstream",
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
    }


def _sse_body(*payloads: Any, done: bool = True) -> bytes:
    lines = [": keep-alive\n\n"]
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append("data: {}\n\n".format(data))
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def _backend(
    test_config: GatewayConfig, name: str, handler, captured: List = None
) -> OpenAICompatibleBackend:
    def _handle(request: httpx.Request) -> httpx.Response:
        if captured is not None:
            captured.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_handle))
    return OpenAICompatibleBackend(test_config.backends[name], client=client)


async def _drain(increments) -> List[str]:
    return [text async for text in increments]


@pytest.fixture(autouse=True)
def _api_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALPHA_API_KEY", "sk-alpha")
    monkeypatch.setenv("BETA_API_KEY", "sk-beta")
    monkeypatch.setenv("GAMMA_API_KEY", "sk-gamma")


@pytest.mark.asyncio
async def test_streams_text_increments(test_config: GatewayConfig) -> None:
    """Role-only and usage-only chunks become empty increments."""
    captured: List[httpx.Request] = []
    body = _sse_body(
        _delta_chunk(role="assistant", content=""),
        _delta_chunk(content="Hello"),
        _delta_chunk(content=" world"),
        {"id": "chatcmpl-upstream", "choices": [], "x_groq": {"usage": {}}},
    )
    backend = _backend(
        test_config, "alpha", lambda r: httpx.Response(200, content=body), captured
    )

    texts = await _drain(await backend.chat(MESSAGES))

    assert texts == ["", "Hello", " world", ""]
    request = captured[0]
    assert str(request.url) == "https://alpha.example.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-alpha"
    payload = json.loads(request.content)
    assert payload["model"] == "alpha-small"
    assert payload["stream"] is True
    assert payload["temperature"] == 0.6
    assert payload["max_completion_tokens"] == 4096
    assert payload["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hi"},
    ]


@pytest.mark.asyncio
async def test_requested_model_is_forwarded(test_config: GatewayConfig) -> None:
    captured: List[httpx.Request] = []
    backend = _backend(
        test_config,
        "beta",
        lambda r: httpx.Response(200, content=_sse_body(_delta_chunk(content="ok"))),
        captured,
    )

    await _drain(await backend.chat(MESSAGES, "beta-large"))

    payload = json.loads(captured[0].content)
    assert payload["model"] == "beta-large"
    assert payload["reasoning_effort"] == "medium"


@pytest.mark.asyncio
async def test_stream_without_done_marker_ends_cleanly(test_config: GatewayConfig) -> None:
    body = _sse_body(_delta_chunk(content="a"), _delta_chunk(content="b"), done=False)
    backend = _backend(test_config, "gamma", lambda r: httpx.Response(200, content=body))

    assert await _drain(await backend.chat(MESSAGES)) == ["a", "b"]


@pytest.mark.asyncio
async def test_http_error_raises_on_open(test_config: GatewayConfig) -> None:
    """Upstream HTTP errors surface before any increment is produced."""
    backend = _backend(
        test_config, "alpha", lambda r: httpx.Response(401, json={"error": "bad key"})
    )

    with pytest.raises(BackendError) as exc_info:
        await backend.chat(MESSAGES)

    assert exc_info.value.status_code == 401
    assert exc_info.value.backend == "alpha"


@pytest.mark.asyncio
async def test_transport_error_raises_on_open(test_config: GatewayConfig) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = _backend(test_config, "beta", _refuse)

    with pytest.raises(BackendError, match="Failed to reach backend"):
        await backend.chat(MESSAGES)


@pytest.mark.asyncio
async def test_error_chunk_raises_mid_stream(test_config: GatewayConfig) -> None:
    body = _sse_body(
        _delta_chunk(content="partial"),
        {"error": {"message": "Provider overloaded", "code": 502}},
    )
    backend = _backend(test_config, "gamma", lambda r: httpx.Response(200, content=body))
    received: List[str] = []

    with pytest.raises(BackendError, match="Provider overloaded"):
        async for text in await backend.chat(MESSAGES):
            received.append(text)

    assert received == ["partial"]


@pytest.mark.asyncio
async def test_malformed_payload_raises(test_config: GatewayConfig) -> None:
    body = _sse_body(_delta_chunk(content="ok"), "{not json")
    backend = _backend(test_config, "alpha", lambda r: httpx.Response(200, content=body))

    with pytest.raises(BackendError, match="Malformed stream payload"):
        await _drain(await backend.chat(MESSAGES))


@pytest.mark.asyncio
async def test_missing_api_key(
    test_config: GatewayConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("ALPHA_API_KEY")
    backend = OpenAICompatibleBackend(test_config.backends["alpha"])

    with pytest.raises(BackendError, match="ALPHA_API_KEY"):
        await backend.chat(MESSAGES)


def test_parse_chunk_picks_variant() -> None:
    assert isinstance(parse_chunk("groq", _delta_chunk(content="a")), GroqChunk)
    assert isinstance(parse_chunk("cerebras", _delta_chunk(content="a")), CerebrasChunk)
    assert isinstance(
        parse_chunk("openrouter", _delta_chunk(content="a")), OpenRouterChunk
    )


def test_parse_chunk_unknown_kind() -> None:
    with pytest.raises(ConfigurationError, match="Unknown backend kind"):
        parse_chunk("mistral", _delta_chunk(content="a"))


def test_chunk_text_without_text() -> None:
    """Reasoning-only and tool-call-only deltas carry no text."""
    reasoning = {"choices": [{"index": 0, "delta": {"reasoning": "thinking..."}}]}
    tool_call = {
        "choices": [
            {"index": 0, "delta": {"tool_calls": [{"index": 0, "id": "call_1"}]}}
        ]
    }

    assert chunk_text(parse_chunk("cerebras", reasoning)) == ""
    assert chunk_text(parse_chunk("groq", tool_call)) == ""
    assert chunk_text(parse_chunk("openrouter", {"choices": []})) == ""


def test_chunk_text_error_chunk() -> None:
    chunk = parse_chunk("groq", {"error": {"message": "rate limited"}})
    with pytest.raises(BackendError, match="rate limited"):
        chunk_text(chunk)


def test_build_backends_skips_missing_credentials(
    test_config: GatewayConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("BETA_API_KEY")

    backends = build_backends(test_config)

    assert [b.name for b in backends] == ["alpha", "gamma"]


def test_build_backends_rejects_unknown_kind(test_config: GatewayConfig) -> None:
    test_config.backends["alpha"].kind = "mistral"
    with pytest.raises(ConfigurationError, match="unknown kind"):
        build_backends(test_config)
