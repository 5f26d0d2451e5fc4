"""Backend adapters for OpenAI-wire-compatible streaming LLM services.

Every backend exposes the same capability: given the conversation and an
optional model, open an upstream stream and yield plain text increments.
Each service's native chunk schema is parsed into its own typed variant and
mapped to text by ``chunk_text``; nothing downstream ever sees a
backend-specific chunk.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Sequence, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from gateway.config import BackendConfig, ConfigurationError, GatewayConfig
from gateway.models import ChatMessage

_logger = logging.getLogger("gateway")


class BackendError(Exception):
    """Raised when a backend cannot be reached or its stream fails."""

    def __init__(
        self, backend: str, message: str, status_code: Optional[int] = None
    ) -> None:
        self.backend = backend
        self.message = message
        self.status_code = status_code
        super().__init__("Backend '{}': {}".format(backend, message))


class Backend(ABC):
    """A text-generation service reduced to a single streaming operation."""

    name: str = ""

    @abstractmethod
    async def chat(
        self, messages: Sequence[ChatMessage], model: Optional[str] = None
    ) -> AsyncIterator[str]:
        """Open a completion stream and return its text increments.

        Awaiting this opens the upstream connection, so failures to reach the
        backend surface before any increment is produced. The returned
        iterator is single-pass and may raise ``BackendError`` at any point.
        """


# --- Native chunk variants -------------------------------------------------


class _ChunkModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Delta(_ChunkModel):
    role: Optional[str] = None
    content: Optional[str] = None


class _Choice(_ChunkModel):
    index: int = 0
    delta: _Delta = Field(default_factory=_Delta)
    finish_reason: Optional[str] = None


class _StreamError(_ChunkModel):
    message: str = "unknown error"
    code: Optional[Union[int, str]] = None


class GroqChunk(_ChunkModel):
    kind: Literal["groq"] = "groq"
    choices: List[_Choice] = Field(default_factory=list)
    error: Optional[_StreamError] = None
    x_groq: Optional[Dict[str, Any]] = None


class CerebrasChunk(_ChunkModel):
    kind: Literal["cerebras"] = "cerebras"
    choices: List[_Choice] = Field(default_factory=list)


class OpenRouterChunk(_ChunkModel):
    kind: Literal["openrouter"] = "openrouter"
    choices: List[_Choice] = Field(default_factory=list)
    error: Optional[_StreamError] = None


BackendChunk = Union[GroqChunk, CerebrasChunk, OpenRouterChunk]

CHUNK_TYPES = {
    "groq": GroqChunk,
    "cerebras": CerebrasChunk,
    "openrouter": OpenRouterChunk,
}


def parse_chunk(kind: str, payload: Dict[str, Any]) -> BackendChunk:
    """Parse one decoded SSE payload into the chunk variant for ``kind``.

    Raises:
        ConfigurationError: If ``kind`` is not a known backend kind.
        pydantic.ValidationError: If the payload does not fit the variant.
    """
    chunk_type = CHUNK_TYPES.get(kind)
    if chunk_type is None:
        raise ConfigurationError("Unknown backend kind '{}'".format(kind))
    return chunk_type.model_validate({**payload, "kind": kind})


def _first_delta_text(choices: List[_Choice]) -> str:
    if not choices:
        return ""
    return choices[0].delta.content or ""


def chunk_text(chunk: BackendChunk) -> str:
    """Map a native chunk to its text increment.

    Chunks without text (role-only, tool-call-only, usage-only) map to the
    empty string. Error chunks raise ``BackendError``.
    """
    if isinstance(chunk, (GroqChunk, OpenRouterChunk)):
        if chunk.error is not None:
            raise BackendError(chunk.kind, "Stream error: {}".format(chunk.error.message))
        return _first_delta_text(chunk.choices)
    if isinstance(chunk, CerebrasChunk):
        return _first_delta_text(chunk.choices)
    raise TypeError("Unhandled backend chunk type: {}".format(type(chunk).__name__))


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the ``data:`` payloads of an SSE body up to ``[DONE]``."""
    async for line in response.aiter_lines():
        if not line or line.startswith(":") or not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        if data:
            yield data


# --- Streaming adapter -----------------------------------------------------


class OpenAICompatibleBackend(Backend):
    """Streams chat completions from a ``/chat/completions`` SSE endpoint."""

    def __init__(
        self,
        config: BackendConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self.config = config
        self.name = config.name
        self._client = client
        self._timeout = timeout

    def _build_payload(
        self, messages: Sequence[ChatMessage], model: Optional[str]
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.config.params)
        payload.update(
            {
                "model": model or self.config.default_model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "stream": True,
            }
        )
        return payload

    async def chat(
        self, messages: Sequence[ChatMessage], model: Optional[str] = None
    ) -> AsyncIterator[str]:
        api_key = self.config.api_key
        if not api_key:
            raise BackendError(
                self.name, "API key not set ({})".format(self.config.api_key_env)
            )

        url = "{}/chat/completions".format(self.config.base_url.rstrip("/"))
        headers = {
            "Authorization": "Bearer {}".format(api_key),
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

        owned_client = None
        client = self._client
        if client is None:
            client = owned_client = httpx.AsyncClient(timeout=self._timeout)

        request = client.build_request(
            "POST", url, json=self._build_payload(messages, model), headers=headers
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            if owned_client is not None:
                await owned_client.aclose()
            raise BackendError(self.name, "Failed to reach backend: {}".format(exc)) from exc

        if response.is_error:
            await response.aread()
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()
            raise BackendError(
                self.name,
                "Backend returned HTTP {}".format(response.status_code),
                status_code=response.status_code,
            )

        return self._increments(response, owned_client)

    async def _increments(
        self, response: httpx.Response, owned_client: Optional[httpx.AsyncClient]
    ) -> AsyncIterator[str]:
        try:
            async for data in _iter_sse_data(response):
                try:
                    payload = json.loads(data)
                except ValueError as exc:
                    raise BackendError(
                        self.name, "Malformed stream payload: {}".format(exc)
                    ) from exc
                if not isinstance(payload, dict):
                    raise BackendError(self.name, "Stream payload is not an object")
                try:
                    chunk = parse_chunk(self.config.kind, payload)
                except ValidationError as exc:
                    raise BackendError(
                        self.name, "Unexpected chunk shape: {}".format(exc)
                    ) from exc
                yield chunk_text(chunk)
        except httpx.HTTPError as exc:
            raise BackendError(self.name, "Stream interrupted: {}".format(exc)) from exc
        finally:
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()


def build_backends(config: GatewayConfig) -> List[Backend]:
    """Instantiate the configured backends in round-robin order.

    Backends whose API key is missing from the environment are not offered.
    """
    backends: List[Backend] = []
    for backend_config in config.backends.values():
        if backend_config.kind not in CHUNK_TYPES:
            raise ConfigurationError(
                "Backend '{}' has unknown kind '{}'".format(
                    backend_config.name, backend_config.kind
                )
            )
        if not backend_config.api_key:
            _logger.warning(
                "Backend %s not offered: %s is not set",
                backend_config.name,
                backend_config.api_key_env,
            )
            continue
        backends.append(
            OpenAICompatibleBackend(backend_config, timeout=config.request_timeout)
        )
        _logger.info("Backend %s registered", backend_config.name)
    return backends
