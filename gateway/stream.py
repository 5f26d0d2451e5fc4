"""Stream normalization into OpenAI ``chat.completion.chunk`` events.

A backend's text increments are turned one at a time into canonical chunks:
the first chunk carries the assistant role, every increment (including empty
ones) becomes exactly one chunk, and the stream closes with a ``stop`` chunk
followed by an explicit end-of-stream marker. Usage is a character-count
approximation attached to the final chunk on request.
"""

import json
import random
import string
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

from gateway.models import ChatCompletionChunk, ChunkChoice, DeltaMessage, UsageInfo

_ALPHABET = string.digits + string.ascii_lowercase


def _random_suffix(length: int) -> str:
    return "".join(random.choice(_ALPHABET) for _ in range(length))


def new_completion_id() -> str:
    """Return a fresh ``chatcmpl-`` identifier."""
    return "chatcmpl-" + _random_suffix(13)


def new_fingerprint() -> str:
    return "fp_" + _random_suffix(8)


class EndOfStream:
    """Marker emitted once after the final chunk of a response."""

    _instance: Optional["EndOfStream"] = None

    def __new__(cls) -> "EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()

StreamEvent = Union[ChatCompletionChunk, EndOfStream]


@dataclass(frozen=True)
class ResponseContext:
    """Identifiers shared by every chunk of one response."""

    id: str
    created: int
    model: str
    system_fingerprint: str
    include_usage: bool = False

    @classmethod
    def create(
        cls, model: Optional[str] = None, include_usage: bool = False
    ) -> "ResponseContext":
        return cls(
            id=new_completion_id(),
            created=int(time.time()),
            model=model or "unknown",
            system_fingerprint=new_fingerprint(),
            include_usage=include_usage,
        )

    def chunk(
        self,
        delta: DeltaMessage,
        finish_reason: Optional[str] = None,
        usage: Optional[UsageInfo] = None,
    ) -> ChatCompletionChunk:
        return ChatCompletionChunk(
            id=self.id,
            created=self.created,
            model=self.model,
            system_fingerprint=self.system_fingerprint,
            choices=[ChunkChoice(index=0, delta=delta, finish_reason=finish_reason)],
            usage=usage,
        )


async def normalize_stream(
    increments: AsyncIterator[str], context: ResponseContext
) -> AsyncIterator[StreamEvent]:
    """Convert raw text increments into canonical chunks.

    Args:
        increments: The backend's text increments, pulled one at a time.
        context: Response-level identifiers and the usage flag.

    Yields:
        One chunk per increment, the final ``stop`` chunk, then
        ``END_OF_STREAM``.

    Errors raised by ``increments`` propagate after the chunks already
    produced; no final chunk or end marker follows them. Closing this
    generator early closes ``increments`` as well.
    """
    length = 0
    first = True
    try:
        async for text in increments:
            length += len(text)
            if first:
                delta = DeltaMessage(role="assistant", content=text)
                first = False
            else:
                delta = DeltaMessage(content=text)
            yield context.chunk(delta)
    finally:
        aclose = getattr(increments, "aclose", None)
        if aclose is not None:
            await aclose()

    usage = UsageInfo.from_length(length) if context.include_usage else None
    yield context.chunk(DeltaMessage(), finish_reason="stop", usage=usage)
    yield END_OF_STREAM


def encode_event(event: StreamEvent) -> str:
    """Frame one stream event as a server-sent event."""
    if isinstance(event, EndOfStream):
        return "data: [DONE]\n\n"
    return "data: {}\n\n".format(json.dumps(event.to_payload()))


async def sse_stream(
    increments: AsyncIterator[str], context: ResponseContext
) -> AsyncIterator[str]:
    """Normalize ``increments`` and frame each event for ``text/event-stream``."""
    events = normalize_stream(increments, context)
    try:
        async for event in events:
            yield encode_event(event)
    finally:
        await events.aclose()
