"""Completion aggregation for non-streaming callers."""

from typing import AsyncIterator, List

from gateway.models import AssistantMessage, ChatCompletion, CompletionChoice, UsageInfo
from gateway.stream import ResponseContext


async def aggregate_completion(
    increments: AsyncIterator[str], context: ResponseContext
) -> ChatCompletion:
    """Drain every increment and build a single ``chat.completion`` object.

    The whole backend stream is consumed; there is no way to stop a backend
    early. Errors from ``increments`` propagate unchanged.
    """
    parts: List[str] = []
    async for text in increments:
        parts.append(text)
    content = "".join(parts)

    return ChatCompletion(
        id=context.id,
        created=context.created,
        model=context.model,
        choices=[CompletionChoice(message=AssistantMessage(content=content))],
        usage=UsageInfo.from_length(len(content)),
    )
