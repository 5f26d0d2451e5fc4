"""Request and response models for the unified chat gateway.

The response models follow the OpenAI chat-completion wire format so that
every backend's output reaches the client in one canonical shape.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class StreamOptions(BaseModel):
    """Streaming options accepted on a chat completion request."""

    include_usage: bool = False


class ChatCompletionRequest(BaseModel):
    """Incoming OpenAI-style chat completion request."""

    messages: List[ChatMessage] = Field(..., description="Conversation messages")
    model: Optional[str] = Field(
        default=None, description="Model identifier used for prefix routing"
    )
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    stream: bool = True
    stream_options: Optional[StreamOptions] = None
    user: Optional[str] = None

    @property
    def requested_model(self) -> Optional[str]:
        """The model to route on; an empty string counts as no model."""
        return self.model or None

    @property
    def include_usage(self) -> bool:
        return bool(self.stream_options and self.stream_options.include_usage)


class UsageInfo(BaseModel):
    """Length-based usage approximation (no tokenizer is involved)."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_length(cls, length: int) -> "UsageInfo":
        return cls(prompt_tokens=0, completion_tokens=length, total_tokens=length)


class DeltaMessage(BaseModel):
    """Incremental message fragment carried by a streamed chunk."""

    role: Optional[Literal["assistant"]] = None
    content: Optional[str] = None


class ChunkChoice(BaseModel):
    index: int = 0
    delta: DeltaMessage = Field(default_factory=DeltaMessage)
    finish_reason: Optional[Literal["stop"]] = None
    logprobs: None = None


class ChatCompletionChunk(BaseModel):
    """Canonical streaming unit (``chat.completion.chunk``)."""

    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    system_fingerprint: str
    choices: List[ChunkChoice]
    usage: Optional[UsageInfo] = None

    @property
    def delta(self) -> DeltaMessage:
        return self.choices[0].delta

    @property
    def finish_reason(self) -> Optional[str]:
        return self.choices[0].finish_reason

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the wire shape.

        Absent delta fields are omitted (the final chunk's delta is ``{}``)
        while ``finish_reason`` and ``logprobs`` are always present.
        ``usage`` appears only when it was attached.
        """
        payload = self.model_dump(exclude={"choices", "usage"})
        payload["choices"] = [
            {
                "index": choice.index,
                "delta": choice.delta.model_dump(exclude_none=True),
                "finish_reason": choice.finish_reason,
                "logprobs": None,
            }
            for choice in self.choices
        ]
        if self.usage is not None:
            payload["usage"] = self.usage.model_dump()
        return payload


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class CompletionChoice(BaseModel):
    index: int = 0
    message: AssistantMessage
    finish_reason: Literal["stop"] = "stop"
    logprobs: None = None


class ChatCompletion(BaseModel):
    """Non-streaming response (``chat.completion``)."""

    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[CompletionChoice]
    usage: UsageInfo

    @property
    def content(self) -> str:
        return self.choices[0].message.content

    @property
    def finish_reason(self) -> str:
        return self.choices[0].finish_reason


class ModelCard(BaseModel):
    """A routable model entry in the /v1/models catalog."""

    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: List[ModelCard] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    """Structured error detail."""

    message: str
    type: str


class ErrorResponse(BaseModel):
    """Error response envelope."""

    error: ErrorDetail
