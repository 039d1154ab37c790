"""Unified request/response contract shared by every provider adapter.

All models are frozen pydantic models. Binary payloads serialize to base64
in JSON so requests can be logged without special handling.
"""

from __future__ import annotations

from typing import Annotated, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

#: A single value or an ordered list of values.
OneOrMany = Union[T, list[T]]


def as_list(value: OneOrMany[T] | None) -> list[T]:
    """Normalize a ``OneOrMany`` value to a list (``None`` gives ``[]``)."""
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


class _Frozen(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )


# =============================================================================
# Content
# =============================================================================


class TextContent(_Frozen):
    type: Literal["text"] = "text"
    text: str


class AudioContent(_Frozen):
    type: Literal["audio"] = "audio"
    data: bytes
    #: Container format such as ``"mp3"`` or ``"wav"``.
    format: str | None = None


class ImageContent(_Frozen):
    type: Literal["image"] = "image"
    data: bytes
    #: Image format such as ``"png"`` or a full MIME type.
    format: str | None = None


class FileContent(_Frozen):
    type: Literal["file"] = "file"
    data: bytes
    name: str | None = None


class PartsContent(_Frozen):
    """Ordered group of content; may nest arbitrarily deep."""

    type: Literal["parts"] = "parts"
    parts: list[Content]


Content = Annotated[
    Union[TextContent, AudioContent, ImageContent, FileContent, PartsContent],
    Field(discriminator="type"),
]

LeafContent = Union[TextContent, AudioContent, ImageContent, FileContent]


def flatten_content(content: OneOrMany[Content] | None) -> list[LeafContent]:
    """Return the leaves of *content* in order, expanding nested parts."""
    leaves: list[LeafContent] = []
    for item in as_list(content):
        if isinstance(item, PartsContent):
            leaves.extend(flatten_content(item.parts))
        else:
            leaves.append(item)
    return leaves


# =============================================================================
# Messages and tools
# =============================================================================


class FunctionCall(_Frozen):
    name: str
    #: JSON-encoded argument object.
    arguments: str | None = None


class ToolCall(_Frozen):
    id: str
    type: str = "function"
    function: FunctionCall


class Message(_Frozen):
    """One conversation turn.

    ``role`` is free-form; ``system``, ``user``, ``assistant`` and ``tool``
    are the ones adapters understand. A message with ``tool_call_id`` and no
    ``tool_calls`` is a tool result.
    """

    role: str
    content: OneOrMany[Content] | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", content=TextContent(text=text))

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", content=TextContent(text=text))

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role="assistant", content=TextContent(text=text))

    @classmethod
    def tool(cls, tool_call_id: str, text: str) -> Message:
        return cls(
            role="tool", content=TextContent(text=text), tool_call_id=tool_call_id
        )

    @property
    def text(self) -> str:
        """Concatenated text of all (flattened) text content."""
        return "".join(
            leaf.text
            for leaf in flatten_content(self.content)
            if isinstance(leaf, TextContent)
        )


class ToolParameter(_Frozen):
    """JSON-Schema-like parameter description."""

    type: str | None = None
    description: str | None = None
    properties: dict[str, ToolParameter] | None = None
    items: ToolParameter | None = None
    required: list[str] | None = None


class Tool(_Frozen):
    name: str
    description: str | None = None
    parameters: ToolParameter | None = None


class ToolConfig(_Frozen):
    #: ``auto``, ``any``/``required`` or ``none``; case-insensitive.
    mode: str | None = None


class GenerationConfig(_Frozen):
    temperature: float | None = None
    top_k: int | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    thinking_tokens: int | None = None
    #: ``low``, ``medium`` or ``high``.
    thinking_effort: str | None = None
    cache_key: str | None = None


class Usage(_Frozen):
    """Open-ended token counters keyed by provider metric names."""

    input: dict[str, int] | None = None
    output: dict[str, int] | None = None

    def merge(self, other: Usage) -> Usage:
        """Return a new Usage with counters summed per key."""
        return Usage(
            input=_sum_counts(self.input, other.input),
            output=_sum_counts(self.output, other.output),
        )


def _sum_counts(
    left: dict[str, int] | None, right: dict[str, int] | None
) -> dict[str, int] | None:
    if left is None and right is None:
        return None
    merged = dict(left or {})
    for key, value in (right or {}).items():
        merged[key] = merged.get(key, 0) + value
    return merged


# =============================================================================
# Requests and responses
# =============================================================================


class InstructRequest(_Frozen):
    #: ``provider::model_id``; adapters receive the bare ``model_id``.
    model: str
    correlation_id: str | None = None
    tools: list[Tool] | None = None
    tool_config: ToolConfig | None = None
    generation_config: GenerationConfig | None = None
    input: OneOrMany[Message]


class InstructResponse(_Frozen):
    output: OneOrMany[Message]
    external_id: str | None = None
    usage: Usage | None = None

    @property
    def messages(self) -> list[Message]:
        return as_list(self.output)

    @property
    def text(self) -> str:
        """Text of the first output message, or ``""``."""
        messages = self.messages
        return messages[0].text if messages else ""


class TextChunk(_Frozen):
    type: Literal["text"] = "text"
    text: str


class ToolCallChunk(_Frozen):
    """Fragment of a tool call; fields are appended onto the call at ``index``."""

    type: Literal["tool_call"] = "tool_call"
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


class UsageChunk(_Frozen):
    type: Literal["usage"] = "usage"
    usage: Usage


StreamChunk = Annotated[
    Union[TextChunk, ToolCallChunk, UsageChunk],
    Field(discriminator="type"),
]


class StreamResponse(_Frozen):
    chunk: StreamChunk
    external_id: str | None = None


class EmbeddingsRequest(_Frozen):
    model: str
    correlation_id: str | None = None
    input: OneOrMany[str]


class EmbeddingsResponse(_Frozen):
    output: list[list[float]]
    external_id: str | None = None
    usage: Usage | None = None


RequestT = TypeVar("RequestT", InstructRequest, EmbeddingsRequest)


def with_model(request: RequestT, model: str) -> RequestT:
    """Return a copy of *request* addressed to *model*; the original is untouched."""
    return request.model_copy(update={"model": model})


PartsContent.model_rebuild()
ToolParameter.model_rebuild()
Message.model_rebuild()
InstructRequest.model_rebuild()
InstructResponse.model_rebuild()
