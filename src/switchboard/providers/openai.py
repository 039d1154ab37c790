"""OpenAI provider: Chat Completions and Embeddings over raw HTTP."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from switchboard._http import (
    DEFAULT_TIMEOUT_S,
    decode_json,
    iter_sse_data,
    wrap_transport_error,
)
from switchboard.errors import UpstreamDecodeError, UpstreamHTTPError
from switchboard.models import (
    AudioContent,
    EmbeddingsResponse,
    FileContent,
    FunctionCall,
    ImageContent,
    InstructResponse,
    Message,
    StreamResponse,
    TextChunk,
    TextContent,
    ToolCall,
    ToolCallChunk,
    Usage,
    UsageChunk,
    flatten_content,
)
from switchboard.providers._mapping import (
    b64encode,
    data_uri,
    file_mime,
    image_mime,
    int_counts,
    request_messages,
    tool_mode,
    tool_schema,
)
from switchboard.providers.base import HTTPProvider
from switchboard.streaming import ChunkStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.models import EmbeddingsRequest, InstructRequest, ToolConfig
    from switchboard.streaming import StreamItem

DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DONE_SENTINEL = "[DONE]"

_USAGE_IN = {"prompt_tokens": "prompt_tokens"}
_USAGE_OUT = {"completion_tokens": "completion_tokens"}


class OpenAIProvider(HTTPProvider):
    """OpenAI-compatible Chat Completions API."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_OPENAI_URL,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, http_client=http_client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def __repr__(self) -> str:
        return f"OpenAIProvider(base_url={self.base_url!r}, api_key='[REDACTED]')"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def instruct(self, request: InstructRequest) -> InstructResponse:
        data = await self._post_json(
            f"{self.base_url}/chat/completions",
            to_chat_payload(request, stream=False),
            headers=self._headers(),
        )
        return from_chat_response(data)

    async def instruct_stream(self, request: InstructRequest) -> ChunkStream:
        response = await self._open_stream(
            f"{self.base_url}/chat/completions",
            to_chat_payload(request, stream=True),
            headers=self._headers(),
        )
        return ChunkStream(_stream_items(response), on_close=response.aclose)

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse:
        data = await self._post_json(
            f"{self.base_url}/embeddings",
            {"model": request.model, "input": request.input},
            headers=self._headers(),
        )
        rows = data.get("data")
        if not isinstance(rows, list):
            raise UpstreamDecodeError("openai embeddings response has no 'data' list")
        rows = sorted(rows, key=lambda row: row.get("index", 0))
        usage_in = int_counts(data.get("usage"), _USAGE_IN)
        return EmbeddingsResponse(
            output=[row.get("embedding") or [] for row in rows],
            usage=Usage(input=usage_in) if usage_in else None,
        )


# =============================================================================
# Request mapping
# =============================================================================


def to_chat_payload(request: InstructRequest, *, stream: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model,
        "messages": [_to_openai_message(m) for m in request_messages(request)],
        "stream": stream,
    }
    if stream:
        payload["stream_options"] = {"include_usage": True}

    gen = request.generation_config
    if gen is not None:
        for key, value in (
            ("temperature", gen.temperature),
            ("top_p", gen.top_p),
            ("max_tokens", gen.max_tokens),
            ("prompt_cache_key", gen.cache_key),
            ("reasoning_effort", gen.thinking_effort),
        ):
            if value is not None:
                payload[key] = value

    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool_schema(tool.parameters),
                },
            }
            for tool in request.tools
        ]
        choice = _tool_choice(request.tool_config)
        if choice is not None:
            payload["tool_choice"] = choice
    return payload


def _tool_choice(config: ToolConfig | None) -> str | None:
    mode = tool_mode(config)
    if mode == "any":
        return "required"
    return mode


def _to_openai_message(message: Message) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role}
    leaves = flatten_content(message.content)
    if len(leaves) == 1 and isinstance(leaves[0], TextContent):
        out["content"] = leaves[0].text
    elif leaves:
        out["content"] = [_to_openai_part(leaf) for leaf in leaves]

    if message.tool_calls:
        out["tool_calls"] = [
            {
                "id": call.id,
                "type": call.type,
                "function": {
                    "name": call.function.name,
                    "arguments": call.function.arguments or "{}",
                },
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        out["tool_call_id"] = message.tool_call_id
    return out


def _to_openai_part(leaf: Any) -> dict[str, Any]:
    if isinstance(leaf, TextContent):
        return {"type": "text", "text": leaf.text}
    if isinstance(leaf, ImageContent):
        return {
            "type": "image_url",
            "image_url": {"url": data_uri(image_mime(leaf.format), leaf.data)},
        }
    if isinstance(leaf, AudioContent):
        return {
            "type": "input_audio",
            "input_audio": {"data": b64encode(leaf.data), "format": leaf.format or "mp3"},
        }
    if isinstance(leaf, FileContent):
        return {
            "type": "file",
            "file": {
                "filename": leaf.name or "file",
                "file_data": data_uri(file_mime(leaf.name), leaf.data),
            },
        }
    raise TypeError(f"Unexpected content leaf: {leaf!r}")


# =============================================================================
# Response mapping
# =============================================================================


def _usage(raw: dict[str, Any] | None) -> Usage | None:
    usage_in = int_counts(raw, _USAGE_IN)
    usage_out = int_counts(raw, _USAGE_OUT)
    if usage_in is None and usage_out is None:
        return None
    return Usage(input=usage_in, output=usage_out)


def from_chat_response(data: dict[str, Any]) -> InstructResponse:
    choices = data.get("choices")
    if not isinstance(choices, list):
        raise UpstreamDecodeError("openai chat response has no 'choices' list")

    messages = []
    for choice in choices:
        message = choice.get("message") or {}
        text = message.get("content")
        tool_calls = [
            ToolCall(
                id=call.get("id", ""),
                type=call.get("type") or "function",
                function=FunctionCall(
                    name=(call.get("function") or {}).get("name", ""),
                    arguments=(call.get("function") or {}).get("arguments"),
                ),
            )
            for call in message.get("tool_calls") or []
        ]
        messages.append(
            Message(
                role=message.get("role") or "assistant",
                content=TextContent(text=text) if text else None,
                tool_calls=tool_calls or None,
            )
        )
    return InstructResponse(
        output=messages[0] if len(messages) == 1 else messages,
        external_id=data.get("id"),
        usage=_usage(data.get("usage")),
    )


def map_stream_frame(frame: dict[str, Any]) -> list[StreamResponse]:
    """Translate one decoded SSE frame into zero or more stream items."""
    external_id = frame.get("id") or None
    items: list[StreamResponse] = []
    for choice in frame.get("choices") or []:
        delta = choice.get("delta") or {}
        text = delta.get("content")
        if text:
            items.append(StreamResponse(chunk=TextChunk(text=text), external_id=external_id))
        for call in delta.get("tool_calls") or []:
            function = call.get("function") or {}
            items.append(
                StreamResponse(
                    chunk=ToolCallChunk(
                        index=call.get("index", 0),
                        id=call.get("id"),
                        name=function.get("name"),
                        arguments=function.get("arguments"),
                    ),
                    external_id=external_id,
                )
            )
    usage = _usage(frame.get("usage"))
    if usage is not None:
        items.append(StreamResponse(chunk=UsageChunk(usage=usage), external_id=external_id))
    return items


async def _stream_items(response: httpx.Response) -> AsyncIterator[StreamItem]:
    try:
        async for data in iter_sse_data(response):
            if data.strip() == DONE_SENTINEL:
                return
            try:
                frame = decode_json(data, provider="openai")
            except UpstreamDecodeError as exc:
                yield exc
                continue
            if not isinstance(frame, dict):
                continue
            if "error" in frame:
                yield UpstreamHTTPError(
                    f"openai stream error: {frame['error']}", body=data, provider="openai"
                )
                continue
            for item in map_stream_frame(frame):
                yield item
    except httpx.HTTPError as exc:
        yield wrap_transport_error(exc, provider="openai")
