"""Anthropic provider: Messages API over raw HTTP."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from switchboard._http import (
    DEFAULT_TIMEOUT_S,
    decode_json,
    iter_sse_data,
    wrap_transport_error,
)
from switchboard.errors import (
    UnsupportedOperationError,
    UpstreamDecodeError,
    UpstreamHTTPError,
)
from switchboard.models import (
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
    dump_arguments,
    file_mime,
    image_mime,
    int_counts,
    parse_arguments,
    request_messages,
    split_system,
    tool_mode,
    tool_schema,
)
from switchboard.providers.base import HTTPProvider
from switchboard.streaming import ChunkStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.models import EmbeddingsRequest, EmbeddingsResponse, InstructRequest
    from switchboard.streaming import StreamItem

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_URL = "https://api.anthropic.com/v1"
DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_USAGE_IN = {
    "input_tokens": "input_tokens",
    "cache_creation_input_tokens": "cache_creation_input_tokens",
    "cache_read_input_tokens": "cache_read_input_tokens",
}
_USAGE_OUT = {"output_tokens": "output_tokens"}


class AnthropicProvider(HTTPProvider):
    """Anthropic Messages API. Embeddings are not offered."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_ANTHROPIC_URL,
        *,
        version: str = DEFAULT_ANTHROPIC_VERSION,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, http_client=http_client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.version = version

    def __repr__(self) -> str:
        return f"AnthropicProvider(base_url={self.base_url!r}, api_key='[REDACTED]')"

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": self.version}

    async def instruct(self, request: InstructRequest) -> InstructResponse:
        data = await self._post_json(
            f"{self.base_url}/messages",
            to_messages_payload(request, stream=False),
            headers=self._headers(),
        )
        return from_messages_response(data)

    async def instruct_stream(self, request: InstructRequest) -> ChunkStream:
        response = await self._open_stream(
            f"{self.base_url}/messages",
            to_messages_payload(request, stream=True),
            headers=self._headers(),
        )
        return ChunkStream(_stream_items(response), on_close=response.aclose)

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse:
        raise UnsupportedOperationError(
            "Anthropic does not support embeddings",
            hint="Route embeddings to another provider, e.g. 'openai::text-embedding-3-small'.",
        )


# =============================================================================
# Request mapping
# =============================================================================


def to_messages_payload(request: InstructRequest, *, stream: bool) -> dict[str, Any]:
    system, messages = split_system(request_messages(request))
    gen = request.generation_config

    payload: dict[str, Any] = {
        "model": request.model,
        "max_tokens": (gen.max_tokens if gen and gen.max_tokens else DEFAULT_MAX_TOKENS),
        "messages": [_to_anthropic_message(m) for m in messages],
    }
    if system:
        payload["system"] = system
    if stream:
        payload["stream"] = True
    if gen is not None:
        for key, value in (
            ("temperature", gen.temperature),
            ("top_p", gen.top_p),
            ("top_k", gen.top_k),
        ):
            if value is not None:
                payload[key] = value
        if gen.thinking_tokens:
            payload["thinking"] = {"type": "enabled", "budget_tokens": gen.thinking_tokens}

    if request.tools:
        payload["tools"] = [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool_schema(tool.parameters),
            }
            for tool in request.tools
        ]
        mode = tool_mode(request.tool_config)
        if mode is not None:
            payload["tool_choice"] = {"type": mode}
    return payload


def _to_anthropic_message(message: Message) -> dict[str, Any]:
    if message.tool_call_id and not message.tool_calls:
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.text,
                }
            ],
        }

    blocks: list[dict[str, Any]] = []
    for leaf in flatten_content(message.content):
        if isinstance(leaf, TextContent):
            blocks.append({"type": "text", "text": leaf.text})
        elif isinstance(leaf, ImageContent):
            blocks.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": image_mime(leaf.format),
                        "data": b64encode(leaf.data),
                    },
                }
            )
        elif isinstance(leaf, FileContent):
            blocks.append(
                {
                    "type": "document",
                    "source": {
                        "type": "base64",
                        "media_type": file_mime(leaf.name),
                        "data": b64encode(leaf.data),
                    },
                }
            )
        else:
            logger.debug("Anthropic ignores %s content; dropping it", leaf.type)

    for call in message.tool_calls or []:
        blocks.append(
            {
                "type": "tool_use",
                "id": call.id,
                "name": call.function.name,
                "input": parse_arguments(call.function.arguments),
            }
        )
    return {"role": message.role, "content": blocks}


# =============================================================================
# Response mapping
# =============================================================================


def _usage(raw: dict[str, Any] | None) -> Usage | None:
    usage_in = int_counts(raw, _USAGE_IN)
    usage_out = int_counts(raw, _USAGE_OUT)
    if usage_in is None and usage_out is None:
        return None
    return Usage(input=usage_in, output=usage_out)


def from_messages_response(data: dict[str, Any]) -> InstructResponse:
    blocks = data.get("content")
    if not isinstance(blocks, list):
        raise UpstreamDecodeError("anthropic response has no 'content' list")

    texts: list[TextContent] = []
    tool_calls: list[ToolCall] = []
    for block in blocks:
        kind = block.get("type")
        if kind == "text":
            texts.append(TextContent(text=block.get("text", "")))
        elif kind == "tool_use":
            tool_calls.append(
                ToolCall(
                    id=block.get("id", ""),
                    function=FunctionCall(
                        name=block.get("name", ""),
                        arguments=dump_arguments(block.get("input")),
                    ),
                )
            )

    content: Any = None
    if len(texts) == 1:
        content = texts[0]
    elif texts:
        content = texts
    return InstructResponse(
        output=Message(
            role=data.get("role") or "assistant",
            content=content,
            tool_calls=tool_calls or None,
        ),
        external_id=data.get("id"),
        usage=_usage(data.get("usage")),
    )


class _StreamState:
    def __init__(self) -> None:
        self.external_id: str | None = None

    def map_event(self, event: dict[str, Any], raw: str) -> list[StreamItem]:
        kind = event.get("type")
        if kind == "message_start":
            message = event.get("message") or {}
            self.external_id = message.get("id") or self.external_id
            usage = _usage(message.get("usage"))
            # message_start reports a placeholder output count; keep input only.
            if usage is not None and usage.input:
                return [self._item(UsageChunk(usage=Usage(input=usage.input)))]
            return []
        if kind == "content_block_start":
            block = event.get("content_block") or {}
            index = event.get("index", 0)
            if block.get("type") == "tool_use":
                return [
                    self._item(
                        ToolCallChunk(index=index, id=block.get("id"), name=block.get("name"))
                    )
                ]
            if block.get("type") == "text" and block.get("text"):
                return [self._item(TextChunk(text=block["text"]))]
            return []
        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [self._item(TextChunk(text=delta["text"]))]
            if delta.get("type") == "input_json_delta" and delta.get("partial_json"):
                return [
                    self._item(
                        ToolCallChunk(
                            index=event.get("index", 0), arguments=delta["partial_json"]
                        )
                    )
                ]
            return []
        if kind == "message_delta":
            usage_out = int_counts(event.get("usage"), _USAGE_OUT)
            if usage_out:
                return [self._item(UsageChunk(usage=Usage(output=usage_out)))]
            return []
        if kind == "error":
            error = event.get("error") or {}
            return [
                UpstreamHTTPError(
                    f"anthropic stream error: {error.get('message', error)}",
                    body=raw,
                    provider="anthropic",
                )
            ]
        return []

    def _item(self, chunk: Any) -> StreamResponse:
        return StreamResponse(chunk=chunk, external_id=self.external_id)


async def _stream_items(response: httpx.Response) -> AsyncIterator[StreamItem]:
    state = _StreamState()
    try:
        async for data in iter_sse_data(response):
            try:
                event = decode_json(data, provider="anthropic")
            except UpstreamDecodeError as exc:
                yield exc
                continue
            if not isinstance(event, dict):
                continue
            for item in state.map_event(event, data):
                yield item
    except httpx.HTTPError as exc:
        yield wrap_transport_error(exc, provider="anthropic")
