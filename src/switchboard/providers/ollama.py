"""Ollama provider: local inference over ``/api/chat`` and ``/api/embed``."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from switchboard._http import (
    DEFAULT_TIMEOUT_S,
    decode_json,
    iter_ndjson,
    wrap_transport_error,
)
from switchboard.errors import UpstreamDecodeError, UpstreamHTTPError
from switchboard.models import (
    EmbeddingsResponse,
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
    as_list,
    flatten_content,
)
from switchboard.providers._mapping import (
    b64encode,
    dump_arguments,
    parse_arguments,
    request_messages,
    tool_schema,
)
from switchboard.providers.base import HTTPProvider
from switchboard.streaming import ChunkStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.models import EmbeddingsRequest, InstructRequest
    from switchboard.streaming import StreamItem

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class OllamaProvider(HTTPProvider):
    """Ollama chat and embeddings; streams newline-delimited JSON."""

    name = "ollama"

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, http_client=http_client)
        self.base_url = base_url.rstrip("/")

    async def instruct(self, request: InstructRequest) -> InstructResponse:
        payload = to_chat_payload(request, stream=False)
        data = await self._post_json(f"{self.base_url}/api/chat", payload)
        return from_chat_response(data)

    async def instruct_stream(self, request: InstructRequest) -> ChunkStream:
        payload = to_chat_payload(request, stream=True)
        response = await self._open_stream(f"{self.base_url}/api/chat", payload)
        return ChunkStream(_stream_items(response), on_close=response.aclose)

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse:
        payload = {"model": request.model, "input": as_list(request.input)}
        data = await self._post_json(f"{self.base_url}/api/embed", payload)
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise UpstreamDecodeError("ollama embed response has no 'embeddings' list")
        input_counts = {}
        if isinstance(data.get("prompt_eval_count"), int):
            input_counts["prompt_tokens"] = data["prompt_eval_count"]
        return EmbeddingsResponse(
            output=embeddings,
            usage=Usage(input=input_counts) if input_counts else None,
        )


# =============================================================================
# Request mapping
# =============================================================================


def to_chat_payload(request: InstructRequest, *, stream: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model,
        "messages": [_to_ollama_message(m) for m in request_messages(request)],
        "stream": stream,
    }
    gen = request.generation_config
    if gen is not None:
        options = {
            key: value
            for key, value in (
                ("temperature", gen.temperature),
                ("top_k", gen.top_k),
                ("top_p", gen.top_p),
                ("num_predict", gen.max_tokens),
            )
            if value is not None
        }
        if options:
            payload["options"] = options
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
    return payload


def _to_ollama_message(message: Message) -> dict[str, Any]:
    text: list[str] = []
    images: list[str] = []
    for leaf in flatten_content(message.content):
        if isinstance(leaf, TextContent):
            text.append(leaf.text)
        elif isinstance(leaf, ImageContent):
            images.append(b64encode(leaf.data))
        else:
            logger.debug("Ollama ignores %s content; dropping it", leaf.type)

    out: dict[str, Any] = {"role": message.role, "content": "".join(text)}
    if images:
        out["images"] = images
    if message.tool_calls:
        out["tool_calls"] = [
            {
                "function": {
                    "name": call.function.name,
                    "arguments": parse_arguments(call.function.arguments),
                }
            }
            for call in message.tool_calls
        ]
    return out


# =============================================================================
# Response mapping
# =============================================================================


def _usage(frame: dict[str, Any]) -> Usage | None:
    usage_in = {}
    usage_out = {}
    if isinstance(frame.get("prompt_eval_count"), int):
        usage_in["prompt_tokens"] = frame["prompt_eval_count"]
    if isinstance(frame.get("eval_count"), int):
        usage_out["completion_tokens"] = frame["eval_count"]
    if not usage_in and not usage_out:
        return None
    return Usage(input=usage_in or None, output=usage_out or None)


def _tool_calls(raw: Any) -> list[ToolCall]:
    calls = []
    for entry in raw or []:
        function = entry.get("function") or {}
        calls.append(
            ToolCall(
                id=entry.get("id") or "",
                function=FunctionCall(
                    name=function.get("name", ""),
                    arguments=dump_arguments(function.get("arguments")),
                ),
            )
        )
    return calls


def from_chat_response(data: dict[str, Any]) -> InstructResponse:
    if data.get("error"):
        raise UpstreamHTTPError(
            f"ollama error: {data['error']}", body=json.dumps(data), provider="ollama"
        )
    message = data.get("message")
    if not isinstance(message, dict):
        raise UpstreamDecodeError("ollama chat response has no 'message' object")
    text = message.get("content") or ""
    tool_calls = _tool_calls(message.get("tool_calls"))
    return InstructResponse(
        output=Message(
            role=message.get("role") or "assistant",
            content=TextContent(text=text) if text else None,
            tool_calls=tool_calls or None,
        ),
        usage=_usage(data),
    )


async def _stream_items(response: httpx.Response) -> AsyncIterator[StreamItem]:
    next_index = 0
    try:
        async for line in iter_ndjson(response):
            try:
                frame = decode_json(line, provider="ollama")
            except UpstreamDecodeError as exc:
                yield exc
                continue
            if not isinstance(frame, dict):
                continue
            if frame.get("error"):
                yield UpstreamHTTPError(
                    f"ollama error: {frame['error']}", body=line, provider="ollama"
                )
                continue

            message = frame.get("message") or {}
            text = message.get("content")
            if text:
                yield StreamResponse(chunk=TextChunk(text=text))
            for call in _tool_calls(message.get("tool_calls")):
                yield StreamResponse(
                    chunk=ToolCallChunk(
                        index=next_index,
                        id=call.id or None,
                        name=call.function.name,
                        arguments=call.function.arguments,
                    )
                )
                next_index += 1
            if frame.get("done"):
                usage = _usage(frame)
                if usage is not None:
                    yield StreamResponse(chunk=UsageChunk(usage=usage))
    except httpx.HTTPError as exc:
        yield wrap_transport_error(exc, provider="ollama")
