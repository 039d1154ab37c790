"""Vertex AI provider: Gemini ``generateContent`` and text-embedding ``predict``.

The configured URL is a template; ``{{MODEL}}`` is replaced by the model id
and the method suffix is appended. Requests carry a service-account bearer
token from ``TokenManager``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx

from switchboard._http import (
    DEFAULT_TIMEOUT_S,
    decode_json,
    iter_sse_data,
    wrap_transport_error,
)
from switchboard.auth import TokenManager
from switchboard.errors import UpstreamDecodeError
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
    as_list,
    flatten_content,
)
from switchboard.providers._mapping import (
    audio_mime,
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

    from switchboard.auth import ServiceAccount
    from switchboard.models import EmbeddingsRequest, InstructRequest
    from switchboard.streaming import StreamItem

MODEL_PLACEHOLDER = "{{MODEL}}"
GENERATE_SUFFIX = ":generateContent"
STREAM_SUFFIX = ":streamGenerateContent?alt=sse"
PREDICT_SUFFIX = ":predict"

_ROLES_OUT = {"assistant": "model", "tool": "user"}
_USAGE_IN = {"promptTokenCount": "prompt_tokens"}
_USAGE_OUT = {"candidatesTokenCount": "candidates_tokens", "totalTokenCount": "total_tokens"}


class VertexAIProvider(HTTPProvider):
    """Vertex AI publisher models authenticated with a service account."""

    name = "vertexai"

    def __init__(
        self,
        api_url: str,
        service_account: ServiceAccount,
        *,
        token_manager: TokenManager | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, http_client=http_client)
        self.api_url = api_url
        self.tokens = token_manager or TokenManager(service_account, timeout_s=timeout_s)

    def endpoint(self, model: str, suffix: str) -> str:
        return self.api_url.replace(MODEL_PLACEHOLDER, model) + suffix

    async def _headers(self) -> dict[str, str]:
        token = await self.tokens.get_token()
        return {"Authorization": f"Bearer {token}"}

    async def instruct(self, request: InstructRequest) -> InstructResponse:
        data = await self._post_json(
            self.endpoint(request.model, GENERATE_SUFFIX),
            to_generate_payload(request),
            headers=await self._headers(),
        )
        return from_generate_response(data)

    async def instruct_stream(self, request: InstructRequest) -> ChunkStream:
        response = await self._open_stream(
            self.endpoint(request.model, STREAM_SUFFIX),
            to_generate_payload(request),
            headers=await self._headers(),
        )
        return ChunkStream(_stream_items(response), on_close=response.aclose)

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse:
        payload = {
            "instances": [{"content": text} for text in as_list(request.input)],
            "parameters": {"autoTruncate": True},
        }
        data = await self._post_json(
            self.endpoint(request.model, PREDICT_SUFFIX),
            payload,
            headers=await self._headers(),
        )
        predictions = data.get("predictions")
        if not isinstance(predictions, list):
            raise UpstreamDecodeError("vertexai predict response has no 'predictions' list")

        vectors: list[list[float]] = []
        tokens = 0
        for prediction in predictions:
            embeddings = prediction.get("embeddings") or {}
            vectors.append(embeddings.get("values") or [])
            count = (embeddings.get("statistics") or {}).get("token_count")
            if isinstance(count, (int, float)):
                tokens += int(count)
        return EmbeddingsResponse(
            output=vectors,
            usage=Usage(input={"token_count": tokens}) if tokens else None,
        )


# =============================================================================
# Request mapping
# =============================================================================


def to_generate_payload(request: InstructRequest) -> dict[str, Any]:
    system, messages = split_system(request_messages(request))
    payload: dict[str, Any] = {"contents": [_to_content(m) for m in messages]}
    if system:
        payload["systemInstruction"] = {"parts": [{"text": system}]}

    gen = request.generation_config
    if gen is not None:
        config = {
            key: value
            for key, value in (
                ("temperature", gen.temperature),
                ("maxOutputTokens", gen.max_tokens),
                ("topP", gen.top_p),
                ("topK", gen.top_k),
            )
            if value is not None
        }
        if gen.thinking_tokens is not None:
            config["thinkingConfig"] = {"thinkingBudget": gen.thinking_tokens}
        if config:
            payload["generationConfig"] = config

    if request.tools:
        payload["tools"] = [
            {
                "functionDeclarations": [
                    {
                        "name": tool.name,
                        "description": tool.description or "",
                        "parameters": tool_schema(tool.parameters),
                    }
                    for tool in request.tools
                ]
            }
        ]
    if request.tool_config is not None:
        mode = tool_mode(request.tool_config) or "auto"
        payload["toolConfig"] = {"functionCallingConfig": {"mode": mode.upper()}}
    return payload


def _to_content(message: Message) -> dict[str, Any]:
    if message.tool_call_id and not message.tool_calls:
        return {
            "role": "user",
            "parts": [
                {
                    "functionResponse": {
                        "name": message.tool_call_id,
                        "response": _tool_response(message.text),
                    }
                }
            ],
        }

    parts: list[dict[str, Any]] = []
    for leaf in flatten_content(message.content):
        if isinstance(leaf, TextContent):
            parts.append({"text": leaf.text})
        elif isinstance(leaf, ImageContent):
            parts.append(_inline(image_mime(leaf.format), leaf.data))
        elif isinstance(leaf, AudioContent):
            parts.append(_inline(audio_mime(leaf.format), leaf.data))
        elif isinstance(leaf, FileContent):
            parts.append(_inline(file_mime(leaf.name), leaf.data))
    for call in message.tool_calls or []:
        parts.append(
            {
                "functionCall": {
                    "name": call.function.name,
                    "args": parse_arguments(call.function.arguments),
                }
            }
        )
    return {"role": _ROLES_OUT.get(message.role, message.role), "parts": parts}


def _inline(mime: str, data: bytes) -> dict[str, Any]:
    return {"inlineData": {"mimeType": mime, "data": b64encode(data)}}


def _tool_response(text: str) -> dict[str, Any]:
    """functionResponse.response must be an object; wrap anything else."""
    try:
        value = json.loads(text)
    except ValueError:
        return {"content": text}
    return value if isinstance(value, dict) else {"content": value}


# =============================================================================
# Response mapping
# =============================================================================


def _usage(raw: dict[str, Any] | None) -> Usage | None:
    usage_in = int_counts(raw, _USAGE_IN)
    usage_out = int_counts(raw, _USAGE_OUT)
    if usage_in is None and usage_out is None:
        return None
    return Usage(input=usage_in, output=usage_out)


def _function_call(part: dict[str, Any]) -> ToolCall:
    call = part["functionCall"]
    name = call.get("name", "")
    # Gemini has no call ids; the function name is what functionResponse echoes.
    return ToolCall(
        id=call.get("id") or name,
        function=FunctionCall(name=name, arguments=dump_arguments(call.get("args"))),
    )


def from_generate_response(data: dict[str, Any]) -> InstructResponse:
    candidates = data.get("candidates")
    if not isinstance(candidates, list):
        raise UpstreamDecodeError("vertexai response has no 'candidates' list")

    messages = []
    for candidate in candidates:
        content = candidate.get("content") or {}
        text: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in content.get("parts") or []:
            if part.get("thought"):
                continue
            if "text" in part:
                text.append(part["text"])
            elif "functionCall" in part:
                tool_calls.append(_function_call(part))
        joined = "".join(text)
        role = content.get("role") or "model"
        messages.append(
            Message(
                role="assistant" if role == "model" else role,
                content=TextContent(text=joined) if joined else None,
                tool_calls=tool_calls or None,
            )
        )
    return InstructResponse(
        output=messages[0] if len(messages) == 1 else messages,
        external_id=data.get("responseId"),
        usage=_usage(data.get("usageMetadata")),
    )


class _StreamState:
    def __init__(self) -> None:
        self.next_index = 0

    def map_frame(self, frame: dict[str, Any]) -> list[StreamResponse]:
        external_id = frame.get("responseId")
        items: list[StreamResponse] = []
        candidates = frame.get("candidates") or []
        finished = not candidates
        for candidate in candidates[:1]:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("thought"):
                    continue
                if part.get("text"):
                    items.append(
                        StreamResponse(chunk=TextChunk(text=part["text"]), external_id=external_id)
                    )
                elif "functionCall" in part:
                    call = _function_call(part)
                    items.append(
                        StreamResponse(
                            chunk=ToolCallChunk(
                                index=self.next_index,
                                id=call.id,
                                name=call.function.name,
                                arguments=call.function.arguments,
                            ),
                            external_id=external_id,
                        )
                    )
                    self.next_index += 1
            if candidate.get("finishReason"):
                finished = True
        # usageMetadata is cumulative on every frame; report it once at the end.
        if finished:
            usage = _usage(frame.get("usageMetadata"))
            if usage is not None:
                items.append(StreamResponse(chunk=UsageChunk(usage=usage), external_id=external_id))
        return items


async def _stream_items(response: httpx.Response) -> AsyncIterator[StreamItem]:
    state = _StreamState()
    try:
        async for data in iter_sse_data(response):
            try:
                frame = decode_json(data, provider="vertexai")
            except UpstreamDecodeError as exc:
                yield exc
                continue
            if not isinstance(frame, dict):
                continue
            for item in state.map_frame(frame):
                yield item
    except httpx.HTTPError as exc:
        yield wrap_transport_error(exc, provider="vertexai")
