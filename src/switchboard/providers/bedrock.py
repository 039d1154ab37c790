"""AWS Bedrock provider: Converse API through boto3.

boto3 is synchronous, so every call (and every pull from a response event
stream) runs in a worker thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import PurePath
import re
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError, NoRegionError

from switchboard.errors import (
    ProviderConfigError,
    SwitchboardError,
    UnsupportedOperationError,
    UpstreamDecodeError,
    UpstreamHTTPError,
)
from switchboard.models import (
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
    dump_arguments,
    int_counts,
    parse_arguments,
    request_messages,
    tool_mode,
    tool_schema,
)
from switchboard.streaming import ChunkStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.models import EmbeddingsRequest, InstructRequest
    from switchboard.streaming import StreamItem

logger = logging.getLogger(__name__)

_IMAGE_FORMATS = {"png": "png", "jpeg": "jpeg", "jpg": "jpeg", "gif": "gif", "webp": "webp"}
_DOCUMENT_FORMATS = {"pdf", "csv", "doc", "docx", "xls", "xlsx", "html", "txt", "md"}
_DOCUMENT_NAME_RE = re.compile(r"[^A-Za-z0-9\s\-\(\)\[\]]")

_USAGE_IN = {"inputTokens": "input_tokens"}
_USAGE_OUT = {"outputTokens": "output_tokens"}

_STREAM_ERROR_EVENTS = (
    "internalServerException",
    "modelStreamErrorException",
    "validationException",
    "throttlingException",
    "serviceUnavailableException",
)

_DONE = object()


class BedrockProvider:
    """Bedrock Converse API; embeddings for Titan and Cohere models."""

    name = "bedrock"

    def __init__(self, region: str | None = None, *, client: Any = None) -> None:
        self.region = region
        self._client = client

    def _get_client(self) -> Any:
        """Lazily create the ``bedrock-runtime`` client."""
        if self._client is None:
            import boto3

            self._client = boto3.client("bedrock-runtime", region_name=self.region)
        return self._client

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        close = getattr(client, "close", None)
        if callable(close):
            await asyncio.to_thread(close)

    async def _call(self, method: str, **kwargs: Any) -> Any:
        try:
            client = self._get_client()
            return await asyncio.to_thread(getattr(client, method), **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise wrap_boto_error(exc) from exc

    async def instruct(self, request: InstructRequest) -> InstructResponse:
        response = await self._call("converse", **to_converse_kwargs(request))
        return from_converse_response(response)

    async def instruct_stream(self, request: InstructRequest) -> ChunkStream:
        response = await self._call("converse_stream", **to_converse_kwargs(request))
        stream = response.get("stream")
        if stream is None:
            raise UpstreamDecodeError("bedrock converse_stream returned no event stream")
        external_id = _request_id(response)

        async def close() -> None:
            close_stream = getattr(stream, "close", None)
            if callable(close_stream):
                await asyncio.to_thread(close_stream)

        return ChunkStream(_stream_items(stream, external_id), on_close=close)

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse:
        texts = as_list(request.input)
        model = request.model
        if model.startswith("amazon.titan-embed"):
            vectors: list[list[float]] = []
            tokens = 0
            for text in texts:
                body = await self._invoke(model, {"inputText": text})
                vectors.append(body.get("embedding") or [])
                count = body.get("inputTextTokenCount")
                if isinstance(count, int):
                    tokens += count
            return EmbeddingsResponse(
                output=vectors,
                usage=Usage(input={"input_tokens": tokens}) if tokens else None,
            )
        if model.startswith("cohere.embed"):
            body = await self._invoke(
                model, {"texts": texts, "input_type": "search_document"}
            )
            return EmbeddingsResponse(output=body.get("embeddings") or [], external_id=body.get("id"))
        raise UnsupportedOperationError(
            f"Bedrock embeddings are not supported for model {model!r}",
            hint="Use an amazon.titan-embed-* or cohere.embed-* model.",
        )

    async def _invoke(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._call(
            "invoke_model",
            modelId=model,
            body=json.dumps(payload),
            contentType="application/json",
            accept="application/json",
        )
        raw = await asyncio.to_thread(response["body"].read)
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise UpstreamDecodeError(f"bedrock returned invalid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise UpstreamDecodeError("bedrock embeddings body is not a JSON object")
        return body


def wrap_boto_error(exc: BaseException) -> SwitchboardError:
    """Map botocore exceptions into UpstreamHTTPError.

    A missing region is a configuration problem, not an upstream failure.
    """
    if isinstance(exc, NoRegionError):
        return ProviderConfigError(
            "Bedrock region not configured",
            hint="Set AWS_REGION or pass SwitchboardConfig(bedrock_region=...).",
        )
    if isinstance(exc, ClientError):
        error = exc.response.get("Error") or {}
        status = (exc.response.get("ResponseMetadata") or {}).get("HTTPStatusCode")
        return UpstreamHTTPError(
            f"bedrock request failed: {exc}",
            status_code=status if isinstance(status, int) else None,
            body=json.dumps(error),
            provider="bedrock",
            hint=(
                "Check AWS credentials and model access in the Bedrock console."
                if status in (401, 403)
                else None
            ),
        )
    return UpstreamHTTPError(f"bedrock request failed: {exc}", provider="bedrock")


# =============================================================================
# Request mapping
# =============================================================================


def to_converse_kwargs(request: InstructRequest) -> dict[str, Any]:
    # Converse takes a list of system blocks, so every system turn is lifted.
    system: list[dict[str, Any]] = []
    messages: list[dict[str, Any]] = []
    for message in request_messages(request):
        if message.role == "system":
            if message.text:
                system.append({"text": message.text})
        else:
            messages.append(_to_bedrock_message(message))
    kwargs: dict[str, Any] = {"modelId": request.model, "messages": messages}
    if system:
        kwargs["system"] = system

    gen = request.generation_config
    if gen is not None:
        inference = {
            key: value
            for key, value in (
                ("temperature", gen.temperature),
                ("topP", gen.top_p),
                ("maxTokens", gen.max_tokens),
            )
            if value is not None
        }
        if inference:
            kwargs["inferenceConfig"] = inference

    if request.tools:
        tool_config: dict[str, Any] = {
            "tools": [
                {
                    "toolSpec": {
                        "name": tool.name,
                        "description": tool.description or tool.name,
                        "inputSchema": {"json": tool_schema(tool.parameters)},
                    }
                }
                for tool in request.tools
            ]
        }
        mode = tool_mode(request.tool_config)
        if mode in ("auto", "any"):
            tool_config["toolChoice"] = {mode: {}}
        kwargs["toolConfig"] = tool_config
    return kwargs


def _to_bedrock_message(message: Message) -> dict[str, Any]:
    if message.tool_call_id and not message.tool_calls:
        return {
            "role": "user",
            "content": [
                {
                    "toolResult": {
                        "toolUseId": message.tool_call_id,
                        "content": [{"text": message.text}],
                    }
                }
            ],
        }
    if message.role not in ("user", "assistant"):
        raise UnsupportedOperationError(
            f"Bedrock does not accept role {message.role!r}",
            hint="Turns other than system must be user, assistant or tool results.",
        )

    blocks: list[dict[str, Any]] = []
    for leaf in flatten_content(message.content):
        if isinstance(leaf, TextContent):
            blocks.append({"text": leaf.text})
        elif isinstance(leaf, ImageContent):
            blocks.append(
                {"image": {"format": _image_format(leaf.format), "source": {"bytes": leaf.data}}}
            )
        elif isinstance(leaf, FileContent):
            blocks.append({"document": _document(leaf)})
        else:
            logger.debug("Bedrock ignores %s content; dropping it", leaf.type)
    for call in message.tool_calls or []:
        blocks.append(
            {
                "toolUse": {
                    "toolUseId": call.id,
                    "name": call.function.name,
                    "input": parse_arguments(call.function.arguments),
                }
            }
        )
    return {"role": message.role, "content": blocks}


def _image_format(fmt: str | None) -> str:
    if not fmt:
        return "jpeg"
    fmt = fmt.lower().rsplit("/", 1)[-1]
    return _IMAGE_FORMATS.get(fmt, "jpeg")


def _document(leaf: FileContent) -> dict[str, Any]:
    path = PurePath(leaf.name or "document.txt")
    extension = path.suffix.lstrip(".").lower()
    name = _DOCUMENT_NAME_RE.sub(" ", path.stem).strip() or "document"
    return {
        "format": extension if extension in _DOCUMENT_FORMATS else "txt",
        "name": name,
        "source": {"bytes": leaf.data},
    }


# =============================================================================
# Response mapping
# =============================================================================


def _request_id(response: dict[str, Any]) -> str | None:
    return (response.get("ResponseMetadata") or {}).get("RequestId")


def _usage(raw: dict[str, Any] | None) -> Usage | None:
    usage_in = int_counts(raw, _USAGE_IN)
    usage_out = int_counts(raw, _USAGE_OUT)
    if usage_in is None and usage_out is None:
        return None
    return Usage(input=usage_in, output=usage_out)


def from_converse_response(response: dict[str, Any]) -> InstructResponse:
    message = (response.get("output") or {}).get("message")
    if not isinstance(message, dict):
        raise UpstreamDecodeError("bedrock converse response has no output message")

    text: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in message.get("content") or []:
        if "text" in block:
            text.append(block["text"])
        elif "toolUse" in block:
            use = block["toolUse"]
            tool_calls.append(
                ToolCall(
                    id=use.get("toolUseId", ""),
                    function=FunctionCall(
                        name=use.get("name", ""), arguments=dump_arguments(use.get("input"))
                    ),
                )
            )
    joined = "".join(text)
    return InstructResponse(
        output=Message(
            role=message.get("role") or "assistant",
            content=TextContent(text=joined) if joined else None,
            tool_calls=tool_calls or None,
        ),
        external_id=_request_id(response),
        usage=_usage(response.get("usage")),
    )


def map_stream_event(event: dict[str, Any], external_id: str | None) -> list[StreamItem]:
    """Translate one Converse stream event into zero or more items."""
    if "contentBlockDelta" in event:
        body = event["contentBlockDelta"]
        delta = body.get("delta") or {}
        if delta.get("text"):
            return [StreamResponse(chunk=TextChunk(text=delta["text"]), external_id=external_id)]
        tool_use = delta.get("toolUse")
        if tool_use and tool_use.get("input"):
            chunk = ToolCallChunk(
                index=body.get("contentBlockIndex", 0), arguments=tool_use["input"]
            )
            return [StreamResponse(chunk=chunk, external_id=external_id)]
        return []
    if "contentBlockStart" in event:
        body = event["contentBlockStart"]
        tool_use = (body.get("start") or {}).get("toolUse")
        if tool_use:
            chunk = ToolCallChunk(
                index=body.get("contentBlockIndex", 0),
                id=tool_use.get("toolUseId"),
                name=tool_use.get("name"),
            )
            return [StreamResponse(chunk=chunk, external_id=external_id)]
        return []
    if "metadata" in event:
        usage = _usage(event["metadata"].get("usage"))
        if usage is not None:
            return [StreamResponse(chunk=UsageChunk(usage=usage), external_id=external_id)]
        return []
    for key in _STREAM_ERROR_EVENTS:
        if key in event:
            return [
                UpstreamHTTPError(
                    f"bedrock stream error: {key}",
                    body=json.dumps(event[key], default=str),
                    provider="bedrock",
                )
            ]
    return []


async def _stream_items(stream: Any, external_id: str | None) -> AsyncIterator[StreamItem]:
    iterator = iter(stream)
    while True:
        try:
            event = await asyncio.to_thread(next, iterator, _DONE)
        except (ClientError, BotoCoreError) as exc:
            yield wrap_boto_error(exc)
            return
        if event is _DONE:
            return
        for item in map_stream_event(event, external_id):
            yield item
