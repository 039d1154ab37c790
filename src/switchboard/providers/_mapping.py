"""Shared helpers for request/response translation."""

from __future__ import annotations

import base64
import json
import mimetypes
from typing import TYPE_CHECKING, Any

from switchboard.errors import InvalidRequestError
from switchboard.models import as_list

if TYPE_CHECKING:
    from switchboard.models import (
        InstructRequest,
        Message,
        ToolConfig,
        ToolParameter,
    )

DEFAULT_IMAGE_MIME = "image/jpeg"
DEFAULT_AUDIO_MIME = "audio/mpeg"
DEFAULT_FILE_MIME = "application/octet-stream"

_IMAGE_MIMES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}

_AUDIO_MIMES = {
    "mp3": "audio/mpeg",
    "mpeg": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "ogg": "audio/ogg",
    "aac": "audio/aac",
}


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def image_mime(fmt: str | None) -> str:
    """MIME type for an image ``format`` (a short name or a full MIME type)."""
    if not fmt:
        return DEFAULT_IMAGE_MIME
    if "/" in fmt:
        return fmt
    fmt = fmt.lower()
    return _IMAGE_MIMES.get(fmt, f"image/{fmt}")


def audio_mime(fmt: str | None) -> str:
    if not fmt:
        return DEFAULT_AUDIO_MIME
    if "/" in fmt:
        return fmt
    fmt = fmt.lower()
    return _AUDIO_MIMES.get(fmt, f"audio/{fmt}")


def file_mime(name: str | None) -> str:
    if not name:
        return DEFAULT_FILE_MIME
    guessed, _ = mimetypes.guess_type(name)
    return guessed or DEFAULT_FILE_MIME


def data_uri(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{b64encode(data)}"


def split_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Pull the first system message out of *messages*.

    Later system messages are left in place for the adapter to deal with.
    """
    for i, message in enumerate(messages):
        if message.role == "system":
            return message.text, messages[:i] + messages[i + 1 :]
    return None, list(messages)


def request_messages(request: InstructRequest) -> list[Message]:
    return as_list(request.input)


def tool_mode(config: ToolConfig | None) -> str | None:
    """Normalize a tool mode to ``auto``, ``any`` or ``none``."""
    if config is None or not config.mode:
        return None
    mode = config.mode.strip().lower()
    if mode == "required":
        return "any"
    return mode


def tool_schema(param: ToolParameter | None) -> dict[str, Any]:
    """Convert a tool's parameters to a JSON-Schema object."""
    if param is None:
        return {"type": "object", "properties": {}}
    return _convert(param, default_type="object")


def _convert(param: ToolParameter, *, default_type: str) -> dict[str, Any]:
    kind = param.type or default_type
    schema: dict[str, Any] = {"type": "string" if kind == "text" else kind}
    if param.description is not None:
        schema["description"] = param.description
    if param.properties is not None:
        schema["properties"] = {
            name: _convert(child, default_type="string")
            for name, child in param.properties.items()
        }
    if param.items is not None:
        schema["items"] = _convert(param.items, default_type="string")
    if param.required is not None:
        schema["required"] = list(param.required)
    return schema


def parse_arguments(arguments: str | None) -> dict[str, Any]:
    """Decode a tool call's JSON argument string into an object."""
    if not arguments:
        return {}
    try:
        value = json.loads(arguments)
    except ValueError as exc:
        raise InvalidRequestError(
            f"Tool call arguments are not valid JSON: {arguments!r}",
            hint="ToolCall.function.arguments must be a JSON-encoded object.",
        ) from exc
    if not isinstance(value, dict):
        raise InvalidRequestError(
            f"Tool call arguments must encode an object, got {type(value).__name__}",
            hint="ToolCall.function.arguments must be a JSON-encoded object.",
        )
    return value


def dump_arguments(arguments: Any) -> str:
    """Encode tool arguments returned as an object into a JSON string."""
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments if arguments is not None else {}, separators=(",", ":"))


def int_counts(source: dict[str, Any] | None, mapping: dict[str, str]) -> dict[str, int] | None:
    """Pick integer counters from *source*, renaming keys via *mapping*."""
    if not source:
        return None
    counts: dict[str, int] = {}
    for key, target in mapping.items():
        value = source.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            counts[target] = value
    return counts or None
