"""Shared httpx plumbing: status mapping, error wrapping and stream framing."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx

from switchboard.errors import (
    SwitchboardError,
    UpstreamDecodeError,
    UpstreamHTTPError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

DEFAULT_TIMEOUT_S = 120.0
CONNECT_TIMEOUT_S = 10.0


def build_timeout(timeout_s: float) -> httpx.Timeout:
    return httpx.Timeout(timeout_s, connect=min(CONNECT_TIMEOUT_S, timeout_s))


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def _auth_hint(provider: str, status_code: int | None) -> str | None:
    if status_code in {401, 403}:
        return f"Check the {provider} credentials and their permissions."
    if status_code == 404:
        return "Check the model id and the provider base URL."
    return None


def wrap_transport_error(
    exc: BaseException, *, provider: str, message: str | None = None
) -> SwitchboardError:
    """Map a transport exception into UpstreamHTTPError.

    Switchboard errors pass through unchanged and cancellation is re-raised.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, SwitchboardError):
        return exc

    status_code = extract_status_code(exc)
    msg = message or f"{provider} request failed"
    cause = str(exc)
    return UpstreamHTTPError(
        f"{msg}: {cause}" if cause else msg,
        hint=_auth_hint(provider, status_code),
        status_code=status_code,
        provider=provider,
    )


async def ensure_success(response: httpx.Response, *, provider: str) -> None:
    """Raise UpstreamHTTPError carrying the body text for non-2xx responses."""
    if response.is_success:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    raise UpstreamHTTPError(
        f"{provider} returned HTTP {response.status_code}",
        hint=_auth_hint(provider, response.status_code),
        status_code=response.status_code,
        body=body,
        provider=provider,
    )


def decode_json(text: str | bytes, *, provider: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise UpstreamDecodeError(
            f"{provider} returned a payload that is not valid JSON: {exc}"
        ) from exc


def expect_object(payload: Any, *, provider: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise UpstreamDecodeError(
            f"{provider} returned {type(payload).__name__}, expected a JSON object"
        )
    return payload


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the payload of each ``data:`` line.

    ``event:``, ``id:`` and comment lines carry nothing the adapters need and
    are skipped along with blank separators.
    """
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        if data:
            yield data


async def iter_ndjson(response: httpx.Response) -> AsyncIterator[str]:
    """Yield each non-blank line of a newline-delimited JSON body."""
    async for line in response.aiter_lines():
        line = line.strip()
        if line:
            yield line
