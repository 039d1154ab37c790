"""Provider protocol and the shared httpx-backed adapter base."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

import httpx

from switchboard._http import (
    DEFAULT_TIMEOUT_S,
    build_timeout,
    decode_json,
    ensure_success,
    expect_object,
    wrap_transport_error,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.models import (
        EmbeddingsRequest,
        EmbeddingsResponse,
        InstructRequest,
        InstructResponse,
    )
    from switchboard.streaming import StreamItem


@runtime_checkable
class Provider(Protocol):
    """Capability set every adapter implements.

    Requests reach adapters with the bare model id. ``instruct_stream``
    raises for failures that happen before the first byte and returns a
    lazy, single-pass sequence of items otherwise.
    """

    async def instruct(self, request: InstructRequest) -> InstructResponse: ...

    async def instruct_stream(
        self, request: InstructRequest
    ) -> AsyncIterator[StreamItem]: ...

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse: ...


class HTTPProvider:
    """Base for adapters that speak JSON over httpx."""

    name: ClassVar[str]

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily initialize and return the shared httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=build_timeout(self._timeout_s))
        return self._client

    async def aclose(self) -> None:
        client = self._client
        self._client = None
        if client is not None and self._owns_client:
            await client.aclose()

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._get_client().post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise wrap_transport_error(exc, provider=self.name) from exc
        await ensure_success(response, provider=self.name)
        return expect_object(decode_json(response.content, provider=self.name), provider=self.name)

    async def _open_stream(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a streaming POST; the caller owns closing the response."""
        client = self._get_client()
        request = client.build_request("POST", url, json=payload, headers=headers)
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise wrap_transport_error(exc, provider=self.name) from exc
        if not response.is_success:
            try:
                await ensure_success(response, provider=self.name)
            finally:
                await asyncio.shield(response.aclose())
        return response
