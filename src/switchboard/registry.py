"""Routing registry: the single entry point for instruct and embeddings calls.

``Switchboard`` parses ``provider::model`` identifiers, builds one adapter
per provider on first use, rewrites the request to the bare model id and
delegates. Errors from adapters are propagated unchanged; nothing here
retries.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from switchboard.config import SwitchboardConfig
from switchboard.errors import (
    BadModelFormatError,
    ProviderConfigError,
    UnknownProviderError,
)
from switchboard.models import StreamResponse, TextChunk, with_model
from switchboard.streaming import ChunkStream

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.models import (
        EmbeddingsRequest,
        EmbeddingsResponse,
        InstructRequest,
        InstructResponse,
    )
    from switchboard.providers.base import Provider
    from switchboard.request_log import RequestLogger
    from switchboard.streaming import StreamItem

logger = logging.getLogger(__name__)

MODEL_SEPARATOR = "::"
PROVIDERS = ("ollama", "openai", "anthropic", "bedrock", "vertexai")


def parse_model(model: str) -> tuple[str, str]:
    """Split ``provider::model_id`` on the first separator."""
    provider, sep, model_id = model.partition(MODEL_SEPARATOR)
    if not sep:
        raise BadModelFormatError(
            f"Invalid model format: {model!r}",
            hint="Use 'provider::model', e.g. 'openai::gpt-4o-mini' or 'ollama::llama3.2'.",
        )
    return provider, model_id


def _retrieve_exception(fut: asyncio.Future[Any]) -> None:
    # Marks a failed build as seen when no waiter awaited it.
    if not fut.cancelled():
        fut.exception()


class Switchboard:
    """Provider-agnostic client.

    Example:
        async with Switchboard(SwitchboardConfig.from_env()) as board:
            response = await board.instruct(
                InstructRequest(model="openai::gpt-4o-mini", input=Message.user("Hi"))
            )
            print(response.text)
    """

    def __init__(
        self,
        config: SwitchboardConfig | None = None,
        *,
        logger: RequestLogger | None = None,
    ) -> None:
        self.config = config or SwitchboardConfig()
        self.logger = logger
        self._clients: dict[str, Provider] = {}
        self._lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[Provider]] = {}

    # -------------------------------------------------------------------------
    # Adapter cache
    # -------------------------------------------------------------------------

    async def get_client(self, provider: str) -> Provider:
        """Return the adapter for *provider*, constructing it at most once.

        A cached adapter is returned without locking. On a miss the lock is
        taken and the cache re-checked; the first caller then builds the
        adapter while later callers for the same provider wait on its
        result. A failed construction reaches every waiter and is not cached.
        """
        client = self._clients.get(provider)
        if client is not None:
            return client

        async with self._lock:
            client = self._clients.get(provider)
            if client is not None:
                return client
            pending = self._pending.get(provider)
            builder = pending is None
            if pending is None:
                pending = asyncio.get_running_loop().create_future()
                pending.add_done_callback(_retrieve_exception)
                self._pending[provider] = pending

        if not builder:
            # Shielded so a cancelled waiter does not cancel the shared build.
            return await asyncio.shield(pending)

        try:
            client = await self._create_client(provider)
        except asyncio.CancelledError:
            pending.cancel()
            raise
        except Exception as exc:
            pending.set_exception(exc)
            raise
        else:
            async with self._lock:
                # add_client() may have registered an override meanwhile.
                client = self._clients.setdefault(provider, client)
            pending.set_result(client)
            return client
        finally:
            async with self._lock:
                self._pending.pop(provider, None)

    def add_client(self, provider: str, client: Provider) -> None:
        """Register a pre-built adapter (or test double) for *provider*."""
        self._clients[provider] = client

    async def _create_client(self, provider: str) -> Provider:
        client = self.build_client(provider)
        logger.debug("Constructed %s adapter", provider)
        return client

    def build_client(self, provider: str) -> Provider:
        """Construct a fresh adapter for *provider* from the configuration."""
        cfg = self.config
        if provider == "ollama":
            from switchboard.providers.ollama import OllamaProvider

            return OllamaProvider(cfg.ollama_url, timeout_s=cfg.timeout_s)

        if provider == "openai":
            from switchboard.providers.openai import OpenAIProvider

            if not cfg.openai_api_key:
                raise ProviderConfigError(
                    "OpenAI API Key not configured",
                    hint="Set OPENAI_API_KEY or pass SwitchboardConfig(openai_api_key=...).",
                )
            return OpenAIProvider(cfg.openai_api_key, cfg.openai_url, timeout_s=cfg.timeout_s)

        if provider == "anthropic":
            from switchboard.providers.anthropic import AnthropicProvider

            if not cfg.anthropic_api_key:
                raise ProviderConfigError(
                    "Anthropic API Key not configured",
                    hint="Set ANTHROPIC_API_KEY or pass SwitchboardConfig(anthropic_api_key=...).",
                )
            return AnthropicProvider(
                cfg.anthropic_api_key,
                cfg.anthropic_url,
                version=cfg.anthropic_version,
                timeout_s=cfg.timeout_s,
            )

        if provider == "bedrock":
            from switchboard.providers.bedrock import BedrockProvider

            return BedrockProvider(cfg.bedrock_region)

        if provider == "vertexai":
            from switchboard.providers.vertexai import VertexAIProvider

            if cfg.vertexai_service_account is None:
                raise ProviderConfigError(
                    "VertexAI Service Account not configured",
                    hint="Set VERTEXAI_SERVICE_ACCOUNT_FILE to a service account JSON key.",
                )
            if not cfg.vertexai_api_url:
                raise ProviderConfigError(
                    "VertexAI API URL not configured",
                    hint="Set VERTEXAI_API_URL to a URL template containing {{MODEL}}.",
                )
            return VertexAIProvider(
                cfg.vertexai_api_url,
                cfg.vertexai_service_account,
                timeout_s=cfg.timeout_s,
            )

        raise UnknownProviderError(
            f"Unknown or disabled provider: {provider}",
            hint=f"Built-in providers: {', '.join(PROVIDERS)}; or register one with add_client().",
        )

    async def _resolve(self, model: str) -> tuple[Provider, str]:
        provider, model_id = parse_model(model)
        return await self.get_client(provider), model_id

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def instruct(self, request: InstructRequest) -> InstructResponse:
        client, model_id = await self._resolve(request.model)
        self._log_request(request.correlation_id, "instruct", request.model, request)
        response = await client.instruct(with_model(request, model_id))
        self._log_response(request.correlation_id, "instruct", request.model, response)
        return response

    async def instruct_stream(self, request: InstructRequest) -> ChunkStream:
        """Stream a response; items are ``StreamResponse`` or errors.

        Empty text chunks are dropped before they reach the caller.
        """
        client, model_id = await self._resolve(request.model)
        self._log_request(request.correlation_id, "instruct_stream", request.model, request)
        inner = await client.instruct_stream(with_model(request, model_id))
        return ChunkStream(
            self._relay(inner, request.correlation_id, request.model),
            on_close=getattr(inner, "aclose", None),
        )

    async def embeddings(self, request: EmbeddingsRequest) -> EmbeddingsResponse:
        client, model_id = await self._resolve(request.model)
        self._log_request(request.correlation_id, "embeddings", request.model, request)
        response = await client.embeddings(with_model(request, model_id))
        self._log_response(request.correlation_id, "embeddings", request.model, response)
        return response

    async def _relay(
        self,
        inner: AsyncIterator[StreamItem],
        correlation_id: str | None,
        model: str,
    ) -> AsyncIterator[StreamItem]:
        async for item in inner:
            if isinstance(item, StreamResponse):
                # Every upstream chunk is logged, including ones dropped below.
                if self.logger is not None:
                    self.logger.log_stream_chunk(
                        correlation_id,
                        "instruct_stream",
                        model,
                        item.model_dump_json(exclude_none=True),
                    )
                if isinstance(item.chunk, TextChunk) and not item.chunk.text:
                    continue
            yield item

    # -------------------------------------------------------------------------
    # Logging and lifecycle
    # -------------------------------------------------------------------------

    def _log_request(self, correlation_id: str | None, op: str, model: str, request: Any) -> None:
        if self.logger is not None:
            self.logger.log_request(
                correlation_id, op, model, request.model_dump_json(exclude_none=True)
            )

    def _log_response(self, correlation_id: str | None, op: str, model: str, response: Any) -> None:
        if self.logger is not None:
            self.logger.log_response(
                correlation_id,
                op,
                model,
                response.model_dump_json(exclude_none=True),
                response.usage,
            )

    async def aclose(self) -> None:
        """Close every cached adapter that holds a transport."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            aclose = getattr(client, "aclose", None)
            if not callable(aclose):
                continue
            try:
                await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                logger.warning("Provider cleanup failed: %s", exc)

    async def __aenter__(self) -> Switchboard:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
