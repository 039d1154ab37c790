"""Pytest configuration and fixtures.

Provides environment isolation, logging configuration and shared test
doubles. Fixtures marked autouse apply to every test.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os
from typing import Any

import pytest

from switchboard.auth import ServiceAccount
from switchboard.models import (
    EmbeddingsResponse,
    InstructResponse,
    Message,
    StreamResponse,
    TextChunk,
)
from switchboard.streaming import ChunkStream

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class FakeProvider:
    """Adapter test double that records requests and replays scripted chunks."""

    reply: str = "ok"
    chunks: list[Any] = field(default_factory=list)
    requests: list[Any] = field(default_factory=list)
    closed: bool = False
    stream_closed: bool = False

    async def instruct(self, request: Any) -> InstructResponse:
        self.requests.append(request)
        return InstructResponse(output=Message.assistant(self.reply), external_id="fake-1")

    async def instruct_stream(self, request: Any) -> ChunkStream:
        self.requests.append(request)

        async def items():
            for item in self.chunks:
                await asyncio.sleep(0)
                if isinstance(item, str):
                    yield StreamResponse(chunk=TextChunk(text=item))
                else:
                    yield item

        async def on_close() -> None:
            self.stream_closed = True

        return ChunkStream(items(), on_close=on_close)

    async def embeddings(self, request: Any) -> EmbeddingsResponse:
        self.requests.append(request)
        return EmbeddingsResponse(output=[[0.1, 0.2]])

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class RecordingLogger:
    """RequestLogger double that keeps every call in order."""

    events: list[tuple[Any, ...]] = field(default_factory=list)

    def log_request(self, correlation_id, op, model, request_json) -> None:
        self.events.append(("request", correlation_id, op, model, request_json))

    def log_response(self, correlation_id, op, model, response_json, usage) -> None:
        self.events.append(("response", correlation_id, op, model, response_json, usage))

    def log_stream_chunk(self, correlation_id, op, model, chunk_json) -> None:
        self.events.append(("chunk", correlation_id, op, model, chunk_json))


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


# =============================================================================
# Credentials
# =============================================================================


@pytest.fixture(scope="session")
def rsa_private_pem() -> str:
    """Throwaway RSA key in PKCS#8 PEM, as found in service account files."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def service_account(rsa_private_pem: str) -> ServiceAccount:
    return ServiceAccount(
        client_email="svc@project.iam.gserviceaccount.com",
        private_key=rsa_private_pem,
    )


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

_PROVIDER_ENV_PREFIXES = (
    "OLLAMA_",
    "OPENAI_",
    "ANTHROPIC_",
    "VERTEXAI_",
    "SWITCHBOARD_",
)


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(ImportError):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Opt-out: @pytest.mark.allow_env_pollution
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return
    for key in list(os.environ.keys()):
        if key.startswith(_PROVIDER_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    for key in ("AWS_REGION", "AWS_DEFAULT_REGION"):
        monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    for name in ("httpx", "httpcore", "botocore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
