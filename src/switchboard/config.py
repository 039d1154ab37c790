"""Configuration: frozen provider settings with optional environment loading."""

from __future__ import annotations

from dataclasses import dataclass, fields
import os

import dotenv

from switchboard._http import DEFAULT_TIMEOUT_S
from switchboard.auth import ServiceAccount
from switchboard.errors import ConfigurationError

DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1"
DEFAULT_ANTHROPIC_URL = "https://api.anthropic.com/v1"
DEFAULT_ANTHROPIC_VERSION = "2023-06-01"

_SECRET_FIELDS = frozenset({"openai_api_key", "anthropic_api_key"})


@dataclass(frozen=True)
class SwitchboardConfig:
    """Immutable provider settings consumed by ``Switchboard``.

    Nothing here reads the environment on its own; use ``from_env()`` for
    that. A provider whose required settings are missing is simply not
    constructible, which surfaces as ``ProviderConfigError`` on first use.

    Example:
        config = SwitchboardConfig(openai_api_key="sk-...")
        board = Switchboard(config)
    """

    ollama_url: str = DEFAULT_OLLAMA_URL
    openai_url: str = DEFAULT_OPENAI_URL
    openai_api_key: str | None = None
    anthropic_url: str = DEFAULT_ANTHROPIC_URL
    anthropic_api_key: str | None = None
    anthropic_version: str = DEFAULT_ANTHROPIC_VERSION
    #: ``None`` falls back to the boto3 default region chain.
    bedrock_region: str | None = None
    #: URL template; ``{{MODEL}}`` is replaced by the model id.
    vertexai_api_url: str | None = None
    vertexai_service_account: ServiceAccount | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ConfigurationError(
                f"timeout_s must be > 0, got {self.timeout_s}",
                hint="This bounds each provider HTTP call in seconds.",
            )
        if self.vertexai_api_url is not None and "{{MODEL}}" not in self.vertexai_api_url:
            raise ConfigurationError(
                "vertexai_api_url must contain the {{MODEL}} placeholder",
                hint=(
                    "e.g. https://us-central1-aiplatform.googleapis.com/v1/projects/"
                    "<project>/locations/us-central1/publishers/google/models/{{MODEL}}"
                ),
            )

    @classmethod
    def from_env(cls, *, load_dotenv: bool = True) -> SwitchboardConfig:
        """Build a config from ``.env`` and the process environment.

        Recognized variables: ``OLLAMA_URL``, ``OPENAI_URL``, ``OPENAI_API_KEY``,
        ``ANTHROPIC_URL``, ``ANTHROPIC_API_KEY``, ``ANTHROPIC_VERSION``,
        ``AWS_REGION``, ``VERTEXAI_API_URL``, ``VERTEXAI_SERVICE_ACCOUNT_FILE``
        and ``SWITCHBOARD_TIMEOUT_S``.
        """
        if load_dotenv:
            dotenv.load_dotenv()
        env = os.environ

        service_account = None
        sa_file = env.get("VERTEXAI_SERVICE_ACCOUNT_FILE")
        if sa_file:
            service_account = ServiceAccount.from_file(sa_file)

        timeout_raw = env.get("SWITCHBOARD_TIMEOUT_S")
        try:
            timeout_s = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT_S
        except ValueError as exc:
            raise ConfigurationError(
                f"SWITCHBOARD_TIMEOUT_S must be a number, got {timeout_raw!r}"
            ) from exc

        return cls(
            ollama_url=env.get("OLLAMA_URL") or DEFAULT_OLLAMA_URL,
            openai_url=env.get("OPENAI_URL") or DEFAULT_OPENAI_URL,
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            anthropic_url=env.get("ANTHROPIC_URL") or DEFAULT_ANTHROPIC_URL,
            anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
            anthropic_version=env.get("ANTHROPIC_VERSION") or DEFAULT_ANTHROPIC_VERSION,
            bedrock_region=env.get("AWS_REGION") or None,
            vertexai_api_url=env.get("VERTEXAI_API_URL") or None,
            vertexai_service_account=service_account,
            timeout_s=timeout_s,
        )

    def __str__(self) -> str:
        """Return a redacted representation."""
        parts = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _SECRET_FIELDS and value:
                parts.append(f"{f.name}='[REDACTED]'")
            else:
                parts.append(f"{f.name}={value!r}")
        return f"SwitchboardConfig({', '.join(parts)})"

    __repr__ = __str__
