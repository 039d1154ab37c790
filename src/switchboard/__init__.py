"""Switchboard: one request contract for many generative-AI providers.

Public API:
    - Switchboard: routes ``provider::model`` requests to provider adapters
    - SwitchboardConfig: provider settings
    - InstructRequest / EmbeddingsRequest and the rest of the contract models
    - StreamAccumulator: folds streamed deltas into one message
"""

from __future__ import annotations

import logging

from switchboard.auth import AccessToken, ServiceAccount, TokenManager
from switchboard.config import SwitchboardConfig
from switchboard.errors import (
    AuthError,
    BadModelFormatError,
    ConfigurationError,
    InvalidRequestError,
    ProviderConfigError,
    SwitchboardError,
    UnknownProviderError,
    UnsupportedOperationError,
    UpstreamDecodeError,
    UpstreamHTTPError,
)
from switchboard.models import (
    AudioContent,
    Content,
    EmbeddingsRequest,
    EmbeddingsResponse,
    FileContent,
    FunctionCall,
    GenerationConfig,
    ImageContent,
    InstructRequest,
    InstructResponse,
    Message,
    PartsContent,
    StreamChunk,
    StreamResponse,
    TextChunk,
    TextContent,
    Tool,
    ToolCall,
    ToolCallChunk,
    ToolConfig,
    ToolParameter,
    Usage,
    UsageChunk,
    as_list,
    flatten_content,
    with_model,
)
from switchboard.registry import Switchboard, parse_model
from switchboard.request_log import LoggingRequestLogger, RequestLogger
from switchboard.streaming import ChunkStream, StreamAccumulator

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("switchboard-ai")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("switchboard").addHandler(logging.NullHandler())

__all__ = [
    "AccessToken",
    "AudioContent",
    "AuthError",
    "BadModelFormatError",
    "ChunkStream",
    "ConfigurationError",
    "Content",
    "EmbeddingsRequest",
    "EmbeddingsResponse",
    "FileContent",
    "FunctionCall",
    "GenerationConfig",
    "ImageContent",
    "InvalidRequestError",
    "InstructRequest",
    "InstructResponse",
    "LoggingRequestLogger",
    "Message",
    "PartsContent",
    "ProviderConfigError",
    "RequestLogger",
    "ServiceAccount",
    "StreamAccumulator",
    "StreamChunk",
    "StreamResponse",
    "Switchboard",
    "SwitchboardConfig",
    "SwitchboardError",
    "TextChunk",
    "TextContent",
    "TokenManager",
    "Tool",
    "ToolCall",
    "ToolCallChunk",
    "ToolConfig",
    "ToolParameter",
    "UnknownProviderError",
    "UnsupportedOperationError",
    "UpstreamDecodeError",
    "UpstreamHTTPError",
    "Usage",
    "UsageChunk",
    "as_list",
    "flatten_content",
    "parse_model",
    "with_model",
]
