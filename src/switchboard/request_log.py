"""Request logging collaborator.

The registry calls a ``RequestLogger`` around every delegated call. Payloads
are passed as JSON text so implementations never touch the models.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from switchboard.models import Usage


@runtime_checkable
class RequestLogger(Protocol):
    def log_request(
        self, correlation_id: str | None, op: str, model: str, request_json: str
    ) -> None: ...

    def log_response(
        self,
        correlation_id: str | None,
        op: str,
        model: str,
        response_json: str,
        usage: Usage | None,
    ) -> None: ...

    def log_stream_chunk(
        self, correlation_id: str | None, op: str, model: str, chunk_json: str
    ) -> None: ...


class LoggingRequestLogger:
    """Write request events to a stdlib logger (``switchboard.requests``)."""

    def __init__(
        self, logger: logging.Logger | None = None, *, level: int = logging.INFO
    ) -> None:
        self.logger = logger or logging.getLogger("switchboard.requests")
        self.level = level

    def log_request(
        self, correlation_id: str | None, op: str, model: str, request_json: str
    ) -> None:
        self.logger.log(
            self.level,
            "[SWITCHBOARD REQUEST] CID: %s | Type: %s | Model: %s\n%s",
            correlation_id,
            op,
            model,
            request_json,
        )

    def log_response(
        self,
        correlation_id: str | None,
        op: str,
        model: str,
        response_json: str,
        usage: Usage | None,
    ) -> None:
        if usage is not None:
            self.logger.log(
                self.level,
                "[SWITCHBOARD RESPONSE] CID: %s | Type: %s | Model: %s | Usage: %s\n%s",
                correlation_id,
                op,
                model,
                usage.model_dump_json(exclude_none=True),
                response_json,
            )
            return
        self.logger.log(
            self.level,
            "[SWITCHBOARD RESPONSE] CID: %s | Type: %s | Model: %s\n%s",
            correlation_id,
            op,
            model,
            response_json,
        )

    def log_stream_chunk(
        self, correlation_id: str | None, op: str, model: str, chunk_json: str
    ) -> None:
        # Chunks are high volume; keep them one level below the request log.
        self.logger.log(
            max(self.level - 10, logging.DEBUG),
            "[SWITCHBOARD CHUNK] CID: %s | Type: %s | Model: %s | %s",
            correlation_id,
            op,
            model,
            chunk_json,
        )
