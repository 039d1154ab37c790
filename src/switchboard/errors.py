"""Exception hierarchy for Switchboard."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class SwitchboardError(Exception):
    """Base exception for all Switchboard errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class BadModelFormatError(SwitchboardError):
    """Model identifier is not of the form ``provider::model``."""


class UnknownProviderError(SwitchboardError):
    """Provider name is unknown or the provider is disabled."""


class ConfigurationError(SwitchboardError):
    """Configuration validation or resolution failed."""


class ProviderConfigError(ConfigurationError):
    """A known provider is missing required configuration."""


class UpstreamHTTPError(SwitchboardError):
    """Provider call failed at the transport or HTTP level.

    ``body`` holds the upstream response text verbatim when there was one.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body
        self.provider = provider


class UpstreamDecodeError(SwitchboardError):
    """Provider returned a payload that does not match its wire format."""


class AuthError(SwitchboardError):
    """Credential signing or token exchange failed."""


class UnsupportedOperationError(SwitchboardError):
    """The provider cannot perform the requested operation."""


class InvalidRequestError(SwitchboardError):
    """Caller-supplied request data is malformed."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
