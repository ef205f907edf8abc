"""Exception hierarchy for Castor.

Every provider failure is mapped onto one canonical :class:`ErrorKind` and
raised as the matching :class:`LlmError` subclass. Provider status codes and
error bodies are kept as structured detail, never as the only signal.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from collections.abc import Iterator


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class InternalError(CastorError):
    """A Castor internal error (bug) or invariant violation."""


class ErrorKind(StrEnum):
    """Canonical failure kinds shared by every provider."""

    AUTH = "auth_error"
    INVALID_REQUEST = "invalid_request"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"
    MALFORMED_TOOL_CALL = "malformed_tool_call"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_UNAVAILABLE, ErrorKind.TIMEOUT}
)


class LlmError(CastorError):
    """A model call failed.

    ``kind`` is the canonical classification; the remaining attributes carry
    enough provider detail for callers to decide what to do next (for
    example, shorten the prompt after a context-length rejection).
    """

    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        provider_message: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.provider_message = provider_message
        self.phase = phase

    @property
    def retryable(self) -> bool:
        """Whether the retry policy may re-issue the call."""
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({str(self)!r}, kind={self.kind.value!r}, "
            f"provider={self.provider!r}, status_code={self.status_code!r})"
        )


class AuthError(LlmError):
    """Credentials were rejected or are missing."""

    kind = ErrorKind.AUTH


class InvalidRequestError(LlmError):
    """The provider (or local validation) rejected the request shape."""

    kind = ErrorKind.INVALID_REQUEST


class RateLimitError(LlmError):
    """Rate limit exceeded (HTTP 429)."""

    kind = ErrorKind.RATE_LIMITED


class ProviderUnavailableError(LlmError):
    """Provider-side failure (5xx, overload) or transport loss."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE


class RequestTimeoutError(LlmError):
    """The request deadline expired or the transport timed out."""

    kind = ErrorKind.TIMEOUT


class UnsupportedError(LlmError):
    """The target model cannot honor the request (capability violation)."""

    kind = ErrorKind.UNSUPPORTED


class MalformedToolCallError(LlmError):
    """A proposed tool call never produced a syntactically valid payload."""

    kind = ErrorKind.MALFORMED_TOOL_CALL


class CancelledRequestError(LlmError):
    """The caller cancelled the request through its cancellation token."""

    kind = ErrorKind.CANCELLED


_ERRORS_BY_KIND: dict[ErrorKind, type[LlmError]] = {
    ErrorKind.AUTH: AuthError,
    ErrorKind.INVALID_REQUEST: InvalidRequestError,
    ErrorKind.RATE_LIMITED: RateLimitError,
    ErrorKind.PROVIDER_UNAVAILABLE: ProviderUnavailableError,
    ErrorKind.TIMEOUT: RequestTimeoutError,
    ErrorKind.UNSUPPORTED: UnsupportedError,
    ErrorKind.MALFORMED_TOOL_CALL: MalformedToolCallError,
    ErrorKind.CANCELLED: CancelledRequestError,
    ErrorKind.UNKNOWN: LlmError,
}


def error_for_kind(kind: ErrorKind) -> type[LlmError]:
    """Return the exception class raised for *kind*."""
    return _ERRORS_BY_KIND[kind]


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, once each."""
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
