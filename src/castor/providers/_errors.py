"""Shared provider-side error helpers.

Providers map HTTP statuses, error bodies and transport exceptions into
canonical :class:`~castor.errors.LlmError` kinds so retry decisions never
depend on brittle substring matching.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import TYPE_CHECKING, Any

import httpx

from castor._http import (
    AUTH_STATUS_CODES,
    INVALID_REQUEST_STATUS_CODES,
    RATE_LIMIT_STATUS_CODES,
    TIMEOUT_STATUS_CODES,
    UNAVAILABLE_STATUS_CODES,
)
from castor.errors import (
    ErrorKind,
    LlmError,
    _walk_exception_chain,
    error_for_kind,
)
from castor.transport import API_KEY_ENV_VARS

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.registry import ProviderFamily


def kind_for_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status code."""
    if status_code in AUTH_STATUS_CODES:
        return ErrorKind.AUTH
    if status_code in RATE_LIMIT_STATUS_CODES:
        return ErrorKind.RATE_LIMITED
    if status_code in TIMEOUT_STATUS_CODES:
        return ErrorKind.TIMEOUT
    if status_code in INVALID_REQUEST_STATUS_CODES:
        return ErrorKind.INVALID_REQUEST
    if status_code in UNAVAILABLE_STATUS_CODES or 500 <= status_code <= 599:
        return ErrorKind.PROVIDER_UNAVAILABLE
    return ErrorKind.UNKNOWN


def decode_error_body(body: bytes) -> Any:
    """Best-effort JSON decode of an error body; ``None`` when not JSON."""
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def extract_error_message(payload: Any, body: bytes) -> str:
    """Pull the human-readable message out of a provider error body.

    Handles ``{"error": {"message": ...}}`` (OpenAI, Anthropic, Google, xAI),
    ``{"message": ...}`` (Mistral) and ``{"detail": ...}`` shapes, falling
    back to the raw text.
    """
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        for key in ("message", "detail"):
            if isinstance(payload.get(key), str):
                return payload[key]
    return body.decode("utf-8", errors="replace").strip()[:500]


_PROTO_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _extract_retry_info_seconds(payload: Any) -> float | None:
    """Extract retry delay from Google API-style RetryInfo in error details.

    Gemini error bodies are shaped like::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}

    The ``retryDelay`` value is a protobuf Duration string (e.g. ``"8s"``,
    ``"8.352104981s"``).
    """
    if not isinstance(payload, dict):
        return None
    error: Any = payload.get("error")
    if not isinstance(error, dict):
        return None
    detail_list: Any = error.get("details")
    if not isinstance(detail_list, list):
        return None
    for entry in detail_list:
        if not isinstance(entry, dict):
            continue
        at_type = entry.get("@type", "")
        if not isinstance(at_type, str) or "RetryInfo" not in at_type:
            continue
        delay_raw = entry.get("retryDelay")
        if not isinstance(delay_raw, str):
            continue
        m = _PROTO_DURATION_RE.match(delay_raw)
        if m:
            return float(m.group(1))
    return None


def extract_retry_after_s(
    headers: Mapping[str, str], payload: Any = None
) -> float | None:
    """Return a provider retry hint in seconds, from headers or body."""
    raw: Any = None
    for name in ("Retry-After", "retry-after"):
        raw = headers.get(name)
        if raw is not None:
            break
    if isinstance(raw, str) and raw.strip():
        try:
            seconds = float(raw)
        except ValueError:
            seconds = None
        if seconds is not None and seconds >= 0:
            return seconds
    return _extract_retry_info_seconds(payload)


def _auth_hint(provider: ProviderFamily, kind: ErrorKind, message: str) -> str | None:
    """Name the credential env var when the failure looks like a key problem."""
    lowered = message.lower()
    if kind is ErrorKind.AUTH or "api key" in lowered or "api_key" in lowered:
        env_var = API_KEY_ENV_VARS.get(provider, "API key")
        return f"Check credentials (set {env_var} or pass Config.api_keys)."
    return None


def error_from_status(
    provider: ProviderFamily,
    status_code: int,
    body: bytes,
    headers: Mapping[str, str],
    *,
    kind: ErrorKind | None = None,
) -> LlmError:
    """Build the canonical error for a non-success HTTP reply."""
    payload = decode_error_body(body)
    provider_message = extract_error_message(payload, body)
    resolved = kind or kind_for_status(status_code)
    # Gemini reports a bad key as 400 INVALID_ARGUMENT.
    if (
        resolved is ErrorKind.INVALID_REQUEST
        and "api key not valid" in provider_message.lower()
    ):
        resolved = ErrorKind.AUTH
    err_cls = error_for_kind(resolved)
    note = f": {provider_message}" if provider_message else ""
    return err_cls(
        f"{provider.value} request failed (status={status_code}){note}",
        hint=_auth_hint(provider, resolved, provider_message),
        status_code=status_code,
        retry_after_s=extract_retry_after_s(headers, payload),
        provider=provider.value,
        provider_message=provider_message or None,
        phase="request",
    )


def error_from_stream(
    provider: ProviderFamily,
    kind: ErrorKind,
    message: str,
    *,
    status_code: int | None = None,
) -> LlmError:
    """Build the canonical error for an in-stream provider error frame."""
    return error_for_kind(kind)(
        f"{provider.value} stream error: {message}",
        status_code=status_code,
        provider=provider.value,
        provider_message=message,
        phase="stream",
    )


def wrap_transport_error(
    exc: BaseException,
    *,
    provider: ProviderFamily,
    phase: str,
) -> LlmError:
    """Map a transport exception into a canonical error.

    ``asyncio.CancelledError`` is re-raised untouched; errors that are already
    canonical pass through with missing context filled in.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    if isinstance(exc, LlmError):
        if exc.provider is None:
            exc.provider = provider.value
        if exc.phase is None:
            exc.phase = phase
        return exc

    kind = ErrorKind.UNKNOWN
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, TimeoutError)):
            kind = ErrorKind.TIMEOUT
            break
        if isinstance(e, (httpx.TransportError, httpx.RequestError, ConnectionError)):
            kind = ErrorKind.PROVIDER_UNAVAILABLE
            break

    cause = str(exc) or type(exc).__name__
    return error_for_kind(kind)(
        f"{provider.value} {phase} failed: {cause}",
        provider=provider.value,
        phase=phase,
    )
