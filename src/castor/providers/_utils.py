"""Shared utilities for provider adapters."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from castor.models import FinishReason, Role, Usage

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from castor.models import Message
    from castor.registry import ProviderFamily

logger = logging.getLogger(__name__)


def normalize_finish_reason(
    provider: ProviderFamily,
    raw: Any,
    mapping: Mapping[str, FinishReason],
) -> FinishReason:
    """Map a provider completion reason onto :class:`FinishReason`.

    Unknown reasons map to ``stop`` with a logged discrepancy; ``error`` is
    reserved for transport and protocol failures.
    """
    if raw is None:
        return FinishReason.STOP
    reason = str(raw)
    mapped = mapping.get(reason) or mapping.get(reason.lower())
    if mapped is None:
        logger.warning(
            "Unknown %s finish reason %r; reporting 'stop'", provider, reason
        )
        return FinishReason.STOP
    return mapped


def as_int(value: Any) -> int:
    """Coerce a usage counter; missing or malformed counts become 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def usage_from(
    payload: Mapping[str, Any] | None,
    prompt_key: str,
    completion_key: str,
    *extra_completion_keys: str,
) -> Usage:
    """Build Usage from a provider usage block.

    ``completion_tokens`` is always populated, even when the provider omits it.
    """
    if not isinstance(payload, dict):
        return Usage()
    completion = as_int(payload.get(completion_key))
    for key in extra_completion_keys:
        completion += as_int(payload.get(key))
    return Usage(
        prompt_tokens=as_int(payload.get(prompt_key)),
        completion_tokens=completion,
    )


def system_text(messages: Iterable[Message]) -> str | None:
    """Join system messages for providers with a top-level system field."""
    parts = [m.text for m in messages if m.role is Role.SYSTEM and m.text]
    return "\n\n".join(parts) if parts else None


def conversation(messages: Iterable[Message]) -> list[Message]:
    """Return the non-system turns, in order."""
    return [m for m in messages if m.role is not Role.SYSTEM]
