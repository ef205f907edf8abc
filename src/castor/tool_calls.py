"""Tool-call protocol: correlation across turns and streamed argument reassembly.

Tools are never executed here. This module only guarantees that every tool
result answers a call the model actually proposed, and that streamed argument
fragments reassemble into one valid JSON payload (or fail loudly).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any

from castor.errors import InvalidRequestError, MalformedToolCallError
from castor.models import Role, ToolCall

if TYPE_CHECKING:
    from collections.abc import Iterable

    from castor.models import Message


def proposed_tool_names(messages: Iterable[Message]) -> dict[str, str]:
    """Map every proposed call id to its tool name."""
    names: dict[str, str] = {}
    for message in messages:
        for call in message.tool_calls:
            names[call.call_id] = call.tool_name
    return names


def validate_tool_correlation(messages: Iterable[Message]) -> None:
    """Require each tool result to answer a call proposed in an earlier turn.

    Raises:
        InvalidRequestError: On a result whose call id was never proposed
            before it, or on a call id answered twice for the same proposal.
    """
    proposed: set[str] = set()
    answered: set[str] = set()
    for idx, message in enumerate(messages):
        if message.role is Role.ASSISTANT:
            ids = {call.call_id for call in message.tool_calls}
            proposed.update(ids)
            # A re-proposed id (Gemini restarts its synthesized ids each turn)
            # opens a fresh call.
            answered.difference_update(ids)
            continue
        if message.role is not Role.TOOL or message.tool_result is None:
            continue
        call_id = message.tool_result.call_id
        if call_id not in proposed:
            raise InvalidRequestError(
                f"messages[{idx}] answers unknown tool call {call_id!r}",
                hint="Echo the call_id of a tool call proposed by an earlier "
                "assistant message.",
            )
        if call_id in answered:
            raise InvalidRequestError(
                f"messages[{idx}] answers tool call {call_id!r} a second time"
            )
        answered.add(call_id)


def canonical_arguments(arguments: Any) -> str:
    """Encode tool arguments compactly so every path yields identical text.

    Strings are treated as already-encoded JSON and re-encoded.

    Raises:
        MalformedToolCallError: When a string is not valid JSON.
    """
    value = arguments
    if isinstance(arguments, str):
        try:
            value = json.loads(arguments)
        except ValueError as exc:
            raise MalformedToolCallError(
                f"Tool call arguments are not valid JSON: {arguments[:200]!r}"
            ) from exc
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def is_complete_json(payload: str) -> bool:
    """Return True when *payload* is one syntactically complete JSON value."""
    try:
        json.loads(payload)
    except ValueError:
        return False
    return True


@dataclass
class _CallBuffer:
    call_id: str
    name: str = ""
    provider_context: str | None = None
    fragments: list[str] = field(default_factory=list)

    @property
    def arguments(self) -> str:
        return "".join(self.fragments)


class ToolCallAssembler:
    """Accumulate streamed tool-call fragments keyed by call id.

    Calls are kept in first-seen order; fragments concatenate in arrival
    order.
    """

    def __init__(self) -> None:
        """Start with no calls."""
        self._calls: dict[str, _CallBuffer] = {}

    def add(
        self,
        call_id: str,
        fragment: str = "",
        *,
        name: str | None = None,
        provider_context: str | None = None,
    ) -> None:
        """Append one fragment (and any metadata) to the call's buffer."""
        buf = self._calls.get(call_id)
        if buf is None:
            buf = self._calls[call_id] = _CallBuffer(call_id)
        if name:
            buf.name = name
        if provider_context is not None:
            buf.provider_context = provider_context
        if fragment:
            buf.fragments.append(fragment)

    def __len__(self) -> int:
        return len(self._calls)

    def incomplete_call_ids(self) -> list[str]:
        """Return ids whose buffered arguments are not yet valid JSON."""
        return [
            buf.call_id
            for buf in self._calls.values()
            if buf.fragments and not is_complete_json(buf.arguments)
        ]

    def finalize(self) -> tuple[ToolCall, ...]:
        """Return the assembled calls.

        An empty buffer becomes ``{}`` (a call with no arguments).

        Raises:
            MalformedToolCallError: When any buffer is not one complete JSON
                value, or a call never received a name.
        """
        calls: list[ToolCall] = []
        for buf in self._calls.values():
            arguments = buf.arguments or "{}"
            if not is_complete_json(arguments):
                raise MalformedToolCallError(
                    f"Tool call {buf.call_id!r} ({buf.name or 'unnamed'}) has "
                    f"incomplete arguments: {arguments[:200]!r}",
                    provider_message=arguments,
                )
            if not buf.name:
                raise MalformedToolCallError(
                    f"Tool call {buf.call_id!r} never received a tool name"
                )
            calls.append(
                ToolCall(
                    call_id=buf.call_id,
                    tool_name=buf.name,
                    arguments_json=canonical_arguments(arguments),
                    provider_context=buf.provider_context,
                )
            )
        return tuple(calls)
