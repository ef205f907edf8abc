"""Canonical, provider-agnostic request/response types.

Every caller and every adapter speaks these types. They are frozen; list
inputs are normalized to tuples so a Request cannot change after it has been
handed to the dispatcher.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
import json
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from castor.errors import InvalidRequestError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from castor.errors import LlmError
    from castor.registry import ModelId

# Providers require at minimum an object schema with a properties map.
DEFAULT_PARAMETERS: Mapping[str, Any] = MappingProxyType(
    {"type": "object", "properties": {}}
)


class Role(StrEnum):
    """Conversation roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(StrEnum):
    """Why generation stopped."""

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALL = "tool_call"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation proposed by the model."""

    call_id: str
    tool_name: str
    arguments_json: str
    #: Provider-opaque state echoed back verbatim on replay (Gemini thought
    #: signatures).
    provider_context: str | None = None

    def arguments(self) -> Any:
        """Decode the JSON argument payload."""
        return json.loads(self.arguments_json) if self.arguments_json else {}


@dataclass(frozen=True)
class ToolResult:
    """The caller-supplied result of a tool call."""

    call_id: str
    result_payload: str


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    Content is plain text, proposed tool calls (assistant only) or a tool
    result (tool role only). An assistant turn may carry text and several
    calls together; calls keep the order the model proposed them in.
    """

    role: Role
    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_result: ToolResult | None = None

    def __post_init__(self) -> None:
        """Normalize and validate the content shape for the role."""
        object.__setattr__(self, "role", Role(self.role))
        object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise InvalidRequestError(
                f"Only assistant messages may propose tool calls (got {self.role})"
            )
        if self.role is Role.TOOL:
            if self.tool_result is None:
                raise InvalidRequestError(
                    "Tool messages must carry a tool result",
                    hint="Use Message.tool(call_id, payload).",
                )
            if self.text:
                raise InvalidRequestError("Tool messages cannot carry plain text")
        elif self.tool_result is not None:
            raise InvalidRequestError(
                f"Only tool messages may carry a tool result (got {self.role})"
            )

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, text=text)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(Role.USER, text=text)

    @classmethod
    def assistant(cls, text: str = "", tool_calls: Iterable[ToolCall] = ()) -> Message:
        return cls(Role.ASSISTANT, text=text, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, call_id: str, result_payload: str) -> Message:
        return cls(Role.TOOL, tool_result=ToolResult(call_id, result_payload))


@dataclass(frozen=True)
class ToolSpec:
    """A callable tool the model may invoke."""

    name: str
    json_schema: Mapping[str, Any] = field(
        default_factory=lambda: DEFAULT_PARAMETERS
    )
    description: str = ""

    def __post_init__(self) -> None:
        """Reject nameless tools and substitute the default schema."""
        if not self.name:
            raise InvalidRequestError("ToolSpec.name must be non-empty")
        if not self.json_schema:
            object.__setattr__(self, "json_schema", DEFAULT_PARAMETERS)

    def parameters(self) -> dict[str, Any]:
        """Return a plain-dict copy of the schema for wire encoding."""
        return json.loads(json.dumps(dict(self.json_schema)))


@dataclass(frozen=True)
class SamplingParams:
    """Generation parameters. ``None`` means "provider default"."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] = ()
    json_mode: bool = False

    def __post_init__(self) -> None:
        """Normalize stop sequences and validate numeric ranges."""
        object.__setattr__(self, "stop", tuple(self.stop))
        if self.max_tokens is not None and self.max_tokens < 1:
            raise InvalidRequestError(
                f"max_tokens must be >= 1, got {self.max_tokens}"
            )
        if self.temperature is not None and self.temperature < 0:
            raise InvalidRequestError(
                f"temperature must be >= 0, got {self.temperature}"
            )
        if self.top_p is not None and not 0 < self.top_p <= 1:
            raise InvalidRequestError(f"top_p must be in (0, 1], got {self.top_p}")


@dataclass(frozen=True)
class Request:
    """A complete, immutable model request."""

    model: ModelId
    messages: tuple[Message, ...]
    tools: tuple[ToolSpec, ...] = ()
    sampling: SamplingParams = field(default_factory=SamplingParams)
    stream: bool = False

    def __post_init__(self) -> None:
        """Freeze sequences and reject duplicate tool names."""
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "tools", tuple(self.tools))
        names = [t.name for t in self.tools]
        if len(names) != len(set(names)):
            raise InvalidRequestError(
                "Tool names must be unique within a request",
                hint=f"Got: {', '.join(sorted(names))}",
            )


@dataclass(frozen=True)
class Usage:
    """Token accounting for one response."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Response:
    """A completed model reply."""

    message: Message
    finish_reason: FinishReason
    usage: Usage = field(default_factory=Usage)

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return self.message.tool_calls


# --- Stream events ---


@dataclass(frozen=True)
class TextDelta:
    """Incremental assistant text."""

    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """An argument fragment for one tool call, keyed by ``call_id``."""

    call_id: str
    arguments_fragment: str = ""
    name: str | None = None
    provider_context: str | None = None


@dataclass(frozen=True)
class Finished:
    """Terminal success event."""

    finish_reason: FinishReason
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class Failed:
    """Terminal failure event."""

    error: LlmError


StreamEvent = TextDelta | ToolCallDelta | Finished | Failed
