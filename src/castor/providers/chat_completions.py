"""OpenAI-compatible Chat Completions adapter (Mistral, xAI, PublicAI).

The three providers share one wire shape with small differences, captured by
constructor flags rather than subclasses: extra headers, whether tools are
accepted, and whether usage must be requested explicitly on streams.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from castor.errors import ErrorKind, UnsupportedError
from castor.models import (
    Failed,
    Finished,
    FinishReason,
    Message,
    Response,
    Role,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    Usage,
)
from castor.providers._errors import (
    error_from_status,
    error_from_stream,
    kind_for_status,
)
from castor.providers._utils import (
    as_int,
    conversation,
    normalize_finish_reason,
    system_text,
    usage_from,
)
from castor.providers.base import SSEStreamParser
from castor.registry import ProviderFamily
from castor.tool_calls import canonical_arguments
from castor.transport import WireRequest

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.errors import LlmError
    from castor.models import Request, StreamEvent
    from castor.sse import SSEFrame

#: PublicAI rejects requests without a product User-Agent.
USER_AGENT = "castor-llm/1.0"

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "end_turn": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "model_length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALL,
    "function_call": FinishReason.TOOL_CALL,
    "content_filter": FinishReason.CONTENT_FILTER,
}

_ERROR_CODES: dict[str, ErrorKind] = {
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "server_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "service_unavailable": ErrorKind.PROVIDER_UNAVAILABLE,
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
    "context_length_exceeded": ErrorKind.INVALID_REQUEST,
    "invalid_api_key": ErrorKind.AUTH,
    "authentication_error": ErrorKind.AUTH,
}


class ChatCompletionsAdapter:
    """Translate canonical requests to and from ``/v1/chat/completions``."""

    def __init__(
        self,
        family: ProviderFamily,
        *,
        headers: Mapping[str, str] | None = None,
        supports_tools: bool = True,
        stream_usage_option: bool = True,
    ) -> None:
        """Configure the provider-specific variations of the wire shape.

        Args:
            family: Provider family the requests are addressed to.
            headers: Extra headers sent with every request.
            supports_tools: When False, requests carrying tools are refused
                before anything is sent.
            stream_usage_option: Send ``stream_options.include_usage`` on
                streams. Mistral reports usage on its final chunk unasked.
        """
        self.family = family
        self._headers = dict(headers or {})
        self._supports_tools = supports_tools
        self._stream_usage_option = stream_usage_option

    def translate_request(self, request: Request) -> WireRequest:
        """Build a Chat Completions request body."""
        if request.tools and not self._supports_tools:
            raise UnsupportedError(
                f"{self.family.value} does not accept tool definitions",
                hint="Remove tools from the request or pick a tool-capable model.",
                provider=self.family.value,
            )

        body: dict[str, Any] = {
            "model": request.model.value,
            "messages": _build_messages(request.messages),
        }
        sampling = request.sampling
        if sampling.temperature is not None:
            body["temperature"] = sampling.temperature
        if sampling.top_p is not None:
            body["top_p"] = sampling.top_p
        if sampling.max_tokens is not None:
            body["max_tokens"] = sampling.max_tokens
        if sampling.stop:
            body["stop"] = list(sampling.stop)
        if sampling.json_mode:
            body["response_format"] = {"type": "json_object"}
        if request.tools:
            tools = []
            for tool in request.tools:
                function: dict[str, Any] = {
                    "name": tool.name,
                    "parameters": tool.parameters(),
                }
                if tool.description:
                    function["description"] = tool.description
                tools.append({"type": "function", "function": function})
            body["tools"] = tools
        if request.stream:
            body["stream"] = True
            if self._stream_usage_option:
                body["stream_options"] = {"include_usage": True}

        return WireRequest(
            provider=self.family,
            path="/v1/chat/completions",
            body=body,
            stream=request.stream,
            headers=dict(self._headers),
        )

    def parse_response(self, payload: Mapping[str, Any]) -> Response:
        """Parse a complete chat completion."""
        choices = payload.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}

        tool_calls = tuple(
            ToolCall(
                call_id=call["id"],
                tool_name=call["function"]["name"],
                arguments_json=canonical_arguments(
                    call["function"].get("arguments") or "{}"
                ),
            )
            for call in message.get("tool_calls") or []
        )
        return Response(
            message=Message(
                Role.ASSISTANT,
                text=_content_text(message.get("content")),
                tool_calls=tool_calls,
            ),
            finish_reason=normalize_finish_reason(
                self.family, choice.get("finish_reason"), _FINISH_REASONS
            ),
            usage=usage_from(
                payload.get("usage"), "prompt_tokens", "completion_tokens"
            ),
        )

    def stream_parser(self) -> ChatCompletionsStreamParser:
        return ChatCompletionsStreamParser(self.family)

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str]
    ) -> LlmError:
        return error_from_status(self.family, status_code, body, headers)


class ChatCompletionsStreamParser(SSEStreamParser):
    """Incremental parser for ``chat.completion.chunk`` streams.

    Tool-call deltas are keyed by ``index``; only the first delta of a call
    carries its ``id`` and name. Fragments seen before the id are held back
    until it arrives.
    """

    def __init__(self, family: ProviderFamily) -> None:
        """Start an empty parse for *family*."""
        super().__init__()
        self.family = family
        self._call_ids: dict[int, str] = {}
        self._pending: dict[int, list[str]] = {}
        self._finish_reason: str | None = None
        self._usage = Usage()

    def handle_frame(self, frame: SSEFrame) -> list[StreamEvent]:
        if frame.is_done:
            return self._finish()

        data = frame.json()
        if data.get("error"):
            return [Failed(self._stream_error(data["error"]))]

        if isinstance(data.get("usage"), dict):
            self._usage = usage_from(
                data["usage"], "prompt_tokens", "completion_tokens"
            )

        events: list[StreamEvent] = []
        for choice in (data.get("choices") or [])[:1]:
            delta = choice.get("delta") or {}
            text = _content_text(delta.get("content"))
            if text:
                events.append(TextDelta(text))
            for call_delta in delta.get("tool_calls") or []:
                events.extend(self._tool_call_delta(call_delta))
            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]
        return events

    def handle_end(self) -> list[StreamEvent]:
        # Some providers close the connection without sending [DONE].
        if self._finish_reason is None:
            return []
        return self._finish()

    def _finish(self) -> list[StreamEvent]:
        if self._pending:
            indices = ", ".join(str(i) for i in sorted(self._pending))
            message = f"tool call fragments without an id ({indices})"
            return [self.protocol_error(message)]
        if self._finish_reason is None:
            return [self.protocol_error("stream ended without a finish_reason")]
        reason = normalize_finish_reason(
            self.family, self._finish_reason, _FINISH_REASONS
        )
        return [Finished(reason, self._usage)]

    def _tool_call_delta(self, delta: Mapping[str, Any]) -> list[StreamEvent]:
        index = as_int(delta.get("index"))
        function = delta.get("function") or {}
        fragment = function.get("arguments") or ""
        call_id = delta.get("id")

        events: list[StreamEvent] = []
        if call_id and self._call_ids.get(index) != call_id:
            # A new id at a known index starts a new call (Mistral reuses 0).
            self._call_ids[index] = call_id
            events.append(ToolCallDelta(call_id, name=function.get("name")))
            fragment = "".join(self._pending.pop(index, [])) + fragment
        elif index not in self._call_ids:
            self._pending.setdefault(index, []).append(fragment)
            return []

        if fragment:
            events.append(ToolCallDelta(self._call_ids[index], fragment))
        return events

    def _stream_error(self, error: Any) -> LlmError:
        if not isinstance(error, dict):
            return error_from_stream(self.family, ErrorKind.UNKNOWN, str(error))
        code = error.get("code")
        if isinstance(code, int):
            kind = kind_for_status(code)
        else:
            kind = _ERROR_CODES.get(str(code or error.get("type")), ErrorKind.UNKNOWN)
        message = str(error.get("message") or code or "unknown error")
        return error_from_stream(
            self.family,
            kind,
            message,
            status_code=code if isinstance(code, int) else None,
        )


def _content_text(content: Any) -> str:
    """Return the visible text of a message or delta ``content``.

    Magistral models send a list of typed blocks and interleave ``thinking``
    blocks with ``text`` blocks; only ``text`` is surfaced.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _build_messages(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    """Encode the conversation with system text folded into one leading turn."""
    wire: list[dict[str, Any]] = []
    system = system_text(messages)
    if system:
        wire.append({"role": "system", "content": system})

    for message in conversation(messages):
        if message.role is Role.TOOL and (result := message.tool_result):
            wire.append(
                {
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": result.result_payload,
                }
            )
        elif message.role is Role.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant"}
            if message.text or not message.tool_calls:
                entry["content"] = message.text
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": call.arguments_json,
                        },
                    }
                    for call in message.tool_calls
                ]
            wire.append(entry)
        else:
            wire.append({"role": "user", "content": message.text})
    return wire


def mistral_adapter() -> ChatCompletionsAdapter:
    return ChatCompletionsAdapter(ProviderFamily.MISTRAL, stream_usage_option=False)


def xai_adapter() -> ChatCompletionsAdapter:
    return ChatCompletionsAdapter(ProviderFamily.XAI)


def publicai_adapter() -> ChatCompletionsAdapter:
    return ChatCompletionsAdapter(
        ProviderFamily.PUBLICAI,
        headers={"User-Agent": USER_AGENT},
        supports_tools=False,
    )
