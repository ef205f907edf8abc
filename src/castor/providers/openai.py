"""OpenAI Responses API adapter.

The Responses API keys streamed argument deltas by output *item* id, while
callers correlate results by ``call_id``; the parser maps one to the other
from ``response.output_item.added`` and holds back deltas that arrive first.
"""

from __future__ import annotations

from collections import defaultdict
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
)
from castor.providers._errors import error_from_status, error_from_stream
from castor.providers._utils import (
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
    from castor.models import Request, StreamEvent, Usage
    from castor.sse import SSEFrame

_INCOMPLETE_REASONS: dict[str, FinishReason] = {
    "max_output_tokens": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}

_ERROR_CODES: dict[str, ErrorKind] = {
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "insufficient_quota": ErrorKind.RATE_LIMITED,
    "server_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "server_is_overloaded": ErrorKind.PROVIDER_UNAVAILABLE,
    "invalid_prompt": ErrorKind.INVALID_REQUEST,
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
    "context_length_exceeded": ErrorKind.INVALID_REQUEST,
    "invalid_api_key": ErrorKind.AUTH,
}


class OpenAIAdapter:
    """Translate canonical requests to and from ``/v1/responses``."""

    family = ProviderFamily.OPENAI

    def translate_request(self, request: Request) -> WireRequest:
        """Build a Responses API request body.

        Raises:
            UnsupportedError: When stop sequences are requested; the Responses
                API has no equivalent.
        """
        sampling = request.sampling
        if sampling.stop:
            raise UnsupportedError(
                "OpenAI Responses API does not support stop sequences",
                hint="Drop SamplingParams.stop or truncate the text client-side.",
                provider=self.family.value,
            )

        body: dict[str, Any] = {
            "model": request.model.value,
            "input": _build_input(request.messages),
        }
        system = system_text(request.messages)
        if system:
            body["instructions"] = system
        if sampling.temperature is not None:
            body["temperature"] = sampling.temperature
        if sampling.top_p is not None:
            body["top_p"] = sampling.top_p
        if sampling.max_tokens is not None:
            body["max_output_tokens"] = sampling.max_tokens
        if sampling.json_mode:
            body["text"] = {"format": {"type": "json_object"}}
        if request.tools:
            tools = []
            for tool in request.tools:
                tool_def: dict[str, Any] = {
                    "type": "function",
                    "name": tool.name,
                    "parameters": tool.parameters(),
                    "strict": False,
                }
                if tool.description:
                    tool_def["description"] = tool.description
                tools.append(tool_def)
            body["tools"] = tools
        if request.stream:
            body["stream"] = True

        return WireRequest(
            provider=self.family, path="/v1/responses", body=body, stream=request.stream
        )

    def parse_response(self, payload: Mapping[str, Any]) -> Response:
        """Parse a complete Response object."""
        if payload.get("status") == "failed":
            raise _response_error(payload)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for item in payload.get("output") or []:
            item_type = item.get("type")
            if item_type == "message":
                for content in item.get("content") or []:
                    if content.get("type") == "output_text":
                        text_parts.append(content.get("text", ""))
            elif item_type == "function_call":
                tool_calls.append(
                    ToolCall(
                        call_id=item["call_id"],
                        tool_name=item["name"],
                        arguments_json=canonical_arguments(
                            item.get("arguments") or "{}"
                        ),
                    )
                )

        return Response(
            message=Message(
                Role.ASSISTANT, text="".join(text_parts), tool_calls=tuple(tool_calls)
            ),
            finish_reason=_finish_reason(payload, has_calls=bool(tool_calls)),
            usage=_usage(payload),
        )

    def stream_parser(self) -> OpenAIStreamParser:
        return OpenAIStreamParser()

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str]
    ) -> LlmError:
        return error_from_status(self.family, status_code, body, headers)


class OpenAIStreamParser(SSEStreamParser):
    """Incremental parser for Responses API streaming events."""

    family = ProviderFamily.OPENAI

    def __init__(self) -> None:
        """Start with no output items registered."""
        super().__init__()
        self._call_ids: dict[str, str] = {}
        self._pending: defaultdict[str, list[str]] = defaultdict(list)

    def handle_frame(self, frame: SSEFrame) -> list[StreamEvent]:
        if frame.is_done:
            return []
        data = frame.json()
        event_type = data.get("type") or frame.event

        if event_type == "response.output_text.delta":
            delta = data.get("delta", "")
            return [TextDelta(delta)] if delta else []

        if event_type == "response.output_item.added":
            return self._item_added(data.get("item") or {})

        if event_type == "response.function_call_arguments.delta":
            item_id = str(data.get("item_id"))
            fragment = data.get("delta", "")
            call_id = self._call_ids.get(item_id)
            if call_id is None:
                self._pending[item_id].append(fragment)
                return []
            return [ToolCallDelta(call_id, fragment)] if fragment else []

        if event_type in ("response.completed", "response.incomplete"):
            if self._pending:
                orphans = ", ".join(sorted(self._pending))
                return [self.protocol_error(f"arguments for unknown items {orphans}")]
            response = data.get("response") or {}
            return [
                Finished(
                    _finish_reason(response, has_calls=bool(self._call_ids)),
                    _usage(response),
                )
            ]

        if event_type == "response.failed":
            return [Failed(_response_error(data.get("response") or {}))]

        if event_type == "error":
            code = str(data.get("code") or "")
            kind = _ERROR_CODES.get(code, ErrorKind.UNKNOWN)
            message = str(data.get("message") or code or "unknown error")
            return [Failed(error_from_stream(self.family, kind, message))]

        # Lifecycle, reasoning and *.done events repeat what the deltas said.
        return []

    def _item_added(self, item: Mapping[str, Any]) -> list[StreamEvent]:
        if item.get("type") != "function_call":
            return []
        call_id = item["call_id"]
        item_id = str(item.get("id") or call_id)
        self._call_ids[item_id] = call_id
        events: list[StreamEvent] = [ToolCallDelta(call_id, name=item["name"])]
        buffered = "".join(self._pending.pop(item_id, []))
        initial = item.get("arguments") or ""
        if initial or buffered:
            events.append(ToolCallDelta(call_id, initial + buffered))
        return events


def _finish_reason(response: Mapping[str, Any], *, has_calls: bool) -> FinishReason:
    status = response.get("status")
    if status == "incomplete":
        details = response.get("incomplete_details") or {}
        return normalize_finish_reason(
            ProviderFamily.OPENAI, details.get("reason"), _INCOMPLETE_REASONS
        )
    if has_calls:
        return FinishReason.TOOL_CALL
    return FinishReason.STOP


def _usage(response: Mapping[str, Any]) -> Usage:
    return usage_from(response.get("usage"), "input_tokens", "output_tokens")


def _response_error(response: Mapping[str, Any]) -> LlmError:
    error = response.get("error") or {}
    code = str(error.get("code") or "")
    message = str(error.get("message") or code or "response failed")
    return error_from_stream(
        ProviderFamily.OPENAI, _ERROR_CODES.get(code, ErrorKind.UNKNOWN), message
    )


def _build_input(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    """Encode turns as Responses input items."""
    items: list[dict[str, Any]] = []
    for message in conversation(messages):
        if message.role is Role.TOOL and (result := message.tool_result):
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": result.call_id,
                    "output": result.result_payload,
                }
            )
            continue

        if message.text or not message.tool_calls:
            text_type = (
                "output_text" if message.role is Role.ASSISTANT else "input_text"
            )
            items.append(
                {
                    "role": message.role.value,
                    "content": [{"type": text_type, "text": message.text}],
                }
            )
        for call in message.tool_calls:
            items.append(
                {
                    "type": "function_call",
                    "call_id": call.call_id,
                    "name": call.tool_name,
                    "arguments": call.arguments_json,
                }
            )
    return items
