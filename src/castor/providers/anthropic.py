"""Anthropic Messages API adapter."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from castor.errors import ErrorKind
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
from castor.providers._errors import error_from_status, error_from_stream
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
    from castor.models import Request, StreamEvent, ToolSpec
    from castor.sse import SSEFrame

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_ANTHROPIC_MAX_TOKENS = 8192
_JSON_MODE_INSTRUCTION = (
    "Respond with a single valid JSON value and nothing else: "
    "no prose, no code fences."
)

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "model_context_window_exceeded": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALL,
    "refusal": FinishReason.CONTENT_FILTER,
}

# Anthropic error ``type`` values, as sent in bodies and in-stream error events.
_ERROR_TYPES: dict[str, ErrorKind] = {
    "invalid_request_error": ErrorKind.INVALID_REQUEST,
    "not_found_error": ErrorKind.INVALID_REQUEST,
    "request_too_large": ErrorKind.INVALID_REQUEST,
    "authentication_error": ErrorKind.AUTH,
    "permission_error": ErrorKind.AUTH,
    "rate_limit_error": ErrorKind.RATE_LIMITED,
    "api_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "overloaded_error": ErrorKind.PROVIDER_UNAVAILABLE,
    "timeout_error": ErrorKind.TIMEOUT,
}


class AnthropicAdapter:
    """Translate canonical requests to and from the Messages API."""

    family = ProviderFamily.ANTHROPIC

    def translate_request(self, request: Request) -> WireRequest:
        """Build a ``/v1/messages`` request body."""
        sampling = request.sampling
        body: dict[str, Any] = {
            "model": request.model.value,
            "max_tokens": sampling.max_tokens or _ANTHROPIC_MAX_TOKENS,
            "messages": _build_messages(request.messages),
        }

        system = system_text(request.messages)
        if sampling.json_mode:
            system = "\n\n".join(filter(None, (system, _JSON_MODE_INSTRUCTION)))
        if system:
            body["system"] = system
        if sampling.temperature is not None:
            body["temperature"] = sampling.temperature
        if sampling.top_p is not None:
            body["top_p"] = sampling.top_p
        if sampling.stop:
            body["stop_sequences"] = list(sampling.stop)
        if request.tools:
            body["tools"] = [_tool_definition(t) for t in request.tools]
        if request.stream:
            body["stream"] = True

        return WireRequest(
            provider=self.family,
            path="/v1/messages",
            body=body,
            stream=request.stream,
            headers={"anthropic-version": ANTHROPIC_VERSION},
        )

    def parse_response(self, payload: Mapping[str, Any]) -> Response:
        """Parse a complete Messages API reply."""
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in payload.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                text_parts.append(block.get("text", ""))
            elif block_type == "tool_use":
                tool_calls.append(
                    ToolCall(
                        call_id=block["id"],
                        tool_name=block["name"],
                        arguments_json=canonical_arguments(block.get("input") or {}),
                    )
                )

        return Response(
            message=Message(
                Role.ASSISTANT, text="".join(text_parts), tool_calls=tuple(tool_calls)
            ),
            finish_reason=normalize_finish_reason(
                self.family, payload.get("stop_reason"), _STOP_REASONS
            ),
            usage=usage_from(payload.get("usage"), "input_tokens", "output_tokens"),
        )

    def stream_parser(self) -> AnthropicStreamParser:
        return AnthropicStreamParser()

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str]
    ) -> LlmError:
        """Map an error reply, preferring the body's error type over the status."""
        kind: ErrorKind | None = None
        try:
            error = json.loads(body).get("error") if body else None
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            kind = _ERROR_TYPES.get(str(error.get("type")))
        return error_from_status(self.family, status_code, body, headers, kind=kind)


class AnthropicStreamParser(SSEStreamParser):
    """Incremental parser for Messages API server-sent events.

    Content blocks are addressed by index; tool-use blocks announce their id
    and name in ``content_block_start`` and stream arguments as
    ``input_json_delta`` fragments.
    """

    family = ProviderFamily.ANTHROPIC

    def __init__(self) -> None:
        """Start with no blocks and zero usage."""
        super().__init__()
        self._tool_blocks: dict[int, str] = {}
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._stop_reason: str | None = None

    def handle_frame(self, frame: SSEFrame) -> list[StreamEvent]:
        data = frame.json()
        event_type = data.get("type") or frame.event

        if event_type == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self._prompt_tokens = as_int(usage.get("input_tokens"))
            self._completion_tokens = as_int(usage.get("output_tokens"))
            return []

        if event_type == "content_block_start":
            return self._block_start(data)

        if event_type == "content_block_delta":
            return self._block_delta(data)

        if event_type == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason") is not None:
                self._stop_reason = delta["stop_reason"]
            usage = data.get("usage") or {}
            if "output_tokens" in usage:
                self._completion_tokens = as_int(usage["output_tokens"])
            if "input_tokens" in usage and usage["input_tokens"] is not None:
                self._prompt_tokens = as_int(usage["input_tokens"])
            return []

        if event_type == "message_stop":
            return [
                Finished(
                    normalize_finish_reason(
                        self.family, self._stop_reason, _STOP_REASONS
                    ),
                    Usage(self._prompt_tokens, self._completion_tokens),
                )
            ]

        if event_type == "error":
            error = data.get("error") or {}
            kind = _ERROR_TYPES.get(str(error.get("type")), ErrorKind.UNKNOWN)
            message = str(error.get("message") or error.get("type") or "unknown error")
            return [Failed(error_from_stream(self.family, kind, message))]

        # ping, content_block_stop and future event types carry nothing for us.
        return []

    def _block_start(self, data: Mapping[str, Any]) -> list[StreamEvent]:
        index = as_int(data.get("index"))
        block = data.get("content_block") or {}
        block_type = block.get("type")
        if block_type == "tool_use":
            call_id = block["id"]
            self._tool_blocks[index] = call_id
            events: list[StreamEvent] = [ToolCallDelta(call_id, name=block["name"])]
            # Non-empty input at block start is unusual but complete.
            initial = block.get("input")
            if initial:
                events.append(ToolCallDelta(call_id, json.dumps(initial)))
            return events
        if block_type == "text" and block.get("text"):
            return [TextDelta(block["text"])]
        return []

    def _block_delta(self, data: Mapping[str, Any]) -> list[StreamEvent]:
        delta = data.get("delta") or {}
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            text = delta.get("text", "")
            return [TextDelta(text)] if text else []
        if delta_type == "input_json_delta":
            index = as_int(data.get("index"))
            call_id = self._tool_blocks.get(index)
            if call_id is None:
                return [
                    self.protocol_error(f"input_json_delta for unknown block {index}")
                ]
            fragment = delta.get("partial_json", "")
            return [ToolCallDelta(call_id, fragment)] if fragment else []
        # thinking_delta and signature_delta are not surfaced.
        logger.debug("Ignoring Anthropic delta type %r", delta_type)
        return []


def _tool_definition(tool: ToolSpec) -> dict[str, Any]:
    definition: dict[str, Any] = {"name": tool.name, "input_schema": tool.parameters()}
    if tool.description:
        definition["description"] = tool.description
    return definition


def _build_messages(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    """Encode the non-system turns with strict user/assistant alternation."""
    wire: list[dict[str, Any]] = []
    for message in conversation(messages):
        if message.role is Role.TOOL and (result := message.tool_result):
            _append_message(
                wire,
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": result.call_id,
                            "content": result.result_payload,
                        }
                    ],
                },
            )
        elif message.role is Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if message.text:
                blocks.append({"type": "text", "text": message.text})
            for call in message.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.call_id,
                        "name": call.tool_name,
                        "input": call.arguments(),
                    }
                )
            if blocks:
                _append_message(wire, {"role": "assistant", "content": blocks})
        else:
            _append_message(wire, {"role": "user", "content": message.text})
    return wire


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match.

    Anthropic requires strict user/assistant alternation, so a tool result
    followed by a user prompt (or two assistant turns) becomes one message.
    """
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)
