"""Google Gemini (Generative Language API) adapter.

Gemini has no separate opaque call id on older models, so when a
``functionCall`` part carries no ``id`` one is synthesized from its position
in the reply and the function name. Streamed and complete replies number
calls the same way, so both paths agree on ids. Tool results are sent back
keyed by the function *name*, recovered from the proposing assistant turn.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from castor.errors import ErrorKind, InvalidRequestError, MalformedToolCallError
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
from castor.tool_calls import canonical_arguments, proposed_tool_names
from castor.transport import WireRequest

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.errors import LlmError
    from castor.models import Request, StreamEvent
    from castor.sse import SSEFrame

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": FinishReason.STOP,
    "FINISH_REASON_UNSPECIFIED": FinishReason.STOP,
    "OTHER": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
    "IMAGE_SAFETY": FinishReason.CONTENT_FILTER,
    "LANGUAGE": FinishReason.CONTENT_FILTER,
}
_MALFORMED_CALL = "MALFORMED_FUNCTION_CALL"

# google.rpc status names, as used by Gemini error bodies.
_STATUS_KINDS: dict[str, ErrorKind] = {
    "INVALID_ARGUMENT": ErrorKind.INVALID_REQUEST,
    "FAILED_PRECONDITION": ErrorKind.INVALID_REQUEST,
    "NOT_FOUND": ErrorKind.INVALID_REQUEST,
    "OUT_OF_RANGE": ErrorKind.INVALID_REQUEST,
    "UNAUTHENTICATED": ErrorKind.AUTH,
    "PERMISSION_DENIED": ErrorKind.AUTH,
    "RESOURCE_EXHAUSTED": ErrorKind.RATE_LIMITED,
    "UNAVAILABLE": ErrorKind.PROVIDER_UNAVAILABLE,
    "INTERNAL": ErrorKind.PROVIDER_UNAVAILABLE,
    "DEADLINE_EXCEEDED": ErrorKind.TIMEOUT,
}


class GeminiAdapter:
    """Translate canonical requests to and from ``generateContent``."""

    family = ProviderFamily.GOOGLE

    def translate_request(self, request: Request) -> WireRequest:
        """Build a ``generateContent`` or ``streamGenerateContent`` request."""
        body: dict[str, Any] = {"contents": _build_contents(request.messages)}

        system = system_text(request.messages)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        generation_config: dict[str, Any] = {}
        sampling = request.sampling
        if sampling.temperature is not None:
            generation_config["temperature"] = sampling.temperature
        if sampling.top_p is not None:
            generation_config["topP"] = sampling.top_p
        if sampling.max_tokens is not None:
            generation_config["maxOutputTokens"] = sampling.max_tokens
        if sampling.stop:
            generation_config["stopSequences"] = list(sampling.stop)
        if sampling.json_mode:
            generation_config["responseMimeType"] = "application/json"
        if generation_config:
            body["generationConfig"] = generation_config

        if request.tools:
            declarations = []
            for tool in request.tools:
                declaration: dict[str, Any] = {
                    "name": tool.name,
                    "parameters": tool.parameters(),
                }
                if tool.description:
                    declaration["description"] = tool.description
                declarations.append(declaration)
            body["tools"] = [{"functionDeclarations": declarations}]

        model = request.model.value
        path = (
            f"/v1beta/models/{model}:streamGenerateContent?alt=sse"
            if request.stream
            else f"/v1beta/models/{model}:generateContent"
        )
        return WireRequest(
            provider=self.family, path=path, body=body, stream=request.stream
        )

    def parse_response(self, payload: Mapping[str, Any]) -> Response:
        """Parse a complete GenerateContentResponse."""
        candidate = _first_candidate(payload)
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in _candidate_parts(candidate):
            if "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(
                    ToolCall(
                        call_id=_call_id(call, len(tool_calls)),
                        tool_name=call["name"],
                        arguments_json=canonical_arguments(call.get("args") or {}),
                        provider_context=part.get("thoughtSignature"),
                    )
                )
            elif isinstance(part.get("text"), str) and not part.get("thought"):
                text_parts.append(part["text"])

        raw_reason = candidate.get("finishReason") if candidate else None
        if raw_reason == _MALFORMED_CALL:
            raise _malformed_call_error(candidate)

        return Response(
            message=Message(
                Role.ASSISTANT, text="".join(text_parts), tool_calls=tuple(tool_calls)
            ),
            finish_reason=_finish_reason(payload, raw_reason, bool(tool_calls)),
            usage=_usage(payload),
        )

    def stream_parser(self) -> GeminiStreamParser:
        return GeminiStreamParser()

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str]
    ) -> LlmError:
        """Map an error reply using the google.rpc status when present."""
        kind: ErrorKind | None = None
        try:
            error = json.loads(body).get("error") if body else None
        except (ValueError, AttributeError):
            error = None
        if isinstance(error, dict):
            kind = _STATUS_KINDS.get(str(error.get("status")))
        return error_from_status(self.family, status_code, body, headers, kind=kind)


class GeminiStreamParser(SSEStreamParser):
    """Incremental parser for ``streamGenerateContent?alt=sse``.

    Every frame is a complete GenerateContentResponse slice; function calls
    arrive whole, never split across frames. There is no end-of-stream
    marker, so the reply is finished when the connection closes after a
    frame carried ``finishReason``.
    """

    family = ProviderFamily.GOOGLE

    def __init__(self) -> None:
        """Start with no calls seen and empty usage."""
        super().__init__()
        self._call_count = 0
        self._finish_reason: str | None = None
        self._usage = Usage()
        self._blocked = False

    def handle_frame(self, frame: SSEFrame) -> list[StreamEvent]:
        data = frame.json()

        error = data.get("error")
        if isinstance(error, dict):
            return [Failed(_stream_error(error))]

        if isinstance(data.get("usageMetadata"), dict):
            self._usage = _usage(data)

        candidate = _first_candidate(data)
        if candidate is None:
            if (data.get("promptFeedback") or {}).get("blockReason"):
                self._blocked = True
            return []

        events: list[StreamEvent] = []
        for part in _candidate_parts(candidate):
            if "functionCall" in part:
                call = part["functionCall"]
                call_id = _call_id(call, self._call_count)
                self._call_count += 1
                events.append(
                    ToolCallDelta(
                        call_id,
                        json.dumps(call.get("args") or {}),
                        name=call["name"],
                        provider_context=part.get("thoughtSignature"),
                    )
                )
            elif part.get("text") and not part.get("thought"):
                events.append(TextDelta(part["text"]))

        reason = candidate.get("finishReason")
        if reason == _MALFORMED_CALL:
            events.append(Failed(_malformed_call_error(candidate)))
        elif reason:
            self._finish_reason = reason
        return events

    def handle_end(self) -> list[StreamEvent]:
        if self._blocked:
            return [Finished(FinishReason.CONTENT_FILTER, self._usage)]
        if self._finish_reason is None:
            return []
        reason = normalize_finish_reason(
            self.family, self._finish_reason, _FINISH_REASONS
        )
        if reason is FinishReason.STOP and self._call_count:
            reason = FinishReason.TOOL_CALL
        return [Finished(reason, self._usage)]


def _call_id(call: Mapping[str, Any], position: int) -> str:
    call_id = call.get("id")
    if isinstance(call_id, str) and call_id:
        return call_id
    return f"call_{position}_{call['name']}"


def _first_candidate(payload: Mapping[str, Any]) -> Mapping[str, Any] | None:
    candidates = payload.get("candidates")
    if isinstance(candidates, list) and candidates:
        return candidates[0]
    return None


def _candidate_parts(candidate: Mapping[str, Any] | None) -> list[Mapping[str, Any]]:
    if candidate is None:
        return []
    content = candidate.get("content") or {}
    return list(content.get("parts") or [])


def _finish_reason(
    payload: Mapping[str, Any], raw_reason: Any, has_calls: bool
) -> FinishReason:
    if raw_reason is None and (payload.get("promptFeedback") or {}).get(
        "blockReason"
    ):
        return FinishReason.CONTENT_FILTER
    reason = normalize_finish_reason(ProviderFamily.GOOGLE, raw_reason, _FINISH_REASONS)
    # Gemini reports STOP for replies that end in function calls.
    if reason is FinishReason.STOP and has_calls:
        return FinishReason.TOOL_CALL
    return reason


def _usage(payload: Mapping[str, Any]) -> Usage:
    return usage_from(
        payload.get("usageMetadata"),
        "promptTokenCount",
        "candidatesTokenCount",
        "thoughtsTokenCount",
    )


def _malformed_call_error(
    candidate: Mapping[str, Any] | None,
) -> MalformedToolCallError:
    detail = (candidate or {}).get("finishMessage") or "model emitted a malformed call"
    return MalformedToolCallError(
        f"google reported a malformed function call: {detail}",
        provider=ProviderFamily.GOOGLE.value,
        phase="stream",
    )


def _stream_error(error: Mapping[str, Any]) -> LlmError:
    code = as_int(error.get("code")) or None
    kind = _STATUS_KINDS.get(str(error.get("status")))
    if kind is None:
        kind = kind_for_status(code) if code else ErrorKind.UNKNOWN
    message = str(error.get("message") or error.get("status") or "unknown error")
    return error_from_stream(ProviderFamily.GOOGLE, kind, message, status_code=code)


def _function_response(payload: str) -> dict[str, Any]:
    """Gemini requires an object; non-object results are wrapped."""
    try:
        decoded = json.loads(payload)
    except ValueError:
        decoded = payload
    if isinstance(decoded, dict):
        return decoded
    return {"output": decoded}


def _build_contents(messages: tuple[Message, ...]) -> list[dict[str, Any]]:
    """Encode turns as ``user``/``model`` contents, merging adjacent roles."""
    names = proposed_tool_names(messages)
    contents: list[dict[str, Any]] = []

    def append(role: str, parts: list[dict[str, Any]]) -> None:
        if not parts:
            return
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})

    for message in conversation(messages):
        if message.role is Role.TOOL and (result := message.tool_result):
            name = names.get(result.call_id)
            if name is None:
                raise InvalidRequestError(
                    f"Tool result {result.call_id!r} answers no proposed call",
                    hint="Gemini matches results to calls by function name.",
                )
            append(
                "user",
                [
                    {
                        "functionResponse": {
                            "name": name,
                            "response": _function_response(result.result_payload),
                        }
                    }
                ],
            )
        elif message.role is Role.ASSISTANT:
            parts: list[dict[str, Any]] = []
            if message.text:
                parts.append({"text": message.text})
            for call in message.tool_calls:
                part: dict[str, Any] = {
                    "functionCall": {"name": call.tool_name, "args": call.arguments()}
                }
                if call.provider_context is not None:
                    part["thoughtSignature"] = call.provider_context
                parts.append(part)
            append("model", parts)
        else:
            append("user", [{"text": message.text}])
    return contents
