"""Stream aggregation: live events in, one canonical Response out.

Each in-flight streaming request owns one :class:`StreamAggregator`. Every
event is forwarded to the live consumer and folded into a response builder.
The aggregator never reorders events and never turns a truncated stream into
a success.
"""

from __future__ import annotations

from enum import StrEnum
import logging

from castor.errors import (
    InternalError,
    LlmError,
    MalformedToolCallError,
    ProviderUnavailableError,
)
from castor.models import (
    Failed,
    Finished,
    Message,
    Response,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
)
from castor.tool_calls import ToolCallAssembler

logger = logging.getLogger(__name__)


class StreamState(StrEnum):
    """Lifecycle of one streaming request."""

    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class StreamAggregator:
    """Fold a forward-only event sequence into a final Response."""

    def __init__(self) -> None:
        """Start idle with an empty builder."""
        self.state = StreamState.IDLE
        self._text: list[str] = []
        self._calls = ToolCallAssembler()
        self._response: Response | None = None
        self._error: LlmError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (StreamState.COMPLETED, StreamState.FAILED)

    @property
    def error(self) -> LlmError | None:
        return self._error

    def accept(self, event: StreamEvent) -> StreamEvent:
        """Fold *event* and return what the live consumer should see.

        A ``Finished`` whose tool-call buffers do not hold valid JSON is
        replaced by ``Failed(MalformedToolCallError)``.
        """
        if self.is_terminal:
            raise InternalError(
                f"Event {type(event).__name__} received after stream {self.state}"
            )
        self.state = StreamState.STREAMING

        if isinstance(event, TextDelta):
            self._text.append(event.text)
            return event
        if isinstance(event, ToolCallDelta):
            self._calls.add(
                event.call_id,
                event.arguments_fragment,
                name=event.name,
                provider_context=event.provider_context,
            )
            return event
        if isinstance(event, Finished):
            try:
                tool_calls = self._calls.finalize()
            except MalformedToolCallError as exc:
                return self.fail(exc)
            self._response = Response(
                message=Message.assistant("".join(self._text), tool_calls),
                finish_reason=event.finish_reason,
                usage=event.usage,
            )
            self.state = StreamState.COMPLETED
            logger.debug(
                "Stream completed finish_reason=%s tool_calls=%d",
                event.finish_reason,
                len(tool_calls),
            )
            return event
        return self.fail(event.error)

    def fail(self, error: LlmError) -> Failed:
        """Transition to failed and return the terminal event."""
        self.state = StreamState.FAILED
        self._error = error
        logger.debug("Stream failed kind=%s: %s", error.kind, error)
        return Failed(error)

    def end_of_stream(self) -> Failed | None:
        """Handle the byte stream ending.

        Returns ``None`` when a terminal event was already seen; otherwise the
        stream was cut short and the returned ``Failed`` explains how.
        """
        if self.is_terminal:
            return None
        incomplete = self._calls.incomplete_call_ids()
        if incomplete:
            return self.fail(
                MalformedToolCallError(
                    "Stream ended mid-argument for tool call(s): "
                    + ", ".join(repr(c) for c in incomplete)
                )
            )
        return self.fail(
            ProviderUnavailableError(
                "Stream ended before the provider reported completion",
                phase="stream",
            )
        )

    def response(self) -> Response:
        """Return the completed Response.

        Raises:
            LlmError: The stream's failure, when it failed.
            InternalError: When called before the stream finished.
        """
        if self._error is not None:
            raise self._error
        if self._response is None:
            raise InternalError(f"Stream has no response yet (state={self.state})")
        return self._response
