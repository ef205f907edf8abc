"""Provider adapter protocol: translate, parse, stream-parse, map errors."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from castor.errors import LlmError
from castor.models import Failed, Finished
from castor.sse import SSEDecoder

if TYPE_CHECKING:
    from collections.abc import Mapping

    from castor.models import Request, Response, StreamEvent
    from castor.registry import ProviderFamily
    from castor.sse import SSEFrame
    from castor.transport import WireRequest

logger = logging.getLogger(__name__)


@runtime_checkable
class StreamParser(Protocol):
    """Per-request incremental parser for one provider's stream framing.

    Parsers hold only the state of one response and are never shared across
    requests.
    """

    def parse_stream_chunk(self, data: bytes) -> list[StreamEvent]:
        """Consume raw bytes; return the events they complete (possibly none)."""
        ...

    def finish(self) -> list[StreamEvent]:
        """Flush buffered state once the byte stream has ended."""
        ...


@runtime_checkable
class ProviderAdapter(Protocol):
    """Translator between the canonical model and one provider family's wire shape."""

    family: ProviderFamily

    def translate_request(self, request: Request) -> WireRequest:
        """Encode every canonical field, or raise ``UnsupportedError``."""
        ...

    def parse_response(self, payload: Mapping[str, Any]) -> Response:
        """Convert a complete provider reply into a canonical Response."""
        ...

    def stream_parser(self) -> StreamParser:
        """Return a fresh parser for one streamed reply."""
        ...

    def parse_error(
        self, status_code: int, body: bytes, headers: Mapping[str, str]
    ) -> LlmError:
        """Map a non-success HTTP reply onto a canonical error."""
        ...


class SSEStreamParser:
    """Base for parsers whose provider frames replies as server-sent events.

    Subclasses implement :meth:`handle_frame`. Once a terminal event
    (``Finished`` or ``Failed``) has been produced, later frames are dropped.
    """

    family: ProviderFamily

    def __init__(self) -> None:
        """Start with an empty frame buffer."""
        self._decoder = SSEDecoder()
        self.done = False

    def parse_stream_chunk(self, data: bytes) -> list[StreamEvent]:
        """Decode *data* and translate every frame it completes."""
        return self._translate(self._decoder.feed(data))

    def finish(self) -> list[StreamEvent]:
        """Flush a trailing frame, then let the subclass close out."""
        events = self._translate(self._decoder.flush())
        if not self.done:
            events.extend(self._mark_terminal(self.handle_end()))
        return events

    def handle_frame(self, frame: SSEFrame) -> list[StreamEvent]:
        """Translate one SSE frame."""
        raise NotImplementedError

    def handle_end(self) -> list[StreamEvent]:
        """Events implied by the byte stream ending; none by default."""
        return []

    def protocol_error(self, message: str) -> Failed:
        """A terminal event for frames that violate the provider protocol."""
        return Failed(
            LlmError(
                f"{self.family.value} stream protocol violation: {message}",
                provider=self.family.value,
                phase="stream",
            )
        )

    def _translate(self, frames: list[SSEFrame]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for frame in frames:
            if self.done:
                logger.debug("Dropping %s frame after terminal event", self.family)
                break
            try:
                produced = self.handle_frame(frame)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                produced = [self.protocol_error(f"undecodable frame ({exc})")]
            events.extend(self._mark_terminal(produced))
        return events

    def _mark_terminal(self, events: list[StreamEvent]) -> list[StreamEvent]:
        for idx, event in enumerate(events):
            if isinstance(event, (Finished, Failed)):
                self.done = True
                return events[: idx + 1]
        return events
