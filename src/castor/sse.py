"""Incremental server-sent-events decoding.

Providers stream replies as SSE. Transports hand over bytes in arbitrary
slices, so the decoder buffers until a full frame (terminated by a blank line)
is available, including frames split inside a UTF-8 sequence or a CRLF pair.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import json
from typing import Any

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEFrame:
    """One dispatched SSE event."""

    data: str
    event: str | None = None
    id: str | None = None

    @property
    def is_done(self) -> bool:
        """Whether this is the OpenAI-style ``[DONE]`` terminator."""
        return self.data.strip() == DONE_SENTINEL

    def json(self) -> Any:
        """Decode the data payload as JSON."""
        return json.loads(self.data)


class SSEDecoder:
    """Feed bytes in, get complete frames out."""

    def __init__(self) -> None:
        """Start with empty buffers."""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._data_lines: list[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        """Consume *chunk* and return every frame it completes."""
        self._pending += self._decoder.decode(chunk)
        return self._drain_lines(final=False)

    def flush(self) -> list[SSEFrame]:
        """Dispatch whatever is buffered once the byte stream has ended."""
        self._pending += self._decoder.decode(b"", final=True)
        frames = self._drain_lines(final=True)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    def _drain_lines(self, *, final: bool) -> list[SSEFrame]:
        frames: list[SSEFrame] = []
        while True:
            line, found = self._take_line(final=final)
            if not found:
                return frames
            if line == "":
                frame = self._dispatch()
                if frame is not None:
                    frames.append(frame)
                continue
            self._process_field(line)

    def _take_line(self, *, final: bool) -> tuple[str, bool]:
        buf = self._pending
        for idx, ch in enumerate(buf):
            if ch == "\n":
                self._pending = buf[idx + 1 :]
                return buf[:idx], True
            if ch == "\r":
                # A trailing CR may be the first half of a CRLF pair.
                if idx + 1 == len(buf) and not final:
                    return "", False
                skip = 2 if buf[idx + 1 : idx + 2] == "\n" else 1
                self._pending = buf[idx + skip :]
                return buf[:idx], True
        if final and buf:
            self._pending = ""
            return buf, True
        return "", False

    def _process_field(self, line: str) -> None:
        if line.startswith(":"):
            return
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data_lines.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value

    def _dispatch(self) -> SSEFrame | None:
        if not self._data_lines:
            self._event = None
            return None
        frame = SSEFrame(
            data="\n".join(self._data_lines),
            event=self._event,
            id=self._id,
        )
        self._data_lines = []
        self._event = None
        return frame
