"""Test helpers (small, reusable builders).

Keep this file tiny and purpose-built: it exists so suites share one way of
writing wire replies and SSE bodies instead of growing bespoke fakes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
import json
from typing import Any

from castor.models import Message, Request, ToolSpec
from castor.registry import ModelId
from castor.transport import WireResponse

WEATHER_TOOL = ToolSpec(
    "get_weather",
    {
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
    },
    description="Look up the current weather.",
)


def user_request(
    model: ModelId, text: str = "What's the weather in Paris?", **kwargs: Any
) -> Request:
    """A one-turn request for *model*."""
    return Request(model, (Message.user(text),), **kwargs)


def sse_frame(data: Any, *, event: str | None = None) -> bytes:
    """Encode one SSE frame; non-string data is JSON-encoded."""
    payload = data if isinstance(data, str) else json.dumps(data)
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {payload}\n\n".encode()


def sse_body(*payloads: Any, named: bool = False, done: bool = False) -> bytes:
    """Concatenate frames; *named* copies each payload's ``type`` into ``event:``."""
    frames = [
        sse_frame(p, event=p.get("type") if named and isinstance(p, dict) else None)
        for p in payloads
    ]
    if done:
        frames.append(sse_frame("[DONE]"))
    return b"".join(frames)


def json_reply(
    payload: Any, *, status_code: int = 200, headers: dict[str, str] | None = None
) -> WireResponse:
    return WireResponse(
        status_code=status_code,
        headers=headers or {},
        body=json.dumps(payload).encode(),
    )


def error_reply(
    status_code: int,
    message: str = "boom",
    *,
    headers: dict[str, str] | None = None,
) -> WireResponse:
    return json_reply(
        {"error": {"message": message}}, status_code=status_code, headers=headers
    )


@dataclass
class ChunkSource:
    """Streaming body double that records whether it was closed.

    With ``hang_after`` set, the source blocks forever once that many chunks
    have been delivered, like a provider that stops sending mid-reply.
    """

    chunks: list[bytes]
    hang_after: int | None = None
    closed: bool = False
    delivered: int = 0

    async def _iterate(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            if self.hang_after is not None and self.delivered >= self.hang_after:
                await asyncio.Event().wait()
            self.delivered += 1
            yield chunk
        if self.hang_after is not None and self.delivered >= self.hang_after:
            await asyncio.Event().wait()

    async def _close(self) -> None:
        self.closed = True

    def reply(self) -> WireResponse:
        return WireResponse(status_code=200, chunks=self._iterate(), close=self._close)


def stream_reply(*chunks: bytes) -> WireResponse:
    """A successful streaming reply delivering *chunks* in order."""
    return ChunkSource(list(chunks)).reply()


def split_every(data: bytes, size: int) -> list[bytes]:
    """Cut *data* into fixed-size pieces to exercise framing across chunks."""
    return [data[i : i + size] for i in range(0, len(data), size)]
