"""Prompt token estimation for budget validation.

No tokenizer, no SDK calls: a character heuristic that is deliberately on the
generous side so obviously oversized requests are stopped before dispatch.
"""

from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from castor.models import Message, Request

# ~4.2 characters per token for English prose and JSON.
CHARS_PER_TOKEN = 4.2
# Role markers and separators each provider wraps a turn in.
PER_MESSAGE_OVERHEAD = 4
PER_TOOL_OVERHEAD = 8


def _message_chars(message: Message) -> int:
    chars = len(message.text)
    for call in message.tool_calls:
        chars += len(call.tool_name) + len(call.arguments_json)
    if message.tool_result is not None:
        chars += len(message.tool_result.result_payload)
    return chars


def estimate_prompt_tokens(request: Request) -> int:
    """Estimate the prompt size of *request* in tokens."""
    chars = 0
    overhead = 0
    for message in request.messages:
        chars += _message_chars(message)
        overhead += PER_MESSAGE_OVERHEAD
    for tool in request.tools:
        chars += len(tool.name) + len(tool.description)
        chars += len(json.dumps(tool.parameters(), separators=(",", ":")))
        overhead += PER_TOOL_OVERHEAD
    return math.ceil(chars / CHARS_PER_TOKEN) + overhead
