"""Castor: one canonical interface over many LLM provider APIs.

Public API:
    - Dispatcher: validate, route, retry and stream canonical requests
    - send(): one-shot convenience around a config-built Dispatcher
    - Request / Message / ToolSpec / SamplingParams: canonical inputs
    - Response / stream events: canonical outputs
    - Config: credentials, base URLs, retry and timeouts
"""

from __future__ import annotations

import asyncio
import logging

from castor.aggregator import StreamState
from castor.cancellation import CancellationToken
from castor.config import Config
from castor.dispatcher import Dispatcher, EventStream
from castor.errors import (
    AuthError,
    CancelledRequestError,
    CastorError,
    ConfigurationError,
    ErrorKind,
    InternalError,
    InvalidRequestError,
    LlmError,
    MalformedToolCallError,
    ProviderUnavailableError,
    RateLimitError,
    RequestTimeoutError,
    UnsupportedError,
)
from castor.models import (
    Failed,
    Finished,
    FinishReason,
    Message,
    Request,
    Response,
    Role,
    SamplingParams,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolResult,
    ToolSpec,
    Usage,
)
from castor.registry import (
    Capabilities,
    CapabilityRegistry,
    ModelId,
    ProviderFamily,
    default_registry,
)
from castor.retry import RetryPolicy
from castor.transport import HttpxTransport, Transport, WireRequest, WireResponse

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("castor-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("castor").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)


async def send(
    request: Request,
    *,
    config: Config | None = None,
    cancel: CancellationToken | None = None,
    timeout_s: float | None = None,
) -> Response:
    """Send one request with a throwaway dispatcher built from *config*.

    Args:
        request: The canonical request.
        config: Credentials and policies; resolved from the environment
            when omitted.
        cancel: Optional token to abandon the request.
        timeout_s: Overall deadline; defaults to ``config.request_timeout_s``.

    Example:
        response = await send(
            Request(ModelId.CLAUDE_HAIKU_4_5, [Message.user("Hello")])
        )
        print(response.text)
    """
    if config is None:
        config = Config.build()
    dispatcher = Dispatcher.from_config(config)
    try:
        return await dispatcher.send(request, cancel=cancel, timeout_s=timeout_s)
    finally:
        try:
            await dispatcher.aclose()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Cleanup should never mask the primary failure.
            logger.warning("Transport cleanup failed: %s", exc)


__all__ = [
    "AuthError",
    "CancellationToken",
    "CancelledRequestError",
    "Capabilities",
    "CapabilityRegistry",
    "CastorError",
    "Config",
    "ConfigurationError",
    "Dispatcher",
    "ErrorKind",
    "EventStream",
    "Failed",
    "FinishReason",
    "Finished",
    "HttpxTransport",
    "InternalError",
    "InvalidRequestError",
    "LlmError",
    "MalformedToolCallError",
    "Message",
    "ModelId",
    "ProviderFamily",
    "ProviderUnavailableError",
    "RateLimitError",
    "Request",
    "RequestTimeoutError",
    "Response",
    "RetryPolicy",
    "Role",
    "SamplingParams",
    "StreamEvent",
    "StreamState",
    "TextDelta",
    "ToolCall",
    "ToolCallDelta",
    "ToolResult",
    "ToolSpec",
    "Transport",
    "UnsupportedError",
    "Usage",
    "WireRequest",
    "WireResponse",
    "default_registry",
    "send",
]
