"""Dispatcher: validate, route, retry, and stream.

The dispatcher is the single entry point callers use. It checks a request
against the capability registry before any network attempt, hands the
provider-shaped request to the injected transport under the retry policy,
and returns either a complete :class:`~castor.models.Response` or an
:class:`EventStream` of canonical events.

Retries cover opening the exchange only. Once a stream has delivered its
first event, a failure is terminal: replaying a half-consumed stream would
duplicate output the caller has already seen.
"""

from __future__ import annotations

from collections import deque
from dataclasses import replace
from functools import partial
import logging
from typing import TYPE_CHECKING

from castor import cancellation
from castor.aggregator import StreamAggregator, StreamState
from castor.cancellation import CancellationToken, Deadline, guard
from castor.errors import (
    CancelledRequestError,
    InvalidRequestError,
    LlmError,
    UnsupportedError,
)
from castor.models import Failed, Finished
from castor.providers import default_adapters
from castor.providers._errors import wrap_transport_error
from castor.registry import default_registry, resolve_model_id
from castor.retry import RetryPolicy, retry_async, should_retry
from castor.tokens import estimate_prompt_tokens
from castor.tool_calls import validate_tool_correlation
from castor.transport import HttpxTransport

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping
    from types import TracebackType

    from castor.config import Config
    from castor.models import Request, Response, StreamEvent
    from castor.providers.base import ProviderAdapter, StreamParser
    from castor.registry import Capabilities, CapabilityRegistry, ProviderFamily
    from castor.transport import Transport, WireResponse

logger = logging.getLogger(__name__)


class Dispatcher:
    """Route canonical requests to provider adapters over one transport.

    Example:
        async with Dispatcher.from_config(Config.build()) as dispatcher:
            response = await dispatcher.send(request)
    """

    def __init__(
        self,
        transport: Transport,
        *,
        registry: CapabilityRegistry | None = None,
        adapters: Mapping[ProviderFamily, ProviderAdapter] | None = None,
        retry: RetryPolicy | None = None,
        default_timeout_s: float | None = None,
    ) -> None:
        """Wire the dispatcher to its collaborators.

        Args:
            transport: Sends wire requests; the dispatcher never opens sockets.
            registry: Capability table; defaults to the built-in model set.
            adapters: Adapter per provider family; defaults to all built-ins.
            retry: Retry policy for opening an exchange.
            default_timeout_s: Deadline applied when a call passes none.
        """
        self._transport = transport
        self._registry = registry if registry is not None else default_registry()
        self._adapters = dict(adapters) if adapters is not None else default_adapters()
        self._retry = retry if retry is not None else RetryPolicy()
        self._default_timeout_s = default_timeout_s
        self._owns_transport = False

    @classmethod
    def from_config(
        cls, config: Config, transport: Transport | None = None
    ) -> Dispatcher:
        """Build a dispatcher (and, unless given, an httpx transport) from *config*."""
        dispatcher = cls(
            transport if transport is not None else HttpxTransport.from_config(config),
            retry=config.retry,
            default_timeout_s=config.request_timeout_s,
        )
        dispatcher._owns_transport = transport is None
        return dispatcher

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def validate(self, request: Request, *, streaming: bool = False) -> Capabilities:
        """Check *request* against the registry without sending anything.

        Raises:
            UnsupportedError: Unknown model, or a feature the model lacks
                (tools, streaming, JSON mode).
            InvalidRequestError: Empty conversation, broken tool-call
                correlation, or a token budget the model cannot hold.
        """
        caps = self._registry.lookup(request.model)
        model = resolve_model_id(request.model)

        if not request.messages:
            raise InvalidRequestError(
                "Request must contain at least one message",
                hint="Add a user message with Message.user(...).",
            )
        validate_tool_correlation(request.messages)

        if request.tools and not caps.supports_tool_calls:
            raise UnsupportedError(
                f"Model {model.value!r} does not support tool calls",
                hint="Remove tools from the request or choose another model.",
                provider=caps.provider_family.value,
            )
        if (streaming or request.stream) and not caps.supports_streaming:
            raise UnsupportedError(
                f"Model {model.value!r} does not support streaming",
                provider=caps.provider_family.value,
            )
        if request.sampling.json_mode and not caps.supports_json_mode:
            raise UnsupportedError(
                f"Model {model.value!r} does not support JSON mode",
                provider=caps.provider_family.value,
            )

        max_tokens = request.sampling.max_tokens
        if max_tokens is not None and max_tokens > caps.max_output_tokens:
            raise InvalidRequestError(
                f"max_tokens={max_tokens} exceeds the {caps.max_output_tokens} "
                f"output tokens {model.value!r} can produce"
            )
        prompt_tokens = estimate_prompt_tokens(request)
        budget = prompt_tokens + (max_tokens or 0)
        if budget > caps.max_context_tokens:
            raise InvalidRequestError(
                f"Estimated {prompt_tokens} prompt tokens plus max_tokens "
                f"{max_tokens or 0} exceed the {caps.max_context_tokens}-token "
                f"context of {model.value!r}",
                hint="Shorten the conversation or lower max_tokens.",
            )

        if caps.provider_family not in self._adapters:
            raise UnsupportedError(
                f"No adapter registered for provider {caps.provider_family.value!r}"
            )
        return caps

    async def send(
        self,
        request: Request,
        *,
        cancel: CancellationToken | None = None,
        timeout_s: float | None = None,
    ) -> Response:
        """Send *request* and return the complete response.

        A request with ``stream=True`` is served through the streaming path
        and aggregated, so both paths produce the same Response.
        """
        if request.stream:
            async with await self.send_streaming(
                request, cancel=cancel, timeout_s=timeout_s
            ) as stream:
                return await stream.response()

        request, adapter = self._prepare(request, streaming=False)
        deadline = self._deadline(timeout_s)
        wire_response = await self._open(adapter, request, cancel, deadline)

        try:
            payload = wire_response.json()
            response = adapter.parse_response(payload)
        except LlmError as exc:
            _fill_context(exc, adapter.family, "parse")
            raise
        except (KeyError, TypeError, ValueError, AttributeError, IndexError) as exc:
            raise LlmError(
                f"{adapter.family.value} returned an unexpected response: {exc}",
                provider=adapter.family.value,
                phase="parse",
            ) from exc

        logger.debug(
            "Completed %s finish_reason=%s tool_calls=%d usage=%s",
            request.model,
            response.finish_reason,
            len(response.tool_calls),
            response.usage,
        )
        return response

    async def send_streaming(
        self,
        request: Request,
        *,
        cancel: CancellationToken | None = None,
        timeout_s: float | None = None,
    ) -> EventStream:
        """Open a streaming exchange and return its event stream.

        Validation and opening the stream (under the retry policy) happen
        before this returns; failures there raise instead of producing a
        stream.
        """
        request, adapter = self._prepare(replace(request, stream=True), streaming=True)
        token = cancel if cancel is not None else CancellationToken()
        deadline = self._deadline(timeout_s)
        wire_response = await self._open(adapter, request, token, deadline)
        return EventStream(
            adapter.family,
            wire_response,
            adapter.stream_parser(),
            token=token,
            deadline=deadline,
        )

    async def aclose(self) -> None:
        """Close the transport when this dispatcher created it."""
        if self._owns_transport and isinstance(self._transport, HttpxTransport):
            await self._transport.aclose()

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- internals ---

    def _prepare(
        self, request: Request, *, streaming: bool
    ) -> tuple[Request, ProviderAdapter]:
        caps = self.validate(request, streaming=streaming)
        model = resolve_model_id(request.model)
        if model is not request.model:
            request = replace(request, model=model)
        logger.debug(
            "Dispatching model=%s provider=%s stream=%s messages=%d tools=%d",
            model,
            caps.provider_family,
            request.stream,
            len(request.messages),
            len(request.tools),
        )
        return request, self._adapters[caps.provider_family]

    def _deadline(self, timeout_s: float | None) -> Deadline:
        return Deadline(timeout_s if timeout_s is not None else self._default_timeout_s)

    async def _open(
        self,
        adapter: ProviderAdapter,
        request: Request,
        token: CancellationToken | None,
        deadline: Deadline,
    ) -> WireResponse:
        def retryable(exc: BaseException) -> bool:
            if token is not None and token.cancelled:
                return False
            return should_retry(exc) and not deadline.expired

        def log_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.warning(
                "Retrying %s in %.2fs (attempt %d/%d): %s",
                adapter.family,
                delay,
                attempt,
                self._retry.max_attempts,
                exc,
            )

        return await retry_async(
            partial(self._attempt, adapter, request, token, deadline),
            policy=self._retry,
            should_retry=retryable,
            sleep=partial(cancellation.sleep, token=token, deadline=deadline),
            on_retry=log_retry,
        )

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        request: Request,
        token: CancellationToken | None,
        deadline: Deadline,
    ) -> WireResponse:
        """One fresh translation and send; non-success replies raise."""
        wire_request = adapter.translate_request(request)
        try:
            wire_response = await guard(
                self._transport.send(wire_request), token, deadline
            )
        except Exception as exc:
            error = wrap_transport_error(exc, provider=adapter.family, phase="request")
            if error is exc:
                raise
            raise error from exc

        if wire_response.is_success:
            return wire_response
        await wire_response.aclose()
        error = adapter.parse_error(
            wire_response.status_code, wire_response.body, wire_response.headers
        )
        logger.debug(
            "%s replied status=%d kind=%s",
            adapter.family,
            wire_response.status_code,
            error.kind,
        )
        raise error


class EventStream:
    """Canonical events of one streaming exchange, in provider order.

    Iterate with ``async for``; the last event is always ``Finished`` or
    ``Failed`` unless the stream was cancelled. Events are folded into the
    final Response as they are delivered, so after :meth:`cancel` nothing
    further is yielded and :meth:`response` raises ``CancelledRequestError``.
    """

    def __init__(
        self,
        family: ProviderFamily,
        wire_response: WireResponse,
        parser: StreamParser,
        *,
        token: CancellationToken,
        deadline: Deadline,
    ) -> None:
        """Wrap an open wire response; the stream owns its connection."""
        self.family = family
        self._wire = wire_response
        self._chunks: AsyncIterator[bytes] = (
            aiter(wire_response.chunks)
            if wire_response.chunks is not None
            else _single_chunk(wire_response.body)
        )
        self._parser = parser
        self._token = token
        self._deadline = deadline
        self._aggregator = StreamAggregator()
        self._pending: deque[StreamEvent] = deque()
        self._exhausted = False

    @property
    def state(self) -> StreamState:
        return self._aggregator.state

    @property
    def error(self) -> LlmError | None:
        return self._aggregator.error

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        while True:
            if self._token.cancelled:
                self._cancelled()
            if self._aggregator.is_terminal:
                await self._release()
                raise StopAsyncIteration
            if self._pending:
                return self._deliver(self._pending.popleft())
            if self._exhausted:
                # The bytes ran out before a terminal event.
                failed = self._aggregator.end_of_stream()
                if failed is not None:
                    _fill_context(failed.error, self.family, "stream")
                    return failed
                continue
            await self._pump()

    def cancel(self, reason: str | None = None) -> None:
        """Stop the stream; undelivered events are dropped."""
        self._token.cancel(reason)
        self._cancelled()

    async def aclose(self) -> None:
        """Release the connection, cancelling the stream if still live."""
        if not self._aggregator.is_terminal:
            self.cancel("stream closed by consumer")
        await self._release()

    async def response(self) -> Response:
        """Drain the remaining events and return the final Response.

        Raises:
            LlmError: The failure that ended the stream.
        """
        async for _ in self:
            pass
        return self._aggregator.response()

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # --- internals ---

    async def _pump(self) -> None:
        """Read one chunk and queue the events it completes."""
        try:
            chunk = await guard(_next_chunk(self._chunks), self._token, self._deadline)
        except CancelledRequestError:
            self._cancelled()
            return
        except Exception as exc:
            error = wrap_transport_error(exc, provider=self.family, phase="stream")
            self._pending.append(Failed(error))
            await self._release()
            return

        if chunk is None:
            self._exhausted = True
            self._pending.extend(self._parser.finish())
            await self._release()
            return

        events = self._parser.parse_stream_chunk(chunk)
        self._pending.extend(events)
        if any(isinstance(e, (Finished, Failed)) for e in events):
            # Nothing after a terminal event matters; free the connection now.
            await self._release()

    def _deliver(self, event: StreamEvent) -> StreamEvent:
        forwarded = self._aggregator.accept(event)
        if isinstance(forwarded, Failed):
            _fill_context(forwarded.error, self.family, "stream")
        if self._aggregator.is_terminal:
            self._pending.clear()
        return forwarded

    def _cancelled(self) -> None:
        self._pending.clear()
        if self._aggregator.is_terminal:
            return
        reason = self._token.reason
        self._aggregator.fail(
            CancelledRequestError(
                f"Stream cancelled{f': {reason}' if reason else ''}",
                provider=self.family.value,
                phase="stream",
            )
        )
        logger.debug("Stream from %s cancelled", self.family)

    async def _release(self) -> None:
        await self._wire.aclose()


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await anext(chunks)
    except StopAsyncIteration:
        return None


async def _single_chunk(body: bytes) -> AsyncIterator[bytes]:
    if body:
        yield body


def _fill_context(error: LlmError, family: ProviderFamily, phase: str) -> None:
    if error.provider is None:
        error.provider = family.value
    if error.phase is None:
        error.phase = phase
