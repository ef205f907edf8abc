"""Dispatcher behavior: validation before I/O, retries, streaming, cancellation.

All tests run against the scripted transport; nothing touches the network.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import logging

import httpx
import pytest

import castor
from castor.aggregator import StreamState
from castor.cancellation import CancellationToken
from castor.config import Config
from castor.dispatcher import Dispatcher
from castor.errors import (
    AuthError,
    CancelledRequestError,
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
    SamplingParams,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolSpec,
)
from castor.registry import ModelId
from castor.retry import RetryPolicy
from castor.transport import WireRequest, WireResponse
from tests import samples
from tests.conftest import ScriptedTransport
from tests.helpers import (
    WEATHER_TOOL,
    ChunkSource,
    error_reply,
    json_reply,
    split_every,
    sse_body,
    stream_reply,
    user_request,
)

pytestmark = pytest.mark.unit

FAST_RETRY = RetryPolicy(initial_delay_s=0.01, jitter=False)


def dispatcher_for(transport: ScriptedTransport, **kwargs) -> Dispatcher:
    kwargs.setdefault("retry", FAST_RETRY)
    return Dispatcher(transport, **kwargs)


def chat_chunk(delta: dict, finish_reason: str | None = None) -> dict:
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


# =============================================================================
# Validation Before Dispatch
# =============================================================================


@pytest.mark.asyncio
async def test_tools_on_a_model_without_tool_calling_never_reach_the_transport(
    transport: ScriptedTransport,
) -> None:
    dispatcher = dispatcher_for(transport)
    request = user_request(ModelId.APERTUS_8B_INSTRUCT, tools=(WEATHER_TOOL,))

    with pytest.raises(UnsupportedError, match="tool calls") as exc:
        await dispatcher.send(request)
    with pytest.raises(UnsupportedError):
        await dispatcher.send_streaming(request)

    assert exc.value.provider == "publicai"
    assert transport.calls == 0


@pytest.mark.parametrize(
    ("request_", "error"),
    [
        (Request(ModelId.GPT_5, ()), InvalidRequestError),
        (
            user_request(
                ModelId.APERTUS_8B_INSTRUCT, sampling=SamplingParams(json_mode=True)
            ),
            UnsupportedError,
        ),
        (
            user_request(
                ModelId.MISTRAL_SMALL_3_2, sampling=SamplingParams(max_tokens=40_000)
            ),
            InvalidRequestError,
        ),
        (
            user_request(ModelId.APERTUS_8B_INSTRUCT, text="word " * 400_000),
            InvalidRequestError,
        ),
        (
            Request(
                ModelId.GPT_5,
                (Message.user("hi"), Message.tool("never-proposed", "{}")),
            ),
            InvalidRequestError,
        ),
    ],
    ids=["empty", "json-mode", "max-tokens", "context", "orphan-result"],
)
def test_validate_rejects_before_any_attempt(
    transport: ScriptedTransport, request_: Request, error: type[LlmError]
) -> None:
    with pytest.raises(error):
        dispatcher_for(transport).validate(request_)
    assert transport.calls == 0


@pytest.mark.asyncio
async def test_unknown_model_string_is_unsupported(
    transport: ScriptedTransport,
) -> None:
    request = Request("not-a-model", (Message.user("hi"),))  # type: ignore[arg-type]
    with pytest.raises(UnsupportedError, match="not-a-model"):
        await dispatcher_for(transport).send(request)
    assert transport.calls == 0


@pytest.mark.asyncio
async def test_model_wire_id_strings_are_resolved(transport: ScriptedTransport) -> None:
    transport.script.append(json_reply(samples.PUBLICAI.complete))
    wire_id = "swiss-ai/apertus-8b-instruct"
    request = Request(wire_id, (Message.user("hi"),))  # type: ignore[arg-type]

    response = await dispatcher_for(transport).send(request)

    assert response.text == "Checking the weather."
    assert transport.requests[0].body["model"] == "swiss-ai/apertus-8b-instruct"


def test_budget_counts_max_tokens_against_the_context(
    transport: ScriptedTransport,
) -> None:
    dispatcher = dispatcher_for(transport)
    caps = dispatcher.validate(user_request(ModelId.APERTUS_8B_INSTRUCT))
    text = "x" * int(caps.max_context_tokens * 4.2 * 0.9)

    dispatcher.validate(user_request(ModelId.APERTUS_8B_INSTRUCT, text=text))
    with pytest.raises(InvalidRequestError, match="context"):
        dispatcher.validate(
            user_request(
                ModelId.APERTUS_8B_INSTRUCT,
                text=text,
                sampling=SamplingParams(max_tokens=caps.max_output_tokens),
            )
        )


# =============================================================================
# Streaming and Non-Streaming Agree
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize("pair", samples.ALL_PAIRS, ids=lambda p: p.model.value)
async def test_streamed_and_complete_paths_produce_the_same_response(
    transport: ScriptedTransport, pair: samples.ReplyPair
) -> None:
    tools = (WEATHER_TOOL,) if pair.call_id else ()
    request = user_request(pair.model, tools=tools)
    transport.script += [
        json_reply(pair.complete),
        stream_reply(*split_every(pair.streamed, 5)),
        stream_reply(pair.streamed),
    ]
    dispatcher = dispatcher_for(transport)

    complete = await dispatcher.send(request)
    async with await dispatcher.send_streaming(request) as stream:
        events = [event async for event in stream]
        streamed = await stream.response()
    via_flag = await dispatcher.send(user_request(pair.model, tools=tools, stream=True))

    assert streamed == complete
    assert via_flag == complete
    assert isinstance(events[-1], Finished)
    assert "".join(e.text for e in events if isinstance(e, TextDelta)) == complete.text
    assert [r.stream for r in transport.requests] == [False, True, True]


@pytest.mark.asyncio
async def test_stream_state_and_connection_release(
    transport: ScriptedTransport,
) -> None:
    source = ChunkSource(split_every(samples.ANTHROPIC.streamed, 32))
    transport.script.append(source.reply())

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.CLAUDE_HAIKU_4_5, tools=(WEATHER_TOOL,))
    )
    assert stream.state is StreamState.IDLE
    await stream.response()

    assert stream.state is StreamState.COMPLETED
    assert stream.error is None
    assert source.closed


@pytest.mark.asyncio
async def test_argument_fragments_reassemble_into_one_payload(
    transport: ScriptedTransport,
) -> None:
    body = sse_body(
        chat_chunk(
            {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "f", "arguments": ""}}]}
        ),
        chat_chunk({"tool_calls": [{"index": 0, "function": {"arguments": '{"a":'}}]}),
        chat_chunk({"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}),
        chat_chunk({}, "tool_calls"),
        done=True,
    )
    transport.script.append(stream_reply(body))
    tool = ToolSpec("f")

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.GROK_CODE_FAST_1, tools=(tool,))
    )
    events = [event async for event in stream]

    fragments = [e.arguments_fragment for e in events if isinstance(e, ToolCallDelta)]
    assert fragments == ["", '{"a":', "1}"]
    response = await stream.response()
    assert response.tool_calls == (ToolCall("c1", "f", '{"a":1}'),)
    assert response.finish_reason is FinishReason.TOOL_CALL


@pytest.mark.asyncio
async def test_stream_cut_mid_arguments_ends_with_malformed_tool_call(
    transport: ScriptedTransport,
) -> None:
    full = samples.ANTHROPIC.streamed
    # Cut at the frame boundary before the closing argument fragment.
    cut = full.rindex(b"\n\n", 0, full.index(b'\\"Paris\\"}')) + 2
    transport.script.append(stream_reply(full[:cut]))

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.CLAUDE_HAIKU_4_5, tools=(WEATHER_TOOL,))
    )
    events = [event async for event in stream]

    assert isinstance(events[-1], Failed)
    assert isinstance(events[-1].error, MalformedToolCallError)
    assert events[-1].error.provider == "anthropic"
    assert not [e for e in events if isinstance(e, Finished)]
    with pytest.raises(MalformedToolCallError):
        await stream.response()


@pytest.mark.asyncio
async def test_stream_cut_without_completion_is_never_a_success(
    transport: ScriptedTransport,
) -> None:
    transport.script.append(
        stream_reply(sse_body(chat_chunk({"content": "partial"})))
    )

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.GROK_4_1_FAST)
    )
    events = [event async for event in stream]

    assert events[0] == TextDelta("partial")
    assert isinstance(events[-1], Failed)
    assert isinstance(events[-1].error, ProviderUnavailableError)
    assert stream.state is StreamState.FAILED


@pytest.mark.asyncio
async def test_transport_failure_mid_stream_is_terminal_and_not_retried(
    transport: ScriptedTransport,
) -> None:
    async def broken() -> AsyncIterator[bytes]:
        yield sse_body(chat_chunk({"content": "partial"}))
        raise httpx.ReadError("connection reset")

    transport.script.append(WireResponse(status_code=200, chunks=broken()))

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.MISTRAL_MEDIUM_3_1)
    )
    events = [event async for event in stream]

    assert events[0] == TextDelta("partial")
    assert isinstance(events[-1], Failed)
    assert isinstance(events[-1].error, ProviderUnavailableError)
    assert events[-1].error.phase == "stream"
    assert transport.calls == 1


# =============================================================================
# Retry
# =============================================================================


@pytest.mark.asyncio
async def test_rate_limits_are_retried_with_non_decreasing_delays(
    transport: ScriptedTransport, caplog: pytest.LogCaptureFixture
) -> None:
    transport.script += [
        error_reply(429, "slow down"),
        error_reply(429, "slow down"),
        json_reply(samples.OPENAI.complete),
    ]

    with caplog.at_level(logging.WARNING, logger="castor.dispatcher"):
        response = await dispatcher_for(transport).send(
            user_request(ModelId.GPT_5, tools=(WEATHER_TOOL,))
        )

    assert response.tool_calls[0].call_id == "call_abc"
    assert transport.calls == 3
    delays = [r.args[1] for r in caplog.records if r.msg.startswith("Retrying")]
    assert len(delays) == 2
    assert delays == sorted(delays)
    assert all(d > 0 for d in delays)


@pytest.mark.asyncio
async def test_every_attempt_sends_a_fresh_identical_request(
    transport: ScriptedTransport,
) -> None:
    transport.script += [error_reply(503), json_reply(samples.GEMINI.complete)]

    await dispatcher_for(transport).send(
        user_request(ModelId.GEMINI_3_FLASH, tools=(WEATHER_TOOL,))
    )

    first, second = transport.requests
    assert first == second
    assert first is not second


@pytest.mark.asyncio
async def test_retry_after_hint_is_honored(
    transport: ScriptedTransport, caplog: pytest.LogCaptureFixture
) -> None:
    transport.script += [
        error_reply(429, headers={"Retry-After": "0.05"}),
        json_reply(samples.MISTRAL.complete),
    ]

    with caplog.at_level(logging.WARNING, logger="castor.dispatcher"):
        await dispatcher_for(transport).send(
            user_request(ModelId.MISTRAL_SMALL_3_2, tools=(WEATHER_TOOL,))
        )

    (record,) = [r for r in caplog.records if r.msg.startswith("Retrying")]
    assert record.args[1] >= 0.05


@pytest.mark.asyncio
async def test_invalid_request_is_not_retried(transport: ScriptedTransport) -> None:
    transport.script += [error_reply(400, "bad field"), json_reply({})]

    with pytest.raises(InvalidRequestError) as exc:
        await dispatcher_for(transport).send(user_request(ModelId.GPT_5))

    assert transport.calls == 1
    assert exc.value.status_code == 400
    assert exc.value.provider == "openai"
    assert exc.value.provider_message == "bad field"


@pytest.mark.asyncio
async def test_auth_failure_is_not_retried(transport: ScriptedTransport) -> None:
    transport.script += [error_reply(401, "invalid x-api-key")]

    with pytest.raises(AuthError) as exc:
        await dispatcher_for(transport).send(user_request(ModelId.CLAUDE_OPUS_4_6))

    assert transport.calls == 1
    assert "ANTHROPIC_API_KEY" in (exc.value.hint or "")


@pytest.mark.asyncio
async def test_exhausted_retries_raise_the_last_error(
    transport: ScriptedTransport,
) -> None:
    transport.script += [error_reply(503), error_reply(502), error_reply(429)]

    with pytest.raises(RateLimitError):
        await dispatcher_for(transport).send(user_request(ModelId.GROK_4_1_FAST))

    assert transport.calls == 3


@pytest.mark.asyncio
async def test_connection_errors_are_retried(transport: ScriptedTransport) -> None:
    transport.script += [
        httpx.ConnectError("refused"),
        json_reply(samples.PUBLICAI.complete),
    ]

    response = await dispatcher_for(transport).send(
        user_request(ModelId.APERTUS_8B_INSTRUCT)
    )

    assert response.finish_reason is FinishReason.STOP
    assert transport.calls == 2


@pytest.mark.asyncio
async def test_stream_opening_is_retried(transport: ScriptedTransport) -> None:
    transport.script += [error_reply(529), stream_reply(samples.ANTHROPIC.streamed)]

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.CLAUDE_HAIKU_4_5, tools=(WEATHER_TOOL,))
    )
    response = await stream.response()

    assert response.finish_reason is FinishReason.TOOL_CALL
    assert transport.calls == 2


# =============================================================================
# Cancellation and Deadlines
# =============================================================================


@pytest.mark.asyncio
async def test_cancelling_a_hung_stream_stops_it_and_releases_the_connection(
    transport: ScriptedTransport,
) -> None:
    source = ChunkSource(split_every(samples.XAI.streamed, 40), hang_after=1)
    transport.script.append(source.reply())
    token = CancellationToken()

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.GROK_4_1_FAST, tools=(WEATHER_TOOL,)), cancel=token
    )
    asyncio.get_running_loop().call_later(0.02, token.cancel, "user left")
    events = [event async for event in stream]

    assert not [e for e in events if isinstance(e, (Finished, Failed))]
    assert isinstance(stream.error, CancelledRequestError)
    assert "user left" in str(stream.error)
    assert stream.state is StreamState.FAILED
    assert source.closed
    with pytest.raises(CancelledRequestError):
        await stream.response()


@pytest.mark.asyncio
async def test_cancel_drops_events_already_decoded(
    transport: ScriptedTransport,
) -> None:
    transport.script.append(stream_reply(samples.ANTHROPIC.streamed))

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.CLAUDE_HAIKU_4_5, tools=(WEATHER_TOOL,))
    )
    first = await anext(stream)
    stream.cancel()
    rest = [event async for event in stream]

    assert first == TextDelta("Checking ")
    assert rest == []
    assert isinstance(stream.error, CancelledRequestError)


@pytest.mark.asyncio
async def test_cancelled_token_before_send_raises(transport: ScriptedTransport) -> None:
    transport.script.append(json_reply(samples.GEMINI.complete))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancelledRequestError):
        await dispatcher_for(transport).send(
            user_request(ModelId.GEMINI_3_PRO), cancel=token
        )


@pytest.mark.asyncio
async def test_stream_deadline_fails_the_stream(transport: ScriptedTransport) -> None:
    source = ChunkSource(split_every(samples.GEMINI.streamed, 50), hang_after=1)
    transport.script.append(source.reply())

    stream = await dispatcher_for(transport).send_streaming(
        user_request(ModelId.GEMINI_3_FLASH), timeout_s=0.05
    )
    events = [event async for event in stream]

    assert isinstance(events[-1], Failed)
    assert isinstance(events[-1].error, RequestTimeoutError)
    assert source.closed


@pytest.mark.asyncio
async def test_request_deadline_bounds_a_hung_transport() -> None:
    class HungTransport:
        def __init__(self) -> None:
            self.calls = 0

        async def send(self, request: WireRequest) -> WireResponse:
            self.calls += 1
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

    hung = HungTransport()
    dispatcher = Dispatcher(hung, retry=FAST_RETRY)

    with pytest.raises(RequestTimeoutError):
        await dispatcher.send(user_request(ModelId.GPT_5), timeout_s=0.05)

    assert hung.calls == 1


@pytest.mark.asyncio
async def test_cancelling_one_request_leaves_a_concurrent_one_alone(
    transport: ScriptedTransport,
) -> None:
    hung = ChunkSource([b""], hang_after=0)
    transport.script += [hung.reply(), stream_reply(samples.PUBLICAI.streamed)]
    dispatcher = dispatcher_for(transport)
    token = CancellationToken()

    doomed = await dispatcher.send_streaming(
        user_request(ModelId.APERTUS_8B_INSTRUCT), cancel=token
    )
    survivor = await dispatcher.send_streaming(
        user_request(ModelId.APERTUS_8B_INSTRUCT)
    )
    doomed_task = asyncio.ensure_future(doomed.response())
    await asyncio.sleep(0.01)
    token.cancel()

    response = await survivor.response()
    with pytest.raises(CancelledRequestError):
        await doomed_task
    assert response.text == "Checking the weather."


# =============================================================================
# Response Handling
# =============================================================================


@pytest.mark.asyncio
async def test_unexpected_response_shape_is_a_parse_error(
    transport: ScriptedTransport,
) -> None:
    transport.script.append(json_reply({"choices": "garbage"}))

    with pytest.raises(LlmError) as exc:
        await dispatcher_for(transport).send(user_request(ModelId.MISTRAL_LARGE_3))

    assert exc.value.phase == "parse"
    assert exc.value.provider == "mistral"


@pytest.mark.asyncio
async def test_injected_transport_is_not_closed() -> None:
    closed: list[bool] = []

    class OwnedElsewhere(ScriptedTransport):
        async def aclose(self) -> None:
            closed.append(True)

    async with Dispatcher.from_config(Config.build(), OwnedElsewhere()):
        pass

    assert closed == []


@pytest.mark.asyncio
async def test_module_send_reports_missing_credentials() -> None:
    with pytest.raises(AuthError) as exc:
        await castor.send(user_request(ModelId.GPT_5), config=Config.build())

    assert "OPENAI_API_KEY" in (exc.value.hint or "")


def gemini_call_reply(city: str) -> WireResponse:
    call = {"functionCall": {"name": "get_weather", "args": {"city": city}}}
    return json_reply(
        {
            "candidates": [
                {"content": {"role": "model", "parts": [call]}, "finishReason": "STOP"}
            ]
        }
    )


@pytest.mark.asyncio
async def test_gemini_tool_loop_reusing_synthesized_ids_keeps_going(
    transport: ScriptedTransport,
) -> None:
    transport.script += [
        gemini_call_reply("Paris"),
        gemini_call_reply("Rome"),
        json_reply(samples.GEMINI.complete),
    ]
    dispatcher = dispatcher_for(transport)
    messages = [Message.user("Weather in Paris, then Rome?")]

    for temp in ("18", "24"):
        response = await dispatcher.send(
            Request(ModelId.GEMINI_3_FLASH, tuple(messages), tools=(WEATHER_TOOL,))
        )
        (call,) = response.tool_calls
        assert call.call_id == "call_0_get_weather"
        result = Message.tool(call.call_id, f'{{"temp_c": {temp}}}')
        messages += [response.message, result]

    final = await dispatcher.send(
        Request(ModelId.GEMINI_3_FLASH, tuple(messages), tools=(WEATHER_TOOL,))
    )

    assert final.text == "Checking the weather."
    assert transport.calls == 3
    answers = [
        part["functionResponse"]["response"]
        for content in transport.requests[-1].body["contents"]
        for part in content["parts"]
        if "functionResponse" in part
    ]
    assert answers == [{"temp_c": 18}, {"temp_c": 24}]
