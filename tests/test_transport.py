"""HttpxTransport: URLs, auth schemes and streaming on a mocked httpx client."""

from __future__ import annotations

from collections.abc import Callable
import json

import httpx
import pytest

from castor.config import Config
from castor.errors import AuthError
from castor.registry import ProviderFamily
from castor.transport import HttpxTransport, Transport, WireRequest

pytestmark = pytest.mark.unit

CREDENTIALS = {family: f"key-{family.value}" for family in ProviderFamily}


def mocked(
    handler: Callable[[httpx.Request], httpx.Response],
    credentials: dict[ProviderFamily, str] | None = None,
    **kwargs,
) -> HttpxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport(
        CREDENTIALS if credentials is None else credentials, client=client, **kwargs
    )


def wire(provider: ProviderFamily, *, stream: bool = False, **kwargs) -> WireRequest:
    return WireRequest(
        provider=provider, path="/v1/test", body={"x": 1}, stream=stream, **kwargs
    )


def test_httpx_transport_satisfies_the_protocol() -> None:
    assert isinstance(HttpxTransport({}), Transport)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("provider", "header", "value"),
    [
        (ProviderFamily.ANTHROPIC, "x-api-key", "key-anthropic"),
        (ProviderFamily.GOOGLE, "x-goog-api-key", "key-google"),
        (ProviderFamily.OPENAI, "authorization", "Bearer key-openai"),
        (ProviderFamily.MISTRAL, "authorization", "Bearer key-mistral"),
        (ProviderFamily.XAI, "authorization", "Bearer key-xai"),
        (ProviderFamily.PUBLICAI, "authorization", "Bearer key-publicai"),
    ],
)
async def test_each_provider_gets_its_auth_scheme(
    provider: ProviderFamily, header: str, value: str
) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    async with mocked(handler) as transport:
        reply = await transport.send(wire(provider))

    assert reply.status_code == 200
    assert reply.json() == {"ok": True}
    (request,) = seen
    assert request.headers[header] == value
    assert request.headers["accept"] == "application/json"
    assert json.loads(request.content) == {"x": 1}


@pytest.mark.asyncio
async def test_urls_join_base_and_path_with_overrides() -> None:
    urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200, json={})

    transport = mocked(handler, base_urls={ProviderFamily.MISTRAL: "http://local:9/"})
    await transport.send(wire(ProviderFamily.ANTHROPIC))
    await transport.send(wire(ProviderFamily.MISTRAL))

    assert urls == ["https://api.anthropic.com/v1/test", "http://local:9/v1/test"]


@pytest.mark.asyncio
async def test_request_headers_are_sent_but_cannot_override_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    await mocked(handler).send(
        wire(
            ProviderFamily.ANTHROPIC,
            headers={"anthropic-version": "2023-06-01", "x-api-key": "spoofed"},
        )
    )

    assert seen[0].headers["anthropic-version"] == "2023-06-01"
    assert seen[0].headers["x-api-key"] == "key-anthropic"


@pytest.mark.asyncio
async def test_missing_credential_fails_before_sending() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("must not send")

    transport = mocked(handler, credentials={ProviderFamily.OPENAI: "k"})

    with pytest.raises(AuthError) as exc:
        await transport.send(wire(ProviderFamily.XAI))

    assert exc.value.hint is not None
    assert "XAI_API_KEY" in exc.value.hint
    assert exc.value.provider == "xai"


@pytest.mark.asyncio
async def test_streaming_reply_exposes_chunks_and_close() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["accept"] == "text/event-stream"
        return httpx.Response(200, content=b"data: 1\n\ndata: 2\n\n")

    reply = await mocked(handler).send(wire(ProviderFamily.OPENAI, stream=True))

    assert reply.is_success
    assert reply.chunks is not None
    body = b"".join([chunk async for chunk in reply.chunks])
    await reply.aclose()
    await reply.aclose()

    assert body == b"data: 1\n\ndata: 2\n\n"


@pytest.mark.asyncio
async def test_streaming_error_reply_reads_the_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429, json={"error": {"message": "slow"}}, headers={"Retry-After": "2"}
        )

    reply = await mocked(handler).send(wire(ProviderFamily.XAI, stream=True))

    assert not reply.is_success
    assert reply.chunks is None
    assert reply.json() == {"error": {"message": "slow"}}
    assert reply.headers["retry-after"] == "2"


def test_repr_redacts_credentials() -> None:
    transport = HttpxTransport({ProviderFamily.OPENAI: "sk-secret"})
    assert "sk-secret" not in repr(transport)
    assert "openai" in repr(transport)


def test_from_config_uses_resolved_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "g-key")
    transport = HttpxTransport.from_config(Config.build())
    assert "google" in repr(transport)
