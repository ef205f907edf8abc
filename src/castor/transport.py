"""Transport boundary: the only place bytes cross the network.

The core builds credential-free :class:`WireRequest` values and hands them to
an injected :class:`Transport`. :class:`HttpxTransport` is the default
collaborator; tests and embedders may supply their own.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
import json
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from castor.errors import AuthError, InvalidRequestError
from castor.registry import ProviderFamily

if TYPE_CHECKING:
    from castor.config import Config

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS: Mapping[ProviderFamily, str] = MappingProxyType(
    {
        ProviderFamily.OPENAI: "https://api.openai.com",
        ProviderFamily.ANTHROPIC: "https://api.anthropic.com",
        ProviderFamily.GOOGLE: "https://generativelanguage.googleapis.com",
        ProviderFamily.MISTRAL: "https://api.mistral.ai",
        ProviderFamily.XAI: "https://api.x.ai",
        ProviderFamily.PUBLICAI: "https://api.publicai.co",
    }
)

API_KEY_ENV_VARS: Mapping[ProviderFamily, str] = MappingProxyType(
    {
        ProviderFamily.OPENAI: "OPENAI_API_KEY",
        ProviderFamily.ANTHROPIC: "ANTHROPIC_API_KEY",
        ProviderFamily.GOOGLE: "GEMINI_API_KEY",
        ProviderFamily.MISTRAL: "MISTRAL_API_KEY",
        ProviderFamily.XAI: "XAI_API_KEY",
        ProviderFamily.PUBLICAI: "PUBLICAI_API_KEY",
    }
)


@dataclass(frozen=True)
class WireRequest:
    """A provider-shaped request, without credentials."""

    provider: ProviderFamily
    path: str
    body: Mapping[str, Any]
    stream: bool = False
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class WireResponse:
    """A provider reply: either a complete body or a stream of raw chunks."""

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    chunks: AsyncIterator[bytes] | None = None
    close: Callable[[], Awaitable[None]] | None = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Decode the complete body as JSON."""
        return json.loads(self.body)

    async def aclose(self) -> None:
        """Release the underlying connection. Idempotent."""
        close, self.close = self.close, None
        if close is not None:
            await close()


@runtime_checkable
class Transport(Protocol):
    """Send one wire request; streaming replies carry ``chunks``."""

    async def send(self, request: WireRequest) -> WireResponse:
        """Send *request* and return the provider's reply."""
        ...


def _auth_headers(provider: ProviderFamily, secret: str) -> dict[str, str]:
    if provider is ProviderFamily.ANTHROPIC:
        return {"x-api-key": secret}
    if provider is ProviderFamily.GOOGLE:
        return {"x-goog-api-key": secret}
    return {"Authorization": f"Bearer {secret}"}


class HttpxTransport:
    """Default transport on ``httpx.AsyncClient``.

    Holds one credential per provider family and applies that provider's
    auth scheme. Secrets never appear in logs or reprs.
    """

    def __init__(
        self,
        credentials: Mapping[ProviderFamily, str],
        *,
        base_urls: Mapping[ProviderFamily, str] | None = None,
        timeout: httpx.Timeout | float | None = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create a transport; *client* is owned by the caller when given."""
        self._credentials = dict(credentials)
        self._base_urls = {**DEFAULT_BASE_URLS, **(base_urls or {})}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config: Config) -> HttpxTransport:
        """Build a transport from resolved configuration."""
        return cls(
            config.credentials(),
            base_urls=config.base_urls,
            timeout=httpx.Timeout(
                config.request_timeout_s, connect=config.connect_timeout_s
            ),
        )

    def _url(self, request: WireRequest) -> str:
        return self._base_urls[request.provider].rstrip("/") + request.path

    def _headers(self, request: WireRequest) -> dict[str, str]:
        secret = self._credentials.get(request.provider)
        if not secret:
            env_var = API_KEY_ENV_VARS[request.provider]
            raise AuthError(
                f"No credential configured for provider {request.provider.value!r}",
                hint=f"Set {env_var} or pass an api key in Config.",
                provider=request.provider.value,
                phase="auth",
            )
        accept = "text/event-stream" if request.stream else "application/json"
        headers = {"Accept": accept}
        headers.update(request.headers)
        headers.update(_auth_headers(request.provider, secret))
        return headers

    async def send(self, request: WireRequest) -> WireResponse:
        """POST *request*; for streams, return before the body is consumed."""
        if request.provider not in self._base_urls:
            raise InvalidRequestError(f"No base URL for provider {request.provider}")
        http_request = self._client.build_request(
            "POST",
            self._url(request),
            json=dict(request.body),
            headers=self._headers(request),
        )
        logger.debug(
            "POST %s provider=%s stream=%s",
            http_request.url.path,
            request.provider,
            request.stream,
        )
        response = await self._client.send(http_request, stream=request.stream)
        if not request.stream:
            return WireResponse(
                status_code=response.status_code,
                headers=dict(response.headers),
                body=response.content,
            )
        if not response.is_success:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            return WireResponse(
                status_code=response.status_code,
                headers=dict(response.headers),
                body=body,
            )
        return WireResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            chunks=response.aiter_bytes(),
            close=response.aclose,
        )

    async def aclose(self) -> None:
        """Close the owned client."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        providers = ", ".join(sorted(p.value for p in self._credentials))
        return f"HttpxTransport(credentials=[{providers}], keys=[REDACTED])"
