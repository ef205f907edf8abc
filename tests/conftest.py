"""Pytest configuration and fixtures.

Provides the scripted transport double, environment isolation, logging
configuration and automatic API test skipping. All fixtures here are autouse
unless noted.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
import logging
import os

import pytest

from castor.transport import WireRequest, WireResponse

# =============================================================================
# Test Doubles
# =============================================================================

ScriptItem = WireResponse | BaseException | Callable[[WireRequest], WireResponse]


@dataclass
class ScriptedTransport:
    """Transport double that replays a scripted sequence of replies.

    Each ``send`` pops the next item: a ``WireResponse`` is returned, an
    exception is raised, a callable is invoked with the request. Every
    request is recorded so tests can assert on attempt counts and shapes.
    """

    script: list[ScriptItem] = field(default_factory=list)
    requests: list[WireRequest] = field(default_factory=list)

    async def send(self, request: WireRequest) -> WireResponse:
        self.requests.append(request)
        if not self.script:
            raise AssertionError(f"Unscripted request to {request.path}")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def transport() -> ScriptedTransport:
    """Return an empty scripted transport (not autouse)."""
    return ScriptedTransport()


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================

_PROVIDER_ENV_PREFIXES = (
    "OPENAI_",
    "ANTHROPIC_",
    "GEMINI_",
    "MISTRAL_",
    "XAI_",
    "PUBLICAI_",
)


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Opt-out: @pytest.mark.allow_dotenv
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Ensure a clean provider environment for each test.

    Clears every provider API key variable to prevent test pollution.
    Opt-out: @pytest.mark.allow_env_pollution or @pytest.mark.api
    """
    if request.node.get_closest_marker("allow_env_pollution") or (
        "api" in request.node.keywords
    ):
        return

    for key in list(os.environ.keys()):
        if key.startswith(_PROVIDER_ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Suppress noisy third-party loggers."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)


# =============================================================================
# Pytest Hooks
# =============================================================================

API_TESTS_REASON = "API tests require ENABLE_API_TESTS=1"


def _api_tests_enabled() -> bool:
    return bool(os.getenv("ENABLE_API_TESTS"))


def pytest_collection_modifyitems(items):
    """Automatically skip API tests when not explicitly enabled."""
    if _api_tests_enabled():
        return
    skip_api = pytest.mark.skip(reason=API_TESTS_REASON)
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip_api)
