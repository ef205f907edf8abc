"""Capability registry: static per-model attributes.

The registry is built once, frozen, and passed by reference. It is the single
source of truth the dispatcher consults before any network attempt.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import StrEnum
from functools import cache
from types import MappingProxyType

from castor.errors import UnsupportedError


class ProviderFamily(StrEnum):
    """Provider families; one adapter per family."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    MISTRAL = "mistral"
    XAI = "xai"
    PUBLICAI = "publicai"


class ModelId(StrEnum):
    """Closed set of supported models. Values are the provider wire ids."""

    GPT_5 = "gpt-5"

    CLAUDE_OPUS_4_6 = "claude-opus-4-6"
    CLAUDE_SONNET_4_6 = "claude-sonnet-4-6"
    CLAUDE_HAIKU_4_5 = "claude-haiku-4-5"

    GEMINI_3_PRO = "gemini-3-pro-preview"
    GEMINI_3_FLASH = "gemini-3-flash-preview"

    MISTRAL_LARGE_3 = "mistral-large-2512"
    MISTRAL_MEDIUM_3_1 = "mistral-medium-2508"
    MISTRAL_SMALL_3_2 = "mistral-small-2506"
    DEVSTRAL_2 = "devstral-2512"
    MAGISTRAL_MEDIUM_1_2 = "magistral-medium-2509"

    GROK_4_1_FAST = "grok-4-1-fast-reasoning"
    GROK_4_1_FAST_NON_REASONING = "grok-4-1-fast-non-reasoning"
    GROK_CODE_FAST_1 = "grok-code-fast-1"

    APERTUS_8B_INSTRUCT = "swiss-ai/apertus-8b-instruct"


@dataclass(frozen=True)
class Capabilities:
    """Fixed attributes of one model."""

    provider_family: ProviderFamily
    supports_tool_calls: bool
    supports_streaming: bool
    supports_json_mode: bool
    max_context_tokens: int
    max_output_tokens: int


def _caps(
    family: ProviderFamily,
    *,
    context: int,
    output: int,
    tools: bool = True,
    streaming: bool = True,
    json_mode: bool = True,
) -> Capabilities:
    return Capabilities(
        provider_family=family,
        supports_tool_calls=tools,
        supports_streaming=streaming,
        supports_json_mode=json_mode,
        max_context_tokens=context,
        max_output_tokens=output,
    )


_OPENAI = ProviderFamily.OPENAI
_ANTHROPIC = ProviderFamily.ANTHROPIC
_GOOGLE = ProviderFamily.GOOGLE
_MISTRAL = ProviderFamily.MISTRAL
_XAI = ProviderFamily.XAI
_PUBLICAI = ProviderFamily.PUBLICAI

# Limits follow each provider's published model documentation. Where a
# provider publishes no separate output cap, a conservative 32k is used.
DEFAULT_CAPABILITIES: Mapping[ModelId, Capabilities] = MappingProxyType(
    {
        ModelId.GPT_5: _caps(_OPENAI, context=400_000, output=128_000),
        ModelId.CLAUDE_OPUS_4_6: _caps(_ANTHROPIC, context=200_000, output=128_000),
        ModelId.CLAUDE_SONNET_4_6: _caps(_ANTHROPIC, context=200_000, output=64_000),
        ModelId.CLAUDE_HAIKU_4_5: _caps(_ANTHROPIC, context=200_000, output=64_000),
        ModelId.GEMINI_3_PRO: _caps(_GOOGLE, context=1_048_576, output=65_536),
        ModelId.GEMINI_3_FLASH: _caps(_GOOGLE, context=1_048_576, output=65_536),
        ModelId.MISTRAL_LARGE_3: _caps(_MISTRAL, context=262_144, output=32_768),
        ModelId.MISTRAL_MEDIUM_3_1: _caps(_MISTRAL, context=131_072, output=32_768),
        ModelId.MISTRAL_SMALL_3_2: _caps(_MISTRAL, context=131_072, output=32_768),
        ModelId.DEVSTRAL_2: _caps(_MISTRAL, context=262_144, output=32_768),
        ModelId.MAGISTRAL_MEDIUM_1_2: _caps(_MISTRAL, context=131_072, output=32_768),
        ModelId.GROK_4_1_FAST: _caps(_XAI, context=2_000_000, output=32_768),
        ModelId.GROK_4_1_FAST_NON_REASONING: _caps(
            _XAI, context=2_000_000, output=32_768
        ),
        ModelId.GROK_CODE_FAST_1: _caps(_XAI, context=256_000, output=32_768),
        # The only model in the set without tool calling or JSON mode.
        ModelId.APERTUS_8B_INSTRUCT: _caps(
            _PUBLICAI, context=65_536, output=8_192, tools=False, json_mode=False
        ),
    }
)


class CapabilityRegistry:
    """Immutable ModelId -> Capabilities table.

    ``lookup`` is total over :class:`ModelId`. Plain strings are accepted for
    convenience; anything outside the closed set raises ``UnsupportedError``.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[ModelId, Capabilities]) -> None:
        """Freeze a copy of *entries*."""
        self._entries: Mapping[ModelId, Capabilities] = MappingProxyType(
            dict(entries)
        )

    def lookup(self, model: ModelId | str) -> Capabilities:
        """Return the capabilities of *model*."""
        model_id = resolve_model_id(model)
        try:
            return self._entries[model_id]
        except KeyError:
            raise UnsupportedError(
                f"Model {model_id.value!r} is not registered",
                hint="Build the registry from DEFAULT_CAPABILITIES or add an entry.",
            ) from None

    def models_for(self, family: ProviderFamily) -> tuple[ModelId, ...]:
        """Return all registered models of *family*, in declaration order."""
        return tuple(
            model
            for model, caps in self._entries.items()
            if caps.provider_family is family
        )

    def __contains__(self, model: object) -> bool:
        return model in self._entries

    def __iter__(self) -> Iterator[ModelId]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def resolve_model_id(model: ModelId | str) -> ModelId:
    """Coerce a wire id string into a :class:`ModelId`."""
    if isinstance(model, ModelId):
        return model
    try:
        return ModelId(model)
    except ValueError:
        supported = ", ".join(m.value for m in ModelId)
        raise UnsupportedError(
            f"Unknown model: {model!r}",
            hint=f"Supported models: {supported}",
        ) from None


@cache
def default_registry() -> CapabilityRegistry:
    """Return the process-wide registry, built on first use."""
    return CapabilityRegistry(DEFAULT_CAPABILITIES)
