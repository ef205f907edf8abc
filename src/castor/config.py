"""Configuration: frozen Config with auto-resolved provider credentials."""

from __future__ import annotations

import os
from typing import Any

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from castor.errors import ConfigurationError
from castor.registry import ProviderFamily
from castor.retry import RetryPolicy
from castor.transport import API_KEY_ENV_VARS

load_dotenv()


class Config(BaseModel):
    """Immutable configuration for a dispatcher and its default transport.

    API keys are auto-resolved from the standard environment variables
    (``OPENAI_API_KEY``, ``ANTHROPIC_API_KEY``, ``GEMINI_API_KEY``,
    ``MISTRAL_API_KEY``, ``XAI_API_KEY``, ``PUBLICAI_API_KEY``) when not
    passed explicitly. Only providers with a key can be called.

    Example:
        config = Config.build(api_keys={"anthropic": "sk-..."})
        dispatcher = Dispatcher.from_config(config)
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    api_keys: dict[ProviderFamily, SecretStr] = Field(default_factory=dict)
    base_urls: dict[ProviderFamily, str] = Field(default_factory=dict)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    #: Per-request deadline applied when the caller passes none.
    request_timeout_s: float | None = Field(default=120.0, gt=0)
    connect_timeout_s: float = Field(default=10.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _resolve_env_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        keys = dict(data.get("api_keys") or {})
        for family, env_var in API_KEY_ENV_VARS.items():
            if family in keys or family.value in keys:
                continue
            value = os.environ.get(env_var)
            if value:
                keys[family] = value
        return {**data, "api_keys": keys}

    @field_validator("base_urls")
    @classmethod
    def _check_base_urls(
        cls, value: dict[ProviderFamily, str]
    ) -> dict[ProviderFamily, str]:
        for family, url in value.items():
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"base_urls[{family.value}] must be an http(s) URL")
        return value

    @classmethod
    def build(cls, **kwargs: Any) -> Config:
        """Validate *kwargs* into a Config, raising ``ConfigurationError``."""
        try:
            return cls(**kwargs)
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            raise ConfigurationError(
                f"Invalid configuration for {loc or 'config'}: {first.get('msg')}",
                hint="Check the field types and ranges documented on Config.",
            ) from e

    def credentials(self) -> dict[ProviderFamily, str]:
        """Return plain-text credentials for the transport layer."""
        return {
            family: secret.get_secret_value()
            for family, secret in self.api_keys.items()
            if secret.get_secret_value()
        }

    def has_credentials(self, family: ProviderFamily) -> bool:
        return family in self.credentials()

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        providers = ", ".join(sorted(f.value for f in self.credentials()))
        return (
            f"Config(providers=[{providers}], api_keys=[REDACTED], "
            f"request_timeout_s={self.request_timeout_s!r}, retry={self.retry!r})"
        )

    __repr__ = __str__
