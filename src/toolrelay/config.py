import logging
from typing import Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from toolrelay.errors import ConfigurationError
from toolrelay.provider import (
    AnthropicProvider,
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
)

logger = logging.getLogger(__name__)

Vendor = Literal["openai", "openrouter", "anthropic", "openai_compatible"]

PROVIDERS: dict[str, type[ModelProvider]] = {
    "openai": OpenAIProvider,
    "openrouter": OpenRouter,
    "anthropic": AnthropicProvider,
    "openai_compatible": OpenAICompatibleProvider,
}


class ProviderConfig(BaseSettings):
    """Provider settings resolved once per process from ``TOOLRELAY_*``.

    When ``TOOLRELAY_API_KEY`` is unset the vendor's conventional key
    variable (``OPENAI_API_KEY``, ``OPENROUTER_API_KEY``,
    ``ANTHROPIC_API_KEY``) is used.

    Args:
        vendor: Which adapter to build.
        api_key: Credential for the vendor.  Optional only for
            ``openai_compatible`` servers.
        base_url: Endpoint override.  Required for ``openai_compatible``.
        model: Default model alias for requests that do not name one.
        max_tokens: Completion token limit per provider turn.
        temperature: Sampling temperature.
        timeout: Upstream request timeout in seconds.
        max_retries: SDK-level retries for connection failures.
    """

    model_config = SettingsConfigDict(
        env_prefix="TOOLRELAY_", env_ignore_empty=True,
    )

    vendor: Vendor = "openai"
    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: float = 600.0
    max_retries: int = 2

    openai_api_key: str | None = Field(
        default=None, validation_alias="OPENAI_API_KEY", repr=False,
    )
    openrouter_api_key: str | None = Field(
        default=None, validation_alias="OPENROUTER_API_KEY", repr=False,
    )
    anthropic_api_key: str | None = Field(
        default=None, validation_alias="ANTHROPIC_API_KEY", repr=False,
    )

    @field_validator("vendor", mode="before")
    @classmethod
    def _normalize_vendor(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def _fall_back_to_vendor_key(self):
        if not self.api_key:
            self.api_key = getattr(self, f"{self.vendor}_api_key", None)
        return self

    @classmethod
    def from_env(cls) -> "ProviderConfig":
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid provider configuration: {e}") from e

    @property
    def default_model(self) -> str:
        return self.model or PROVIDERS[self.vendor].default_model


def select_provider(config: ProviderConfig) -> ModelProvider:
    """Build the adapter named by ``config``.

    Raises:
        ConfigurationError: If the vendor is unknown or a required
            credential or endpoint is missing.
    """
    provider_cls = PROVIDERS.get(config.vendor)
    if provider_cls is None:
        raise ConfigurationError(f"Unknown provider vendor: {config.vendor}")

    if config.vendor == "openai_compatible":
        if not config.base_url:
            raise ConfigurationError(
                "openai_compatible provider requires a base_url"
            )
        provider = OpenAICompatibleProvider(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )
    else:
        if not config.api_key:
            raise ConfigurationError(
                f"{config.vendor} API key is not configured"
            )
        provider = provider_cls(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    logger.info(
        f"LLM provider initialized: {config.vendor}, "
        f"model={config.default_model}"
    )
    return provider


class ServerSettings(BaseSettings):
    """HTTP surface settings, read from ``TOOLRELAY_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLRELAY_", env_ignore_empty=True,
    )

    host: str = "127.0.0.1"
    port: int = 8000
    system_prompt: str | None = None
    max_result_chars: int = 4000
    max_turns: int | None = None
    channel_size: int = 1024
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        try:
            return cls()
        except ValidationError as e:
            raise ConfigurationError(f"Invalid server configuration: {e}") from e
