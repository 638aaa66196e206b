"""Provider credentials and endpoints resolved from the environment.

``ProviderSettings`` reads ``SEMANTICDOCS_*`` variables (the API key also
falls back to the conventional ``VOYAGE_API_KEY``). Provider builders call
:meth:`ProviderSettings.require_api_key` so a missing credential fails at
startup with :class:`ConfigurationError`, never in the middle of a run.
"""

from __future__ import annotations

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config import EmbeddingConfig, RerankConfig
from .errors import ConfigurationError
from .providers import DEFAULT_BASE_URL, VoyageEmbeddingProvider, VoyageRerankProvider

__all__ = ("ProviderSettings", "build_embedding_provider", "build_rerank_provider")


class ProviderSettings(BaseSettings):
    """Credentials and endpoints for the hosted embedding and rerank APIs."""

    model_config = SettingsConfigDict(
        env_prefix="SEMANTICDOCS_",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    voyage_api_key: str | None = Field(
        None,
        description="Voyage AI API key",
        validation_alias=AliasChoices("SEMANTICDOCS_VOYAGE_API_KEY", "VOYAGE_API_KEY"),
    )
    voyage_base_url: str = Field(DEFAULT_BASE_URL, description="Voyage AI API base URL")
    request_timeout: float | None = Field(
        None, gt=0, description="Override for provider request timeouts in seconds"
    )

    def require_api_key(self) -> str:
        """Return the API key or raise :class:`ConfigurationError` when it is missing."""
        key = (self.voyage_api_key or "").strip()
        if not key:
            raise ConfigurationError(
                "Voyage API key is not configured; set VOYAGE_API_KEY or SEMANTICDOCS_VOYAGE_API_KEY"
            )
        return key


def build_embedding_provider(
    config: EmbeddingConfig, settings: ProviderSettings | None = None
) -> VoyageEmbeddingProvider:
    settings = settings or ProviderSettings()
    return VoyageEmbeddingProvider(
        api_key=settings.require_api_key(),
        model=config.model,
        dimensions=config.dimensions,
        base_url=settings.voyage_base_url,
        timeout=settings.request_timeout or config.timeout_seconds,
    )


def build_rerank_provider(
    config: RerankConfig, settings: ProviderSettings | None = None
) -> VoyageRerankProvider:
    settings = settings or ProviderSettings()
    return VoyageRerankProvider(
        api_key=settings.require_api_key(),
        model=config.model,
        base_url=settings.voyage_base_url,
        timeout=settings.request_timeout or config.timeout,
    )
