"""
Factory for creating image generation providers based on configuration.
Resolves the primary relay / official OpenAI chain from settings.
"""
from typing import Any, Optional
import logging

from app.services.image_generation.base import ImageGenerationProvider
from app.services.image_generation.providers.chat_completion import ChatCompletionImageProvider

logger = logging.getLogger(__name__)


def _primary_config(settings) -> dict[str, Any] | None:
    if not (settings.openai_api_key and settings.openai_base_url):
        return None
    return {
        "label": "primary",
        "api_key": settings.openai_api_key,
        "base_url": settings.openai_base_url,
        "model": settings.openai_model,
    }


def _official_config(settings) -> dict[str, Any] | None:
    if not settings.official_openai_api_key:
        return None
    return {
        "label": "official",
        "api_key": settings.official_openai_api_key,
        "base_url": settings.official_openai_base_url,
        "model": settings.official_openai_model,
    }


def resolve_provider_config(settings) -> dict[str, Any] | None:
    """
    Pick the upstream endpoint:
    preferred primary if complete, else official if it has a key, else primary if complete.
    Returns None when neither is configured.
    """
    primary = _primary_config(settings)
    official = _official_config(settings)
    if settings.prefer_primary_provider and primary:
        chosen = primary
    elif official:
        chosen = official
    else:
        chosen = primary
    if chosen is None:
        return None
    return {
        **chosen,
        "timeout": settings.generation_request_timeout,
        "max_tokens": settings.generation_max_tokens,
    }


class ImageProviderFactory:
    """Factory for creating image generation providers."""

    PROVIDERS = {
        "chat_completion": ChatCompletionImageProvider,
    }

    @classmethod
    def create(cls, provider_name: str, config: dict) -> ImageGenerationProvider:
        """
        Create provider instance by name.

        Raises:
            ValueError: If provider name is unknown
        """
        provider_class = cls.PROVIDERS.get(provider_name.lower())

        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(
                f"Unknown provider: {provider_name}. "
                f"Available providers: {available}"
            )

        logger.info("image_provider_created", extra={"model": config.get("model")})
        provider = provider_class(config)

        if not provider.is_available():
            logger.warning("image_provider_not_configured", extra={"model": config.get("model")})

        return provider

    @classmethod
    def create_from_settings(cls, settings, model_override: Optional[str] = None) -> ImageGenerationProvider:
        """
        Create provider from application settings.
        An unconfigured chain still yields a provider; its generate() raises a configuration error.
        """
        config = resolve_provider_config(settings) or {"label": "unconfigured"}
        if model_override:
            config["model"] = model_override
        return cls.create("chat_completion", config)
