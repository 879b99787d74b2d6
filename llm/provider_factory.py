"""
Factory for the LLM providers a summarizer can be built on.
"""

import logging
from typing import Callable, Dict, Any, Optional

from llm.provider_interface import LLMProvider

logger = logging.getLogger(__name__)


def _create_litellm(config: Dict[str, Any]) -> LLMProvider:
    from llm.litellm_provider import LiteLLMProvider
    return LiteLLMProvider(**config)


class LLMProviderFactory:
    """Creates providers by type name."""

    _builders: Dict[str, Callable[[Dict[str, Any]], LLMProvider]] = {
        "litellm": _create_litellm,
    }

    @classmethod
    def create_provider(cls, provider_type: str, config: Optional[Dict[str, Any]] = None) -> LLMProvider:
        """
        Create an LLM provider instance.

        Args:
            provider_type: The type of provider to create ("litellm")
            config: Keyword arguments for the provider's constructor

        Raises:
            ValueError: If the provider type is not supported
        """
        builder = cls._builders.get(provider_type.lower())
        if builder is None:
            logger.error(f"Unsupported provider type: {provider_type}")
            raise ValueError(f"Unsupported provider type: {provider_type}")

        logger.info(f"Creating LLM provider of type: {provider_type}")
        # unset values fall back to the provider's own defaults
        return builder({key: value for key, value in (config or {}).items() if value is not None})

    @classmethod
    def create_from_config(cls, config: Dict[str, Any]) -> LLMProvider:
        """Create a provider from a dict with a "type" key plus constructor arguments."""
        if "type" not in config:
            raise ValueError("Provider configuration must include a 'type' field")

        config = dict(config)
        provider_type = config.pop("type")
        return cls.create_provider(provider_type, config)
