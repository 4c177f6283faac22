"""
Provider selection by configuration.
"""
import logging

from onebox.core.config import Settings
from .base import BaseLLMProvider

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "anthropic", "gemini")


def create_provider(settings: Settings) -> BaseLLMProvider:
    """
    Build the LLM provider named by settings.llm_provider.

    Raises:
        ValueError: Unknown provider or missing API key
    """
    provider = settings.llm_provider.lower().strip()

    if provider == "openai":
        from .openai import OpenAIProvider
        return OpenAIProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            temperature=settings.llm_temperature,
        )
    if provider == "anthropic":
        from .anthropic import AnthropicProvider
        return AnthropicProvider(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            temperature=settings.llm_temperature,
        )
    if provider == "gemini":
        from .gemini import GeminiProvider
        return GeminiProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            temperature=settings.llm_temperature,
        )

    raise ValueError(
        f"Unknown LLM provider {settings.llm_provider!r}, expected one of {', '.join(SUPPORTED_PROVIDERS)}"
    )
