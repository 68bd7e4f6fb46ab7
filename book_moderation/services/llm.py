from langchain_openai import ChatOpenAI
from langchain_anthropic import ChatAnthropic
from langchain_ollama import ChatOllama
from langchain_core.language_models import BaseChatModel
from book_moderation.config import settings
from typing import Literal, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

# Module-level cache for LLM clients (keyed by provider and model)
_llm_cache: dict[Tuple[str, str], BaseChatModel] = {}


def _create_llm(provider: str, model: str) -> BaseChatModel:
    """Internal function to create a new LLM instance."""
    if provider == "openai":
        if not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when using OpenAI")
        logger.debug(f"Creating ChatOpenAI instance (model: {model})")
        kwargs = {}
        # o-series reasoning models only accept the default temperature
        if not model.startswith("o"):
            kwargs["temperature"] = 0
        return ChatOpenAI(
            model=model,
            api_key=settings.openai_api_key,
            timeout=settings.provider_timeout_seconds,
            max_retries=0,
            **kwargs,
        )
    elif provider == "anthropic":
        if not settings.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY is required when using Anthropic")
        logger.debug(f"Creating ChatAnthropic instance (model: {model})")
        return ChatAnthropic(
            model=model,
            temperature=0,
            api_key=settings.anthropic_api_key,
            timeout=settings.provider_timeout_seconds,
            max_retries=0,
        )
    elif provider == "ollama":
        logger.debug(f"Creating ChatOllama instance (model: {model}, base_url: {settings.ollama_base_url})")
        return ChatOllama(
            model=model,
            base_url=settings.ollama_base_url,
            temperature=0,
            format="json",
        )
    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")


def get_llm(
    model: str,
    provider: Optional[Literal["openai", "anthropic", "ollama"]] = None,
) -> BaseChatModel:
    """
    Factory function to get a chat model for the analyzer strategy.
    Caches instances by (provider, model) to avoid creating new clients on every call.

    Args:
        model: Chat model name, e.g. "gpt-4o" or "o4-mini"
        provider: Optional LLM provider to use. If None, uses the default from settings.
                  Options: "openai", "anthropic", "ollama"

    Returns:
        BaseChatModel instance (ChatOpenAI, ChatAnthropic, or ChatOllama)
    """
    key = (provider or settings.analyzer_llm_provider, model)

    if key not in _llm_cache:
        _llm_cache[key] = _create_llm(*key)

    return _llm_cache[key]
