"""
Provider adapters. Callers ask for a model; the strategy is picked by configuration.

Usage:
    from book_moderation.providers import get_provider

    provider = get_provider("o4-mini")
    classifications = await provider.classify(units)
"""

import logging
from typing import Optional

from book_moderation.config import settings
from book_moderation.constants import MODEL_DISPLAY_LEVELS
from book_moderation.providers.analyzer import AnalyzerProvider
from book_moderation.providers.base import ModerationProvider
from book_moderation.providers.classifier import ClassifierProvider

logger = logging.getLogger(__name__)


def resolve_model(model: Optional[str] = None) -> str:
    """Default and display-level names ("Level 2") resolve to a concrete model id."""
    name = (model or settings.default_moderation_model).strip()
    return MODEL_DISPLAY_LEVELS.get(name, name)


def get_provider(model: Optional[str] = None) -> ModerationProvider:
    resolved = resolve_model(model)
    if resolved in settings.classifier_models:
        provider = ClassifierProvider(resolved)
    else:
        provider = AnalyzerProvider(resolved)
    logger.debug(f"Using {provider.strategy} strategy for model {resolved}")
    return provider


__all__ = [
    "ModerationProvider",
    "ClassifierProvider",
    "AnalyzerProvider",
    "get_provider",
    "resolve_model",
]
