"""Exceptions raised by the moderation engine."""

from typing import Optional


class ModerationError(Exception):
    """Base class for moderation failures."""
    pass


class MalformedProviderResponse(ModerationError):
    """Provider output does not match the expected schema. Fatal to the run."""

    def __init__(self, message: str, model: Optional[str] = None):
        self.model = model
        prefix = f"[{model}] " if model else ""
        super().__init__(f"{prefix}{message}")


class ProviderUnavailable(ModerationError):
    """Network, timeout or provider-side failure. Retryable by the caller."""

    def __init__(self, message: str, model: Optional[str] = None):
        self.model = model
        prefix = f"[{model}] " if model else ""
        super().__init__(f"{prefix}{message}")


class UnknownCategoryScore(ModerationError):
    """A score outside [0, 1] or an unrecognized category key."""

    def __init__(self, key: str, value: object, message: str = ""):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid score for category {key!r}: {value!r}")


class UnitNotFound(ModerationError):
    """A selected chapter id is not present in the supplied content."""

    def __init__(self, chapter_id: object):
        self.chapter_id = chapter_id
        super().__init__(f"Chapter {chapter_id!r} not found in submitted content")
