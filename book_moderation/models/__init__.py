"""
All SQLAlchemy models re-exported for convenient imports.

Usage:
    from book_moderation.models import ModerationResult
"""

from book_moderation.models.moderation import ModerationResult

__all__ = [
    "ModerationResult",
]
