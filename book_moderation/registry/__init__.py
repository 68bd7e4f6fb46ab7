"""
Run registries: the latest moderation run per (book, model).

Usage:
    from book_moderation.registry import InMemoryRunRegistry

    registry = InMemoryRunRegistry()
    sequence = await registry.begin(book_id, model)
"""

from book_moderation.registry.base import RunRegistry
from book_moderation.registry.memory import InMemoryRunRegistry
from book_moderation.registry.sql import SqlRunRegistry

__all__ = [
    "RunRegistry",
    "InMemoryRunRegistry",
    "SqlRunRegistry",
]
