"""Provider contract shared by the classifier and analyzer strategies."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

from book_moderation.config import settings
from book_moderation.schemas.moderation import ModerationUnit, UnitClassification


class ModerationProvider(ABC):
    """
    One external classification back-end.

    ``classify`` returns one ``UnitClassification`` per input unit, in input
    order, with scores already normalized to canonical ``CategoryScores``.
    """

    strategy: str = ""

    def __init__(self, model: str, timeout: Optional[float] = None):
        self.model = model
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    @abstractmethod
    async def classify(self, units: Sequence[ModerationUnit]) -> List[UnitClassification]:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"


def as_mapping(obj: Any) -> Optional[Dict[str, Any]]:
    """Plain dict view of an SDK model, a mapping, or a simple attribute object."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return dict(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump(by_alias=True)
    if hasattr(obj, "__dict__"):
        return dict(vars(obj))
    return None
