from typing import Dict, List, Optional

from book_moderation.registry.base import RegistryKey, RunRegistry
from book_moderation.schemas.moderation import ModerationRun


class InMemoryRunRegistry(RunRegistry):
    """Process-local registry. Runs are immutable, so they are stored as-is."""

    def __init__(self):
        super().__init__()
        self._runs: Dict[RegistryKey, ModerationRun] = {}

    async def _load(self, content_id: str, model: str) -> Optional[ModerationRun]:
        return self._runs.get((content_id, model))

    async def _store(self, run: ModerationRun) -> None:
        self._runs[(run.content_id, run.model)] = run

    async def _list_models(self, content_id: str) -> List[str]:
        return [model for (cid, model) in self._runs if cid == content_id]
