"""
Run registry contract.

One current ``ModerationRun`` per (content id, model). Writes for the same
key are serialized with a per-key lock and ordered by a monotonic sequence
issued when a run starts. Each unit result keeps the sequence of the run
that produced it, so an older run that finishes late never overwrites a
newer result, while its results for units nobody re-checked since still
land. Different keys never block each other.
"""

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from book_moderation.moderation.decision import RatingLike, rerate_run
from book_moderation.moderation.records import (
    carry_over,
    merge_records,
    merge_stale,
    record_to_run,
    run_to_record,
    stamp_results,
)
from book_moderation.schemas.moderation import AgeRating, ModerationRecord, ModerationRun

logger = logging.getLogger(__name__)

RegistryKey = Tuple[str, str]


class RunRegistry(ABC):
    """Base class for run storage backends."""

    def __init__(self):
        # Locks go away once no run holds or waits on them
        self._locks: "weakref.WeakValueDictionary[RegistryKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        # Sequences handed out by begin() that storage has not caught up with yet
        self._issued: Dict[RegistryKey, int] = {}

    def _lock(self, key: RegistryKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _next_sequence(self, key: RegistryKey) -> int:
        # Caller holds the key lock
        stored = await self._load_sequence(*key)
        sequence = max(self._issued.get(key, 0), stored or 0) + 1
        self._issued[key] = sequence
        return sequence

    def _settle(self, key: RegistryKey, stored: int) -> None:
        # Storage is authoritative again once nothing newer is in flight
        if self._issued.get(key, 0) <= stored:
            self._issued.pop(key, None)

    @staticmethod
    def _check_key(content_id: str, model: str, run: ModerationRun) -> None:
        if run.content_id != content_id or run.model != model:
            raise ValueError(
                f"Run for {run.content_id}/{run.model} cannot be recorded under {content_id}/{model}"
            )

    async def begin(self, content_id: str, model: str) -> int:
        """Reserve the sequence number for a run that is about to start."""
        key = (str(content_id), model)
        async with self._lock(key):
            return await self._next_sequence(key)

    async def record(self, content_id: str, model: str, run: ModerationRun) -> bool:
        """
        Store ``run`` as the current verdict of ``model`` for ``content_id``.

        A run without a sequence (0) is stamped with the next one. Returns
        ``False`` when every result of ``run`` is older than what is stored
        and nothing was written.
        """
        content_id = str(content_id)
        self._check_key(content_id, model, run)
        _, recorded = await self._commit(run, carry_book_info=False, carry_chapters=False)
        return recorded

    async def record_recheck(
        self,
        content_id: str,
        model: str,
        run: ModerationRun,
        carry_book_info: bool = False,
        carry_chapters: bool = False,
    ) -> Tuple[ModerationRun, bool]:
        """
        Store a possibly selective run and return the verdict now stored.

        Slots the re-check left out (book info with ``carry_book_info``,
        other chapters with ``carry_chapters``) are filled from the stored
        run while the key lock is held, so concurrent re-checks of different
        parts never erase each other. The flag is ``False`` when nothing
        from ``run`` was newer than the stored verdict.
        """
        content_id = str(content_id)
        self._check_key(content_id, model, run)
        return await self._commit(run, carry_book_info, carry_chapters)

    async def _commit(
        self,
        run: ModerationRun,
        carry_book_info: bool,
        carry_chapters: bool,
    ) -> Tuple[ModerationRun, bool]:
        content_id, model = run.content_id, run.model
        key = (content_id, model)

        async with self._lock(key):
            if run.sequence == 0:
                run = run.model_copy(update={"sequence": await self._next_sequence(key)})
            run = stamp_results(run)

            previous = await self._load(content_id, model)
            if previous is None:
                stored, changed = run, True
            elif run.sequence >= previous.sequence:
                stored, changed = carry_over(run, previous, carry_book_info, carry_chapters), True
            else:
                stored, changed = merge_stale(previous, run, add_missing=carry_chapters)

            if changed:
                await self._store(stored)
            self._settle(key, stored.sequence)

        if not changed:
            logger.warning(
                f"Book {content_id}: dropping stale {model} run "
                f"#{run.sequence} (stored run is #{stored.sequence})"
            )
        elif stored.sequence != run.sequence:
            logger.info(
                f"Book {content_id}: merged late {model} run #{run.sequence} "
                f"into run #{stored.sequence}"
            )
        else:
            logger.info(
                f"Book {content_id}: recorded {model} run #{run.sequence} "
                f"({'passed' if stored.passed else 'flagged'} for {stored.rating.label})"
            )
        return stored, changed

    async def get(self, content_id: str, model: str) -> Optional[ModerationRun]:
        return await self._load(str(content_id), model)

    async def list_models(self, content_id: str) -> List[str]:
        """Every model with a recorded run for the content, sorted by name."""
        return sorted(await self._list_models(str(content_id)))

    async def list_runs(self, content_id: str) -> List[ModerationRun]:
        runs = []
        for model in await self.list_models(content_id):
            run = await self.get(content_id, model)
            if run is not None:
                runs.append(run)
        return runs

    async def overall_passed(self, content_id: str, model: str) -> Optional[bool]:
        """Stored aggregate verdict; ``None`` when the model has not checked the content yet."""
        run = await self.get(content_id, model)
        if run is None:
            return None
        return run.passed

    async def has_run(self, content_id: str, model: str) -> bool:
        return await self.get(content_id, model) is not None

    async def merge_record(self, record: ModerationRecord, rating: RatingLike) -> ModerationRun:
        """
        Merge a (possibly partial) verdict record into the stored run.

        Null slots keep what is stored; chapter arrays merge by chapter id.
        The merged run is re-decided for ``rating`` and recorded as the newest
        run; only the units the record carries count as produced by it.
        """
        target = AgeRating.parse(rating)
        content_id, model = str(record.book_id), record.model
        key = (content_id, model)

        async with self._lock(key):
            updated = {u.key for u in record_to_run(record, target).units}
            current = await self._load(content_id, model)
            existing = run_to_record(current) if current is not None else None
            merged = merge_records(existing, record)
            sequence = await self._next_sequence(key)
            run = rerate_run(record_to_run(merged, target, sequence=sequence), target)
            run = stamp_results(run, keys=updated)
            await self._store(run)
            self._settle(key, sequence)

        logger.info(f"Book {content_id}: merged {model} verdict record into run #{sequence}")
        return run

    # ── Storage hooks ──

    @abstractmethod
    async def _load(self, content_id: str, model: str) -> Optional[ModerationRun]:
        ...

    @abstractmethod
    async def _store(self, run: ModerationRun) -> None:
        ...

    @abstractmethod
    async def _list_models(self, content_id: str) -> List[str]:
        ...

    async def _load_sequence(self, content_id: str, model: str) -> Optional[int]:
        run = await self._load(content_id, model)
        return run.sequence if run is not None else None
