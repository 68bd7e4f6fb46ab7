"""
Moderation pipeline: one re-check of one book by one model.

    begin -> build units -> classify -> decide -> record (carry over under the key lock)

Nothing touches the registry before ``record``, so a run that fails at any
earlier step leaves the stored verdict for that model as it was.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Union

from book_moderation.constants import UNIT_CHAPTER
from book_moderation.moderation.decision import RatingLike, decide_unit
from book_moderation.moderation.records import BOOK_INFO_SLOTS
from book_moderation.moderation.units import build_units
from book_moderation.providers import get_provider, resolve_model
from book_moderation.providers.base import ModerationProvider
from book_moderation.registry.base import RunRegistry
from book_moderation.schemas.moderation import AgeRating, BookContent, ModerationRun, UnitResult

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str], ModerationProvider]


def _chapter_order(result: UnitResult):
    return (result.chapter_number is None, result.chapter_number or 0, result.chapter_id or "")


class ModerationPipeline:
    """Runs moderation checks and records their verdicts in a registry."""

    def __init__(self, registry: RunRegistry, provider_factory: ProviderFactory = get_provider):
        self.registry = registry
        self.provider_factory = provider_factory

    async def run(
        self,
        content_id: Union[int, str],
        content: BookContent,
        model: Optional[str] = None,
        rating: RatingLike = 0,
        chapter_ids: Optional[Iterable[Union[int, str]]] = None,
        moderate_book_info: bool = True,
    ) -> ModerationRun:
        """
        Check ``content`` with ``model`` for the declared ``rating`` and record the run.

        With ``chapter_ids`` or ``moderate_book_info=False`` only part of the
        book is re-checked; every slot outside that part is carried over
        from the model's previous run.

        Returns the verdict stored for the model afterwards. When a newer
        run already covered every unit checked here, that is the newer run.

        Raises:
            MalformedProviderResponse, UnknownCategoryScore: provider broke its contract
            ProviderUnavailable: the analyzer call failed
            ValueError: unknown rating
        """
        content_id = str(content_id)
        model_id = resolve_model(model)
        target = AgeRating.parse(rating)
        if chapter_ids is not None:
            chapter_ids = list(chapter_ids)

        sequence = await self.registry.begin(content_id, model_id)
        logger.info(
            f"Book {content_id}: starting {model_id} run #{sequence} for {target.label}"
            + (f" (chapters {chapter_ids})" if chapter_ids is not None else "")
        )

        units = build_units(content, chapter_ids=chapter_ids, moderate_book_info=moderate_book_info)
        if units:
            provider = self.provider_factory(model_id)
            classifications = await provider.classify(units)
        else:
            logger.warning(f"Book {content_id}: nothing to classify")
            classifications = []
        results = [decide_unit(c, target, sequence=sequence) for c in classifications]
        fresh = self._assemble(content_id, model_id, target, sequence, results)

        # Slots outside this re-check are carried over under the registry key lock
        stored, recorded = await self.registry.record_recheck(
            content_id,
            model_id,
            fresh,
            carry_book_info=not moderate_book_info,
            carry_chapters=chapter_ids is not None,
        )
        if not recorded:
            logger.warning(
                f"Book {content_id}: {model_id} run #{sequence} was superseded by "
                f"run #{stored.sequence}; returning the stored verdict"
            )
        else:
            flagged = [u.key for u in stored.units if u.flagged]
            logger.info(
                f"Book {content_id}: {model_id} verdict after run #{sequence} "
                f"{'passed' if stored.passed else 'flagged ' + ', '.join(flagged)}"
            )
        return stored

    @staticmethod
    def _assemble(
        content_id: str,
        model: str,
        rating: AgeRating,
        sequence: int,
        results: List[UnitResult],
    ) -> ModerationRun:
        """Run holding only this re-check's results."""
        slots: Dict[str, Optional[UnitResult]] = {slot: None for slot in BOOK_INFO_SLOTS.values()}
        chapters: List[UnitResult] = []
        for result in results:
            if result.kind == UNIT_CHAPTER:
                chapters.append(result)
            else:
                slots[BOOK_INFO_SLOTS[result.kind]] = result

        return ModerationRun(
            content_id=content_id,
            model=model,
            rating=rating,
            sequence=sequence,
            chapters=sorted(chapters, key=_chapter_order),
            **slots,
        )
