"""
Conversion between ``ModerationRun`` and the persisted ``ModerationRecord``.

A record written after a selective re-check only carries the slots that
were re-checked; every other slot is null and merging keeps the stored
value. Chapter arrays merge by chapter id.

Every unit result carries the sequence of the run that produced it, so
merges compare units one by one instead of whole runs.
"""

import json
import logging
from datetime import datetime
from typing import Collection, List, Optional, Tuple

from pydantic import ValidationError

from book_moderation.constants import UNIT_COVER_IMAGE, UNIT_DESCRIPTION, UNIT_TITLE
from book_moderation.moderation.decision import rerate_result
from book_moderation.schemas.moderation import AgeRating, ModerationRecord, ModerationRun, UnitResult

logger = logging.getLogger(__name__)

# Slot name on the run for each book-info unit kind
BOOK_INFO_SLOTS = {
    UNIT_TITLE: "title",
    UNIT_DESCRIPTION: "description",
    UNIT_COVER_IMAGE: "cover_image",
}


def _chapter_sort_key(result: UnitResult):
    return (result.chapter_number is None, result.chapter_number or 0, result.chapter_id or "")


def _dump_unit(result: Optional[UnitResult]) -> Optional[str]:
    return result.model_dump_json() if result is not None else None


def _dump_chapters(results: List[UnitResult]) -> Optional[str]:
    if not results:
        return None
    return json.dumps([r.model_dump(mode="json") for r in results])


def run_to_record(run: ModerationRun, only: Optional[Collection[str]] = None) -> ModerationRecord:
    """
    Serialize a run into a record.

    Args:
        run: The run to persist
        only: Unit keys to include (``"title"``, ``"chapter:3"``, ...);
              ``None`` writes every slot
    """
    def wanted(result: Optional[UnitResult]) -> bool:
        return result is not None and (only is None or result.key in only)

    return ModerationRecord(
        book_id=run.content_id,
        model=run.model,
        title=_dump_unit(run.title) if wanted(run.title) else None,
        description=_dump_unit(run.description) if wanted(run.description) else None,
        cover_image=_dump_unit(run.cover_image) if wanted(run.cover_image) else None,
        chapters=_dump_chapters([c for c in run.chapters if wanted(c)]),
    )


def _load_chapters(raw: Optional[str]) -> List[UnitResult]:
    if not raw:
        return []
    items = json.loads(raw)
    if not isinstance(items, list):
        raise ValueError("stored chapters is not a JSON array")
    return [UnitResult.model_validate(item) for item in items]


def merge_records(existing: Optional[ModerationRecord], update: ModerationRecord) -> ModerationRecord:
    """Null slots in ``update`` keep the stored value; chapters merge by chapter id."""
    if existing is None:
        return update

    chapters = existing.chapters
    if update.chapters:
        merged = {c.chapter_id: c for c in _load_chapters(existing.chapters)}
        merged.update({c.chapter_id: c for c in _load_chapters(update.chapters)})
        chapters = _dump_chapters(sorted(merged.values(), key=_chapter_sort_key))

    return ModerationRecord(
        book_id=update.book_id,
        model=update.model,
        title=update.title if update.title is not None else existing.title,
        description=update.description if update.description is not None else existing.description,
        cover_image=update.cover_image if update.cover_image is not None else existing.cover_image,
        chapters=chapters,
    )


def record_to_run(
    record: ModerationRecord,
    rating: AgeRating,
    sequence: int = 0,
    created_at: Optional[datetime] = None,
) -> ModerationRun:
    """Rebuild a run from its stored record. Raises ValueError on corrupt slots."""
    try:
        slots = {
            "title": UnitResult.model_validate_json(record.title) if record.title else None,
            "description": UnitResult.model_validate_json(record.description) if record.description else None,
            "cover_image": UnitResult.model_validate_json(record.cover_image) if record.cover_image else None,
            "chapters": sorted(_load_chapters(record.chapters), key=_chapter_sort_key),
        }
    except (ValidationError, json.JSONDecodeError) as e:
        logger.error(f"Book {record.book_id}: stored {record.model} verdict is corrupt: {e}")
        raise ValueError(f"Corrupt moderation record for {record.book_id}/{record.model}") from e

    extra = {"created_at": created_at} if created_at is not None else {}
    return ModerationRun(
        content_id=record.book_id,
        model=record.model,
        rating=rating,
        sequence=sequence,
        **slots,
        **extra,
    )


def stamp_results(run: ModerationRun, keys: Optional[Collection[str]] = None) -> ModerationRun:
    """
    Mark results as produced by ``run``.

    With ``keys`` only those units are stamped; otherwise every result that
    has no sequence yet is.
    """
    def stamp(result: Optional[UnitResult]) -> Optional[UnitResult]:
        if result is None:
            return None
        wanted = result.sequence == 0 if keys is None else result.key in keys
        if not wanted or result.sequence == run.sequence:
            return result
        return result.model_copy(update={"sequence": run.sequence})

    return run.model_copy(update={
        **{slot: stamp(getattr(run, slot)) for slot in BOOK_INFO_SLOTS.values()},
        "chapters": [stamp(c) for c in run.chapters],
    })


def _rerated(result: UnitResult, source: AgeRating, target: AgeRating) -> UnitResult:
    # Stored scores stay; the flag follows the rating of the run it lands in
    return result if source == target else rerate_result(result, target)


def carry_over(
    fresh: ModerationRun,
    previous: ModerationRun,
    carry_book_info: bool,
    carry_chapters: bool,
) -> ModerationRun:
    """
    Fill the slots a selective re-check left out from the stored run.

    Fresh results always win. Carried results are re-decided for the
    fresh run's rating; chapters merge by chapter id.
    """
    slots = {}
    for slot in BOOK_INFO_SLOTS.values():
        result = getattr(fresh, slot)
        prior = getattr(previous, slot)
        if result is None and carry_book_info and prior is not None:
            result = _rerated(prior, previous.rating, fresh.rating)
        slots[slot] = result

    chapters = {}
    if carry_chapters:
        chapters = {c.chapter_id: _rerated(c, previous.rating, fresh.rating) for c in previous.chapters}
    chapters.update({c.chapter_id: c for c in fresh.chapters})

    return fresh.model_copy(update={
        **slots,
        "chapters": sorted(chapters.values(), key=_chapter_sort_key),
    })


def merge_stale(
    stored: ModerationRun,
    stale: ModerationRun,
    add_missing: bool,
) -> Tuple[ModerationRun, bool]:
    """
    Fold a run that finished after a newer one was stored.

    A stale result replaces a stored one only when the stored result is
    older. Units the stored run lacks are taken only with ``add_missing``
    (a selective re-check); a stale full run never changes the chapter set.
    Returns the merged run, which keeps the stored sequence and rating, and
    whether anything changed.
    """
    def newer(prior: Optional[UnitResult], result: UnitResult) -> bool:
        if prior is None:
            return add_missing
        return prior.sequence < result.sequence

    changed = False
    slots = {}
    for slot in BOOK_INFO_SLOTS.values():
        prior = getattr(stored, slot)
        result = getattr(stale, slot)
        if result is not None and newer(prior, result):
            slots[slot] = _rerated(result, stale.rating, stored.rating)
            changed = True

    chapters = {c.chapter_id: c for c in stored.chapters}
    for result in stale.chapters:
        if newer(chapters.get(result.chapter_id), result):
            chapters[result.chapter_id] = _rerated(result, stale.rating, stored.rating)
            changed = True

    if not changed:
        return stored, False
    return stored.model_copy(update={
        **slots,
        "chapters": sorted(chapters.values(), key=_chapter_sort_key),
    }), True
