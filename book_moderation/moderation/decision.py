"""
Threshold decision engine.

A unit targeted at an age rating passes when every category score stays
strictly below the rating's ceiling. The ceiling of a tier is its
escalation threshold, checked against the next tier up:

    EVERYONE  -> scores must stay below 0.10 (the TEEN escalation check)
    TEEN      -> scores must stay below 0.20 (the MATURE escalation check)
    MATURE    -> unconditional, the next tier (ADULT) has no ceiling
    ADULT     -> unconditional

Ceilings never decrease as the rating gets more permissive, so passing a
stricter rating implies passing every looser one.

All functions here are pure: same scores and rating give the same verdict.
"""

import logging
from typing import List, Optional, Union

from book_moderation.constants import (
    SEVERITY_ELEVATED,
    SEVERITY_HIGH,
    SEVERITY_OK,
    SEVERITY_SEVERE,
)
from book_moderation.moderation.aggregator import aggregate_max
from book_moderation.schemas.moderation import (
    AgeRating,
    CategoryScores,
    ModerationRun,
    OffendingCategory,
    UnitClassification,
    UnitResult,
)

logger = logging.getLogger(__name__)

RatingLike = Union[AgeRating, int, str]


def rating_ceiling(rating: RatingLike) -> Optional[float]:
    """Score limit for content declared at ``rating``; ``None`` means it always passes."""
    target = AgeRating.parse(rating)
    if target == AgeRating.ADULT:
        return None
    next_tier = AgeRating(target + 1)
    if next_tier.threshold is None:
        return None
    return target.threshold


def would_pass_for_rating(scores: CategoryScores, rating: RatingLike) -> bool:
    """Would content with these scores pass if declared at ``rating``?"""
    ceiling = rating_ceiling(rating)
    if ceiling is None:
        return True
    return all(score < ceiling for score in scores.values())


def offending_categories(scores: CategoryScores, rating: RatingLike) -> List[OffendingCategory]:
    """Categories at or above the rating's ceiling, worst first (ties by name)."""
    ceiling = rating_ceiling(rating)
    if ceiling is None:
        return []
    hits = [(category, score) for category, score in scores.items() if score >= ceiling]
    hits.sort(key=lambda item: (-item[1], item[0]))
    return [
        OffendingCategory(category=category, score=score, percentage=round(score * 100, 2))
        for category, score in hits
    ]


def score_severity(score: float, rating: RatingLike) -> str:
    """
    Report band for a single score relative to the rating's ceiling.

    Ratings without a ceiling (MATURE, ADULT) always report ``ok``, in line
    with their unconditional pass.
    """
    ceiling = rating_ceiling(rating)
    if ceiling is None:
        return SEVERITY_OK
    if score > ceiling * 3:
        return SEVERITY_SEVERE
    if score > ceiling * 2:
        return SEVERITY_HIGH
    if score > ceiling:
        return SEVERITY_ELEVATED
    return SEVERITY_OK


def unit_passes(result: UnitResult, rating: RatingLike) -> bool:
    """Re-evaluate a stored unit result for a rating. Unclassified units never pass."""
    if not result.classified:
        return False
    return would_pass_for_rating(result.category_scores, rating)


def _build_reason(
    classification: UnitClassification,
    target: AgeRating,
    offending: List[OffendingCategory],
) -> Optional[str]:
    parts = []
    if offending:
        parts.append(
            f"Exceeds {target.label} limit: "
            f"{', '.join(o.label for o in offending)}"
        )
    if classification.reason:
        parts.append(classification.reason)
    # Provider's own verdict is a hint only; the score-derived decision stands
    if classification.provider_flagged and classification.flagged_categories:
        parts.append(f"Provider flagged: {', '.join(classification.flagged_categories)}")
    elif classification.provider_flagged:
        parts.append("Provider flagged this content")
    return "; ".join(parts) if parts else None


def decide_unit(classification: UnitClassification, rating: RatingLike, sequence: int = 0) -> UnitResult:
    """Aggregate a unit's scores and render its verdict for ``rating`` in run ``sequence``."""
    unit = classification.unit
    target = AgeRating.parse(rating)
    identity = dict(
        kind=unit.kind,
        chapter_id=unit.chapter_id,
        chapter_number=unit.chapter_number,
        chapter_title=unit.chapter_title,
        sequence=sequence,
    )

    if classification.error is not None:
        logger.warning(f"{unit.label}: marked failed-to-classify ({classification.error})")
        return UnitResult(
            **identity,
            flagged=True,
            error=classification.error,
            reason=f"Could not classify {unit.label}: {classification.error}",
            provider_flagged=classification.provider_flagged,
        )

    scores = aggregate_max(classification.scores)
    offending = offending_categories(scores, target)
    flagged = not would_pass_for_rating(scores, target)

    if classification.provider_flagged and not flagged:
        logger.info(
            f"{unit.label}: provider flagged content that is within the "
            f"{target.label} limit; keeping score-based verdict"
        )

    return UnitResult(
        **identity,
        category_scores=scores,
        flagged=flagged,
        reason=_build_reason(classification, target, offending),
        provider_flagged=classification.provider_flagged,
        offending=offending,
    )


def rerate_result(result: UnitResult, rating: RatingLike) -> UnitResult:
    """New ``UnitResult`` with flag and offending list recomputed for ``rating``."""
    if not result.classified:
        return result
    return result.model_copy(update={
        "flagged": not would_pass_for_rating(result.category_scores, rating),
        "offending": offending_categories(result.category_scores, rating),
    })


def rerate_run(run: ModerationRun, rating: RatingLike) -> ModerationRun:
    """Copy of ``run`` with every unit re-decided for ``rating``. Scores are untouched."""
    target = AgeRating.parse(rating)

    def rerate(result: Optional[UnitResult]) -> Optional[UnitResult]:
        return rerate_result(result, target) if result is not None else None

    return run.model_copy(update={
        "rating": target,
        "title": rerate(run.title),
        "description": rerate(run.description),
        "cover_image": rerate(run.cover_image),
        "chapters": [rerate_result(c, target) for c in run.chapters],
    })
