"""
Moderation API endpoints.

Provides:
- POST  /books/{book_id}/moderation          Run a (possibly selective) check with one model
- GET   /books/{book_id}/moderation          Every model's latest verdict
- GET   /books/{book_id}/moderation/{model}  One model's verdict, re-evaluated for a rating
- PATCH /books/{book_id}/moderation          Merge a partial verdict record
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from book_moderation.api.deps import get_pipeline, get_registry, require_api_key
from book_moderation.config import limiter, settings
from book_moderation.moderation.decision import rerate_run, score_severity
from book_moderation.moderation.errors import (
    MalformedProviderResponse,
    ProviderUnavailable,
    UnknownCategoryScore,
)
from book_moderation.moderation.pipeline import ModerationPipeline
from book_moderation.providers import resolve_model
from book_moderation.registry import RunRegistry
from book_moderation.schemas.moderation import (
    AgeRating,
    ModerationCheckRequest,
    ModerationRecord,
    ModerationRun,
    ModerationRunListResponse,
    ModerationRunResponse,
    UnitResult,
    UnitResultResponse,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/books", tags=["moderation"], dependencies=[Depends(require_api_key)])


def _parse_rating(value) -> AgeRating:
    try:
        return AgeRating.parse(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _unit_response(result: UnitResult, rating: AgeRating) -> UnitResultResponse:
    return UnitResultResponse(
        kind=result.kind,
        chapter_id=result.chapter_id,
        chapter_number=result.chapter_number,
        chapter_title=result.chapter_title,
        flagged=result.flagged,
        category_scores=result.category_scores,
        severity={c: score_severity(s, rating) for c, s in result.category_scores.items()},
        offending=[o.label for o in result.offending],
        reason=result.reason,
        error=result.error,
    )


def _run_response(run: ModerationRun, rating: Optional[AgeRating] = None) -> ModerationRunResponse:
    if rating is not None and rating != run.rating:
        run = rerate_run(run, rating)
    return ModerationRunResponse(
        book_id=run.content_id,
        model=run.model,
        rating=int(run.rating),
        rating_label=run.rating.label,
        passed=run.passed,
        created_at=run.created_at,
        units=[_unit_response(u, run.rating) for u in run.units],
    )


@router.post("/{book_id}/moderation", response_model=ModerationRunResponse)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def check_book(
    request: Request,
    book_id: str,
    check: ModerationCheckRequest,
    pipeline: ModerationPipeline = Depends(get_pipeline),
):
    """
    Moderate a book with one model and store the verdict.

    Only the chapters in ``chapterIds`` are re-checked when given; the rest
    of the stored verdict for that model is kept.
    """
    rating = _parse_rating(check.rating)
    try:
        run = await pipeline.run(
            book_id,
            check,
            model=check.model,
            rating=rating,
            chapter_ids=check.chapter_ids,
            moderate_book_info=check.moderate_book_info,
        )
    except (MalformedProviderResponse, UnknownCategoryScore) as e:
        logger.error(f"Book {book_id}: moderation failed, provider contract broken: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Moderation provider returned an invalid response: {e}",
        )
    except ProviderUnavailable as e:
        logger.warning(f"Book {book_id}: moderation provider unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Moderation provider unavailable, try again later: {e}",
        )

    return _run_response(run)


@router.get("/{book_id}/moderation", response_model=ModerationRunListResponse)
async def list_book_verdicts(
    book_id: str,
    rating: Optional[str] = None,
    registry: RunRegistry = Depends(get_registry),
):
    """Latest verdict of every model that has checked the book."""
    target = _parse_rating(rating) if rating is not None else None
    runs = await registry.list_runs(book_id)
    return ModerationRunListResponse(
        book_id=book_id,
        runs=[_run_response(run, target) for run in runs],
        total=len(runs),
    )


@router.get("/{book_id}/moderation/{model}", response_model=ModerationRunResponse)
async def get_book_verdict(
    book_id: str,
    model: str,
    rating: Optional[str] = None,
    registry: RunRegistry = Depends(get_registry),
):
    """One model's verdict; with ``rating`` the stored scores are re-evaluated for that tier."""
    target = _parse_rating(rating) if rating is not None else None
    run = await registry.get(book_id, resolve_model(model))
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Book {book_id} has not been checked with {model}",
        )
    return _run_response(run, target)


@router.patch("/{book_id}/moderation", response_model=ModerationRunResponse)
async def merge_book_verdict(
    book_id: str,
    record: ModerationRecord,
    rating: str = "0",
    registry: RunRegistry = Depends(get_registry),
):
    """Merge a verdict record; null slots keep the stored results."""
    target = _parse_rating(rating)
    if record.book_id != book_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Record is for book {record.book_id}, not {book_id}",
        )
    try:
        run = await registry.merge_record(record, target)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return _run_response(run)
