"""
Classifier strategy — OpenAI Moderation API, one call per text unit and per image.

Calls are independent, so every unit (and every image inside a chapter) is
issued concurrently, bounded by ``settings.max_concurrent_requests``. The
images of one chapter are joined before the chapter is handed back, so the
aggregator always sees the complete set.

Failure policy:
- ``ProviderUnavailable`` on any call of a unit marks only that unit as
  failed-to-classify; the rest of the run continues.
- ``MalformedProviderResponse`` / ``UnknownCategoryScore`` abort the run.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

import openai

from book_moderation.config import settings
from book_moderation.constants import MODEL_OMNI
from book_moderation.moderation.errors import MalformedProviderResponse, ProviderUnavailable
from book_moderation.moderation.normalizer import normalize_scores, provider_flags
from book_moderation.providers.base import ModerationProvider, as_mapping
from book_moderation.schemas.moderation import CategoryScores, ModerationUnit, UnitClassification

logger = logging.getLogger(__name__)

# (scores, provider flagged, provider-flagged categories) for one API call
CallOutcome = Tuple[CategoryScores, bool, List[str]]


class ClassifierProvider(ModerationProvider):
    strategy = "classifier"

    def __init__(
        self,
        model: str = MODEL_OMNI,
        client=None,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(model, timeout)
        self._client = client
        self.max_concurrency = max_concurrency or settings.max_concurrent_requests

    @property
    def client(self):
        if self._client is None:
            from book_moderation.services.openai_client import get_openai_client

            try:
                self._client = get_openai_client(self.timeout)
            except ValueError as e:
                raise ProviderUnavailable(str(e), self.model) from e
        return self._client

    async def classify(self, units: Sequence[ModerationUnit]) -> List[UnitClassification]:
        # Configuration errors fail the whole run, not every unit one by one
        _ = self.client
        semaphore = asyncio.Semaphore(self.max_concurrency)
        calls = sum(max(len(u.images), 1) for u in units)
        logger.info(f"[{self.model}] Classifying {len(units)} unit(s) with {calls} Moderation API call(s)")
        results = await asyncio.gather(*(self._classify_unit(unit, semaphore) for unit in units))
        return list(results)

    async def _classify_unit(self, unit: ModerationUnit, semaphore: asyncio.Semaphore) -> UnitClassification:
        if unit.is_image:
            inputs = [[{"type": "image_url", "image_url": {"url": image}}] for image in unit.images]
        else:
            inputs = [unit.text]

        # Join every call of the unit before deciding its fate
        outcomes = await asyncio.gather(
            *(self._moderate(payload, semaphore) for payload in inputs),
            return_exceptions=True,
        )

        unavailable = None
        for outcome in outcomes:
            if isinstance(outcome, ProviderUnavailable):
                unavailable = unavailable or outcome
            elif isinstance(outcome, BaseException):
                raise outcome

        if unavailable is not None:
            failed = sum(1 for o in outcomes if isinstance(o, ProviderUnavailable))
            logger.error(
                f"[{self.model}] {unit.label}: {failed}/{len(inputs)} call(s) failed, "
                f"unit not classified: {unavailable}"
            )
            return UnitClassification(unit=unit, error=str(unavailable))

        flagged_categories: List[str] = []
        for _, _, categories in outcomes:
            flagged_categories.extend(c for c in categories if c not in flagged_categories)

        return UnitClassification(
            unit=unit,
            scores=[scores for scores, _, _ in outcomes],
            provider_flagged=any(flagged for _, flagged, _ in outcomes),
            flagged_categories=flagged_categories,
        )

    async def _moderate(self, payload, semaphore: asyncio.Semaphore) -> CallOutcome:
        async with semaphore:
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(self.client.moderations.create, model=self.model, input=payload),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                raise ProviderUnavailable(f"Moderation call timed out after {self.timeout}s", self.model)
            except openai.APIStatusError as e:
                raise ProviderUnavailable(f"Moderation API returned {e.status_code}: {e.message}", self.model)
            except openai.APIError as e:
                raise ProviderUnavailable(f"Moderation API error: {e}", self.model)
        return self._parse(response)

    def _parse(self, response) -> CallOutcome:
        results = getattr(response, "results", None)
        if not results:
            raise MalformedProviderResponse("Moderation response contains no results", self.model)

        result = results[0]
        raw_scores = as_mapping(getattr(result, "category_scores", None))
        if raw_scores is None:
            raise MalformedProviderResponse("Moderation result has no category_scores", self.model)

        scores = normalize_scores(raw_scores)
        categories = provider_flags(as_mapping(getattr(result, "categories", None)))
        flagged = bool(getattr(result, "flagged", False))
        return scores, flagged, categories
