"""Tests for end-to-end moderation runs against the in-memory registry."""

import asyncio

import pytest

from book_moderation.moderation.errors import MalformedProviderResponse
from book_moderation.moderation.pipeline import ModerationPipeline
from book_moderation.providers.base import ModerationProvider
from book_moderation.registry import InMemoryRunRegistry
from book_moderation.schemas.moderation import AgeRating, BookContent, UnitClassification


class ScriptedProvider(ModerationProvider):
    """Returns fixed scores per unit key and remembers what it was asked to classify."""

    strategy = "scripted"

    def __init__(self, model, scores, seen, error=None):
        super().__init__(model, timeout=1)
        self.scores = scores
        self.seen = seen
        self.error = error

    async def classify(self, units):
        self.seen.append([u.key for u in units])
        if self.error is not None:
            raise self.error
        return [UnitClassification(unit=u, scores=[self.scores.get(u.key, {})]) for u in units]


def _factory(scores, seen, error=None):
    return lambda model: ScriptedProvider(model, scores, seen, error)


BOOK = BookContent.model_validate({
    "title": "The Long Night",
    "description": "A storm story.",
    "coverImage": "cover.png",
    "chapters": [
        {"id": 1, "chapter": 1, "title": "Arrival", "content": "They arrived."},
        {"id": 2, "chapter": 2, "title": "Storm", "content": "The storm hit."},
    ],
})

SCORES = {
    "title": {"sexual": 0.05},
    "description": {},
    "coverImage": {},
    "chapter:1": {"harassment": 0.02},
    "chapter:2": {"violence": 0.55},
}


def test_mature_passes_teen_fails():
    async def scenario():
        registry = InMemoryRunRegistry()
        pipeline = ModerationPipeline(registry, provider_factory=_factory(SCORES, []))

        mature = await pipeline.run("book-1", BOOK, model="o4-mini", rating=AgeRating.MATURE)
        assert mature.passed
        assert await registry.overall_passed("book-1", "o4-mini") is True

        teen = await pipeline.run("book-1", BOOK, model="o4-mini", rating="13+")
        assert not teen.passed
        assert [(o.category, o.score) for o in teen.chapter(2).offending] == [("violence", 0.55)]
        assert await registry.overall_passed("book-1", "o4-mini") is False

    asyncio.run(scenario())


def test_selective_recheck_carries_over_other_slots():
    async def scenario():
        registry = InMemoryRunRegistry()
        seen = []
        first = await ModerationPipeline(registry, _factory(SCORES, seen)).run(
            "book-1", BOOK, model="o4-mini", rating=AgeRating.TEEN
        )

        rescored = dict(SCORES, **{"chapter:2": {"violence": 0.05}})
        second = await ModerationPipeline(registry, _factory(rescored, seen)).run(
            "book-1", BOOK, model="o4-mini", rating=AgeRating.TEEN, chapter_ids=[2], moderate_book_info=False,
        )

        assert seen[-1] == ["chapter:2"]
        assert second.title == first.title
        assert second.description == first.description
        assert second.cover_image == first.cover_image
        assert second.chapter(1) == first.chapter(1)
        assert second.chapter(2).category_scores == {"violence": 0.05}
        assert second.passed
        assert (await registry.get("book-1", "o4-mini")) == second

    asyncio.run(scenario())


def test_carried_over_results_follow_the_new_rating():
    async def scenario():
        registry = InMemoryRunRegistry()
        await ModerationPipeline(registry, _factory(SCORES, [])).run(
            "book-1", BOOK, model="o4-mini", rating=AgeRating.MATURE
        )
        run = await ModerationPipeline(registry, _factory(SCORES, [])).run(
            "book-1", BOOK, model="o4-mini", rating=AgeRating.TEEN, chapter_ids=[1], moderate_book_info=False,
        )
        # Chapter 2 was not re-checked but its stored 0.55 fails the stricter rating
        assert run.chapter(2).flagged
        assert not run.passed

    asyncio.run(scenario())


def test_failed_run_leaves_registry_untouched():
    async def scenario():
        registry = InMemoryRunRegistry()
        good = await ModerationPipeline(registry, _factory(SCORES, [])).run(
            "book-1", BOOK, model="o4-mini", rating=AgeRating.MATURE
        )
        broken = ModerationPipeline(registry, _factory(SCORES, [], error=MalformedProviderResponse("bad")))
        with pytest.raises(MalformedProviderResponse):
            await broken.run("book-1", BOOK, model="o4-mini", rating=AgeRating.MATURE)

        assert await registry.get("book-1", "o4-mini") == good

    asyncio.run(scenario())


def test_models_are_recorded_independently():
    async def scenario():
        registry = InMemoryRunRegistry()
        pipeline = ModerationPipeline(registry, _factory(SCORES, []))
        await pipeline.run("book-1", BOOK, model="Level 1", rating=AgeRating.MATURE)
        await pipeline.run("book-1", BOOK, model="gpt-4o", rating=AgeRating.TEEN)

        assert await registry.list_models("book-1") == ["gpt-4o", "omni-moderation-latest"]
        assert await registry.overall_passed("book-1", "omni-moderation-latest") is True
        assert await registry.overall_passed("book-1", "gpt-4o") is False

    asyncio.run(scenario())


def test_unknown_selected_chapter_is_skipped():
    async def scenario():
        seen = []
        pipeline = ModerationPipeline(InMemoryRunRegistry(), _factory(SCORES, seen))
        run = await pipeline.run("book-1", BOOK, model="o4-mini", chapter_ids=[2, 9], moderate_book_info=False)
        assert seen == [["chapter:2"]]
        assert [c.chapter_id for c in run.chapters] == ["2"]

    asyncio.run(scenario())


class YieldingRegistry(InMemoryRunRegistry):
    """In-memory registry whose reads give other tasks a turn, like a database round-trip."""

    async def _load(self, content_id, model):
        await asyncio.sleep(0)
        return await super()._load(content_id, model)


def test_concurrent_selective_rechecks_keep_each_others_results():
    async def scenario():
        registry = YieldingRegistry()
        dirty = {key: {"violence": 0.9} for key in SCORES}
        await ModerationPipeline(registry, _factory(dirty, [])).run(
            "book-1", BOOK, model="o4-mini", rating=AgeRating.TEEN
        )

        clean = {key: {"violence": 0.01} for key in SCORES}
        pipeline = ModerationPipeline(registry, _factory(clean, []))
        await asyncio.gather(
            pipeline.run("book-1", BOOK, model="o4-mini", rating=AgeRating.TEEN, chapter_ids=[1], moderate_book_info=False),
            pipeline.run("book-1", BOOK, model="o4-mini", rating=AgeRating.TEEN, chapter_ids=[2], moderate_book_info=False),
        )

        stored = await registry.get("book-1", "o4-mini")
        assert stored.chapter(1).category_scores == {"violence": 0.01}
        assert stored.chapter(2).category_scores == {"violence": 0.01}
        assert stored.title.category_scores == {"violence": 0.9}

    asyncio.run(scenario())


def test_superseded_run_returns_the_stored_verdict():
    class OvertakenProvider(ScriptedProvider):
        """A newer full run of the same model completes while this one is classifying."""

        def __init__(self, model, newer):
            super().__init__(model, {"chapter:2": {"violence": 0.9}}, [])
            self.newer = newer

        async def classify(self, units):
            await self.newer()
            return await super().classify(units)

    async def scenario():
        registry = InMemoryRunRegistry()
        fast = ModerationPipeline(registry, _factory(SCORES, []))

        async def newer():
            return await fast.run("book-1", BOOK, model="o4-mini", rating=AgeRating.MATURE)

        slow = ModerationPipeline(registry, lambda model: OvertakenProvider(model, newer))
        returned = await slow.run("book-1", BOOK, model="o4-mini", rating=AgeRating.MATURE)

        stored = await registry.get("book-1", "o4-mini")
        assert returned == stored
        assert stored.chapter(2).category_scores == {"violence": 0.55}
        assert returned.sequence == 2

    asyncio.run(scenario())
