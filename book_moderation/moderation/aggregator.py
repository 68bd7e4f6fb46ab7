"""
Chapter score aggregation.

Fan-in point for per-image classifications: a chapter is scored by its
least-safe page, so each category takes the maximum over all of the
chapter's images.
"""

from typing import Iterable

from book_moderation.schemas.moderation import CategoryScores


def aggregate_max(results: Iterable[CategoryScores]) -> CategoryScores:
    """Combine per-image scores into one chapter score using the per-category maximum."""
    aggregate: CategoryScores = {}
    for scores in results:
        for category, score in scores.items():
            if score > aggregate.get(category, 0.0):
                aggregate[category] = score
    return aggregate
