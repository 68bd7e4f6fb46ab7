"""
Score normalization — raw provider payloads to canonical ``CategoryScores``.

Both provider strategies call into this module before results leave the
adapter boundary, so the decision engine only ever sees:

- canonical category names (``violence/graphic``, ``self-harm/intent``, ...)
- floats in the closed unit interval
- no zero entries (absent means 0)
"""

import math
import logging
from typing import Any, Dict, Mapping, Optional

from book_moderation.config import settings
from book_moderation.constants import CATEGORY_NAMES, RESERVED_SCORE_KEYS
from book_moderation.moderation.errors import UnknownCategoryScore
from book_moderation.schemas.moderation import CategoryScores

logger = logging.getLogger(__name__)


def _build_aliases() -> Dict[str, str]:
    aliases = {}
    for name in CATEGORY_NAMES:
        aliases[name] = name
        # SDK attribute form: self_harm_intent, harassment_threatening
        aliases[name.replace("/", "_").replace("-", "_")] = name
        # Hyphenated form: harassment-threatening, self-harm-intent
        aliases[name.replace("/", "-")] = name
    return aliases


CATEGORY_ALIASES = _build_aliases()


def canonical_category(key: str) -> Optional[str]:
    """Return the canonical category name for ``key``, or None if it is not a category."""
    return CATEGORY_ALIASES.get(key.strip().lower())


def _coerce_score(key: str, value: Any) -> float:
    # bool is an int subclass; a boolean where a score belongs is a contract break
    if isinstance(value, bool):
        raise UnknownCategoryScore(key, value, f"Category {key!r} has a boolean, not a score")
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise UnknownCategoryScore(key, value, f"Category {key!r} has a non-numeric score: {value!r}")
    if math.isnan(score) or score < 0.0 or score > 1.0:
        raise UnknownCategoryScore(key, value, f"Category {key!r} score {value!r} is outside [0, 1]")
    return score


def normalize_scores(raw: Optional[Mapping[str, Any]], strict: Optional[bool] = None) -> CategoryScores:
    """
    Convert a raw provider mapping into ``CategoryScores``.

    Unknown keys are dropped, or rejected with ``UnknownCategoryScore`` when
    ``strict`` (defaults to ``settings.strict_categories``). ``None`` values
    count as absent. Out-of-range values are never clamped.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise UnknownCategoryScore("<scores>", raw, f"Expected a mapping of scores, got {type(raw).__name__}")

    if strict is None:
        strict = settings.strict_categories

    scores: CategoryScores = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise UnknownCategoryScore(str(key), value, f"Category key {key!r} is not a string")
        if key in RESERVED_SCORE_KEYS:
            continue
        category = canonical_category(key)
        if category is None:
            if strict:
                raise UnknownCategoryScore(key, value, f"Unrecognized category {key!r}")
            logger.debug(f"Dropping unrecognized category {key!r} from provider scores")
            continue
        if value is None:
            continue
        score = _coerce_score(key, value)
        if score == 0.0:
            continue
        # Two aliases of one category in a single payload: keep the worse score
        scores[category] = max(score, scores.get(category, 0.0))
    return scores


def provider_flags(raw: Optional[Mapping[str, Any]]) -> list:
    """Canonical names of categories a provider marked ``True`` in its boolean map."""
    if not raw:
        return []
    flagged = []
    for key, value in raw.items():
        category = canonical_category(key) if isinstance(key, str) else None
        if category and value is True and category not in flagged:
            flagged.append(category)
    return flagged
