"""Tests for provider score normalization."""

import math

import pytest

from book_moderation.moderation.errors import UnknownCategoryScore
from book_moderation.moderation.normalizer import canonical_category, normalize_scores, provider_flags


def test_canonical_category_aliases():
    assert canonical_category("violence/graphic") == "violence/graphic"
    assert canonical_category("violence_graphic") == "violence/graphic"
    assert canonical_category("self-harm-intent") == "self-harm/intent"
    assert canonical_category("self_harm") == "self-harm"
    assert canonical_category(" Harassment ") == "harassment"
    assert canonical_category("gore") is None


def test_normalize_drops_zero_reserved_and_none():
    scores = normalize_scores({
        "violence": 0.4,
        "sexual": 0,
        "hate": None,
        "reason": "fight scene",
        "flagged": True,
    })
    assert scores == {"violence": 0.4}


def test_normalize_coerces_numeric_strings():
    assert normalize_scores({"harassment": "0.25"}) == {"harassment": 0.25}


def test_normalize_drops_unknown_keys_by_default():
    assert normalize_scores({"gore": 0.9, "violence": 0.2}, strict=False) == {"violence": 0.2}


def test_normalize_rejects_unknown_keys_when_strict():
    with pytest.raises(UnknownCategoryScore) as exc_info:
        normalize_scores({"gore": 0.9}, strict=True)
    assert exc_info.value.key == "gore"


@pytest.mark.parametrize("value", [1.5, -0.1, math.nan, True, "high", [0.2]])
def test_normalize_rejects_invalid_scores(value):
    with pytest.raises(UnknownCategoryScore):
        normalize_scores({"violence": value})


def test_normalize_accepts_interval_bounds():
    assert normalize_scores({"violence": 1.0, "hate": 0.0}) == {"violence": 1.0}


def test_normalize_merges_aliases_with_max():
    scores = normalize_scores({"self_harm_intent": 0.3, "self-harm/intent": 0.6})
    assert scores == {"self-harm/intent": 0.6}


def test_normalize_rejects_non_mapping():
    assert normalize_scores(None) == {}
    with pytest.raises(UnknownCategoryScore):
        normalize_scores([0.1, 0.2])


def test_provider_flags():
    flags = provider_flags({"violence": True, "sexual": False, "self_harm": True, "unknown": True})
    assert flags == ["violence", "self-harm"]
    assert provider_flags(None) == []
