"""Tests for the single-call analyzer strategy."""

import asyncio
import json
from types import SimpleNamespace

import anthropic
import httpx
import ollama
import pytest

from book_moderation.moderation.errors import MalformedProviderResponse, ProviderUnavailable
from book_moderation.providers.analyzer import AnalyzerProvider, parse_analyzer_reply
from book_moderation.schemas.moderation import ModerationUnit


class FakeChatModel:
    """Minimal chat model: records the messages and returns a canned reply."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        content = self.reply if isinstance(self.reply, str) else json.dumps(self.reply)
        return SimpleNamespace(content=content)


def _units():
    return [
        ModerationUnit(kind="title", text="The Long Night"),
        ModerationUnit(kind="coverImage", images=("cover.png",)),
        ModerationUnit(kind="chapter", chapter_id="11", chapter_number=1, chapter_title="Arrival", text="..."),
        ModerationUnit(
            kind="chapter",
            chapter_id="12",
            chapter_number=2,
            chapter_title="Storm",
            images=("p1.png", "p2.png"),
        ),
    ]


def _classify(reply, units=None):
    llm = FakeChatModel(reply)
    provider = AnalyzerProvider("o4-mini", llm=llm, timeout=5)
    return asyncio.run(provider.classify(units or _units())), llm


def test_single_call_for_all_units():
    reply = {
        "title": {"reason": "mild", "sexual": 0.05},
        "coverImage": {},
        "chapters": [
            {"chapter": 1, "title": "Arrival", "category_scores": {"violence": 0.1}},
            {"chapter": 2, "title": "Storm", "category_scores": {"violence": 0.55, "reason": "fight"}},
        ],
    }
    results, llm = _classify(reply)

    assert len(llm.calls) == 1
    assert [r.unit.kind for r in results] == ["title", "coverImage", "chapter", "chapter"]
    assert results[0].scores == [{"sexual": 0.05}]
    assert results[0].reason == "mild"
    assert results[1].scores == [{}]
    assert results[3].scores == [{"violence": 0.55}]
    assert results[3].reason == "fight"


def test_images_are_interleaved_in_one_message():
    _, llm = _classify({
        "title": {},
        "coverImage": {},
        "chapters": [{"chapter": 1, "category_scores": {}}, {"chapter": 2, "category_scores": {}}],
    })
    parts = llm.calls[0][1].content
    image_urls = [p["image_url"]["url"] for p in parts if p["type"] == "image_url"]
    assert image_urls == ["cover.png", "p1.png", "p2.png"]


def test_flat_chapter_entries_match_by_position():
    reply = {
        "title": {},
        "cover_image": {"sexual": 0.2},
        "chapters": [{"violence": 0.3}, {"hate": 0.4, "flagged": True}],
    }
    results, _ = _classify(reply)
    assert results[1].scores == [{"sexual": 0.2}]
    assert results[2].scores == [{"violence": 0.3}]
    assert results[3].scores == [{"hate": 0.4}]
    assert results[3].provider_flagged is True


def test_code_fenced_reply_is_accepted():
    fenced = '```json\n{"title": {"harassment": 0.01}}\n```'
    results, _ = _classify(fenced, units=[ModerationUnit(kind="title", text="x")])
    assert results[0].scores == [{"harassment": 0.01}]


def test_missing_unit_is_malformed():
    with pytest.raises(MalformedProviderResponse):
        _classify({"title": {}, "coverImage": {}, "chapters": [{"chapter": 1, "category_scores": {}}]})


@pytest.mark.parametrize("reply", ["not json at all", "[1, 2, 3]", "", '{"chapters": {"violence": 0.1}}'])
def test_unparseable_reply_is_malformed(reply):
    with pytest.raises(MalformedProviderResponse):
        _classify(reply)


def test_parse_analyzer_reply_handles_content_parts():
    payload = parse_analyzer_reply([{"type": "text", "text": '{"title": '}, {"type": "text", "text": "{}}"}])
    assert payload == {"title": {}}


def test_transport_failure_is_unavailable():
    llm = FakeChatModel(error=httpx.ConnectError("connection refused"))
    provider = AnalyzerProvider("o4-mini", llm=llm, timeout=5)
    with pytest.raises(ProviderUnavailable):
        asyncio.run(provider.classify(_units()))


@pytest.mark.parametrize("error", [
    ConnectionError("Failed to connect to Ollama"),
    anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")),
    ollama.ResponseError("model \"llama3\" not found", 404),
])
def test_other_backend_failures_are_unavailable(error):
    llm = FakeChatModel(error=error)
    provider = AnalyzerProvider("o4-mini", llm=llm, timeout=5)
    with pytest.raises(ProviderUnavailable):
        asyncio.run(provider.classify(_units()))


def test_no_units_makes_no_call():
    llm = FakeChatModel({})
    provider = AnalyzerProvider("o4-mini", llm=llm)
    assert asyncio.run(provider.classify([])) == []
    assert llm.calls == []
