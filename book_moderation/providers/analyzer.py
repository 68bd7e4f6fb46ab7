"""
Analyzer strategy — one multi-part chat call covering the whole book.

Text units and image references are interleaved in a single user message;
the model answers with one JSON object keyed by unit (``title``,
``description``, ``coverImage``, ``chapters``). Chapter entries may be flat
score objects or ``{"chapter": n, "title": ..., "category_scores": {...}}``.

There is only one unit of work, so any failure (transport, timeout,
unparseable reply, a unit missing from the reply) aborts the run.
"""

import asyncio
import json
import re
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anthropic
import httpx
import ollama
import openai
from langchain_core.messages import HumanMessage, SystemMessage

from book_moderation.config import settings
from book_moderation.constants import CATEGORY_NAMES, UNIT_CHAPTER, UNIT_COVER_IMAGE
from book_moderation.moderation.errors import MalformedProviderResponse, ProviderUnavailable
from book_moderation.moderation.normalizer import normalize_scores
from book_moderation.providers.base import ModerationProvider
from book_moderation.schemas.moderation import ModerationUnit, UnitClassification

logger = logging.getLogger(__name__)

# Failures of any configured chat backend that a retry may fix. The ollama
# client reports an unreachable server as the builtin ConnectionError.
_TRANSPORT_ERRORS = (
    openai.APIError,
    anthropic.APIError,
    ollama.ResponseError,
    httpx.HTTPError,
    ConnectionError,
)

_SCORE_FIELDS = ",\n".join(f'    "{name}": float' for name in CATEGORY_NAMES)

ANALYZER_SYSTEM_PROMPT = f"""You are a strict content moderation assistant for a book publishing platform.
The user message contains a book's title, description, cover image and chapters.
Chapters are either prose or a sequence of images.

Score every part for each of these categories from 0.0 (absent) to 1.0 (certain):
{", ".join(CATEGORY_NAMES)}

Analyze both text and images carefully.
Return ONLY a JSON object with these optional keys, one per part you were given:
"title", "description", "coverImage" and "chapters".

Each of "title", "description" and "coverImage" is an object:
{{
    "reason": string,
{_SCORE_FIELDS}
}}

"chapters" is an array with one entry per chapter, in this format:
{{
  "chapter": <chapter number>,
  "title": <chapter title>,
  "category_scores": {{ "reason": string, <category>: float, ... }}
}}

If a score is 0, leave it out of the object."""

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


def _reply_text(content: Any) -> str:
    """Flatten a chat reply (plain string or list of content parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


def parse_analyzer_reply(content: Any, model: Optional[str] = None) -> Dict[str, Any]:
    """Decode the analyzer's reply into a dict. Raises MalformedProviderResponse."""
    text = _reply_text(content).strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    if not text:
        raise MalformedProviderResponse("Analyzer returned an empty reply", model)
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedProviderResponse(f"Analyzer reply is not valid JSON: {e}", model)
    if not isinstance(payload, dict):
        raise MalformedProviderResponse(
            f"Analyzer reply is a {type(payload).__name__}, expected an object", model
        )
    return payload


def _entry_scores(entry: Any, where: str, model: str) -> Tuple[Dict[str, Any], Optional[str], bool]:
    """Split one result entry into (raw scores, reason, provider flagged)."""
    if not isinstance(entry, dict):
        raise MalformedProviderResponse(f"{where}: expected an object, got {type(entry).__name__}", model)
    raw = entry
    if "category_scores" in entry:
        raw = entry["category_scores"]
        if not isinstance(raw, dict):
            raise MalformedProviderResponse(f"{where}: category_scores is not an object", model)
    reason = entry.get("reason") or raw.get("reason")
    flagged = entry.get("flagged") is True or raw.get("flagged") is True
    return raw, (str(reason) if reason else None), flagged


class AnalyzerProvider(ModerationProvider):
    strategy = "analyzer"

    def __init__(
        self,
        model: str,
        llm=None,
        llm_provider: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(model, timeout)
        self._llm = llm
        self.llm_provider = llm_provider or settings.analyzer_llm_provider

    @property
    def llm(self):
        if self._llm is None:
            from book_moderation.services.llm import get_llm

            try:
                llm = get_llm(self.model, self.llm_provider)
            except ValueError as e:
                raise ProviderUnavailable(str(e), self.model) from e
            if self.llm_provider == "openai":
                llm = llm.bind(response_format={"type": "json_object"})
            self._llm = llm
        return self._llm

    def build_message_parts(self, units: Sequence[ModerationUnit]) -> List[dict]:
        """Interleave text and image parts in unit order."""
        parts: List[dict] = [{"type": "text", "text": "Moderate the following book content."}]
        for unit in units:
            if unit.kind == UNIT_CHAPTER:
                header = f"Chapter {unit.chapter_number} (title: {unit.chapter_title}):"
            elif unit.kind == UNIT_COVER_IMAGE:
                header = "Cover image:"
            else:
                header = f"{unit.kind.capitalize()}:"

            if unit.is_image:
                parts.append({"type": "text", "text": header})
                parts.extend({"type": "image_url", "image_url": {"url": image}} for image in unit.images)
            else:
                parts.append({"type": "text", "text": f"{header}\n{unit.text}"})
        return parts

    async def classify(self, units: Sequence[ModerationUnit]) -> List[UnitClassification]:
        if not units:
            return []

        messages = [
            SystemMessage(content=ANALYZER_SYSTEM_PROMPT),
            HumanMessage(content=self.build_message_parts(units)),
        ]
        images = sum(len(u.images) for u in units)
        logger.info(f"[{self.model}] Analyzing {len(units)} unit(s) ({images} image(s)) in one call")
        llm = self.llm

        try:
            reply = await asyncio.wait_for(
                asyncio.to_thread(llm.invoke, messages),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderUnavailable(f"Analyzer call timed out after {self.timeout}s", self.model)
        except _TRANSPORT_ERRORS as e:
            raise ProviderUnavailable(f"Analyzer call failed: {e}", self.model)

        payload = parse_analyzer_reply(getattr(reply, "content", None), self.model)
        return self._match_units(units, payload)

    def _match_units(self, units: Sequence[ModerationUnit], payload: Dict[str, Any]) -> List[UnitClassification]:
        chapters = payload.get("chapters") or []
        if not isinstance(chapters, list):
            raise MalformedProviderResponse("'chapters' is not an array", self.model)

        chapter_positions = {
            u.key: position
            for position, u in enumerate(u for u in units if u.kind == UNIT_CHAPTER)
        }
        by_number: Dict[int, Any] = {}
        by_position: Dict[int, Any] = {}
        for position, entry in enumerate(chapters):
            number = entry.get("chapter") if isinstance(entry, dict) else None
            if number is None:
                by_position[position] = entry
                continue
            try:
                by_number[int(number)] = entry
            except (TypeError, ValueError):
                raise MalformedProviderResponse(f"chapters[{position}]: invalid chapter number {number!r}", self.model)

        results = []
        for unit in units:
            if unit.kind == UNIT_CHAPTER:
                entry = by_number.get(unit.chapter_number)
                if entry is None:
                    entry = by_position.get(chapter_positions[unit.key])
            elif unit.kind == UNIT_COVER_IMAGE:
                entry = payload.get(UNIT_COVER_IMAGE, payload.get("cover_image"))
            else:
                entry = payload.get(unit.kind)

            if entry is None:
                # Missing is not "clean": a silent all-clear is worse than a failed run
                raise MalformedProviderResponse(f"Analyzer reply has no result for {unit.label}", self.model)

            raw, reason, flagged = _entry_scores(entry, unit.label, self.model)
            results.append(UnitClassification(
                unit=unit,
                scores=[normalize_scores(raw)],
                reason=reason,
                provider_flagged=flagged or None,
            ))
        return results
