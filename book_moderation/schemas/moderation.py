"""
Pydantic models shared by the moderation engine and the API layer.

Input contract (``BookContent``) mirrors the payload the book editor sends,
so camelCase aliases are accepted alongside the snake_case field names.
"""

import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from book_moderation.constants import (
    AGE_RATING_CODES,
    AGE_RATING_LABELS,
    AGE_RATING_THRESHOLDS,
    UNIT_CHAPTER,
)

# Canonical category name -> score in [0, 1]; absent categories score 0
CategoryScores = Dict[str, float]

UnitKind = Literal["title", "description", "coverImage", "chapter"]


class Category(str, enum.Enum):
    HARASSMENT = "harassment"
    HARASSMENT_THREATENING = "harassment/threatening"
    SEXUAL = "sexual"
    SEXUAL_MINORS = "sexual/minors"
    HATE = "hate"
    HATE_THREATENING = "hate/threatening"
    VIOLENCE = "violence"
    VIOLENCE_GRAPHIC = "violence/graphic"
    ILLICIT = "illicit"
    ILLICIT_VIOLENT = "illicit/violent"
    SELF_HARM = "self-harm"
    SELF_HARM_INTENT = "self-harm/intent"
    SELF_HARM_INSTRUCTIONS = "self-harm/instructions"


class AgeRating(enum.IntEnum):
    """Audience tiers, most to least restrictive."""
    EVERYONE = 0
    TEEN = 1
    MATURE = 2
    ADULT = 3

    @property
    def label(self) -> str:
        return AGE_RATING_LABELS[self.value]

    @property
    def code(self) -> str:
        return AGE_RATING_CODES[self.value]

    @property
    def threshold(self) -> Optional[float]:
        """Escalation threshold for this tier; ``None`` means no ceiling."""
        return AGE_RATING_THRESHOLDS[self.value]

    @classmethod
    def parse(cls, value: Union["AgeRating", int, str]) -> "AgeRating":
        """
        Accept the enum, its numeric tier, its name (``TEEN``), its stored
        code (``13_PLUS``) or its display label (``13+``).
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            for rating in cls:
                if text.upper() in (rating.name, rating.code) or text == rating.label:
                    return rating
        raise ValueError(f"Unknown age rating: {value!r}")


# ── Input contract ──


class ChapterInput(BaseModel):
    """One chapter as submitted by the editor: prose or a list of image references."""
    id: Optional[Union[int, str]] = None
    chapter: Optional[int] = None
    title: str = ""
    content: Any = None


class BookContent(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = Field(None, alias="coverImage")
    chapters: List[ChapterInput] = []
    chapter_images: List[str] = Field(default_factory=list, alias="chapterImages")
    book_type: Literal["novel", "manga"] = Field("novel", alias="bookType")

    class Config:
        populate_by_name = True


# ── Engine types ──


class ModerationUnit(BaseModel):
    """One classifiable piece of content. Built fresh for every run."""
    kind: UnitKind
    chapter_id: Optional[str] = None
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    text: Optional[str] = None
    images: Tuple[str, ...] = ()

    class Config:
        frozen = True

    @property
    def is_image(self) -> bool:
        return bool(self.images)

    @property
    def key(self) -> str:
        if self.kind == UNIT_CHAPTER:
            return f"chapter:{self.chapter_id}"
        return self.kind

    @property
    def label(self) -> str:
        if self.kind != UNIT_CHAPTER:
            return self.kind
        if self.chapter_title:
            return f"Chapter {self.chapter_number}: {self.chapter_title}"
        return f"Chapter {self.chapter_number}"


class UnitClassification(BaseModel):
    """
    Normalized provider output for one unit.

    ``scores`` holds one entry per classified image (a single entry for text
    units and for analyzer results, which arrive already consolidated).
    """
    unit: ModerationUnit
    scores: List[CategoryScores] = []
    reason: Optional[str] = None
    provider_flagged: Optional[bool] = None
    flagged_categories: List[str] = []
    error: Optional[str] = None


class OffendingCategory(BaseModel):
    category: str
    score: float
    percentage: float

    class Config:
        frozen = True

    @property
    def label(self) -> str:
        return f"{self.category} ({self.percentage:.2f}%)"


class UnitResult(BaseModel):
    """Verdict for one unit in one run. Never mutated; a re-check builds a new one."""
    kind: UnitKind
    chapter_id: Optional[str] = None
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    category_scores: CategoryScores = {}
    flagged: bool
    reason: Optional[str] = None
    error: Optional[str] = None          # set when the unit failed to classify
    provider_flagged: Optional[bool] = None
    offending: List[OffendingCategory] = []
    sequence: int = 0                    # run that produced this result

    class Config:
        frozen = True

    @property
    def key(self) -> str:
        if self.kind == UNIT_CHAPTER:
            return f"chapter:{self.chapter_id}"
        return self.kind

    @property
    def classified(self) -> bool:
        return self.error is None


class ModerationRun(BaseModel):
    """All unit results one model produced for one book at one point in time."""
    content_id: str
    model: str
    rating: AgeRating
    sequence: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    title: Optional[UnitResult] = None
    description: Optional[UnitResult] = None
    cover_image: Optional[UnitResult] = None
    chapters: List[UnitResult] = []

    class Config:
        frozen = True

    @property
    def units(self) -> List[UnitResult]:
        slots = [self.title, self.description, self.cover_image]
        return [u for u in slots if u is not None] + list(self.chapters)

    @property
    def passed(self) -> bool:
        return all(not u.flagged for u in self.units)

    def chapter(self, chapter_id: Union[int, str]) -> Optional[UnitResult]:
        for result in self.chapters:
            if result.chapter_id == str(chapter_id):
                return result
        return None

    def passed_for(self, rating: Union[AgeRating, int, str]) -> bool:
        """Re-evaluate the stored scores against another rating, without re-classifying."""
        from book_moderation.moderation.decision import unit_passes

        target = AgeRating.parse(rating)
        return all(unit_passes(u, target) for u in self.units)


class ModerationRecord(BaseModel):
    """
    Verdict record exchanged with the book service: each slot is a JSON string
    (a ``UnitResult``, or an array of them for chapters) or null when not
    part of this write.
    """
    book_id: str = Field(alias="bookId")
    model: str
    title: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = Field(None, alias="coverImage")
    chapters: Optional[str] = None

    class Config:
        populate_by_name = True


# ── API schemas ──


class ModerationCheckRequest(BookContent):
    """Request body for running a moderation check on a book."""
    model: Optional[str] = Field(None, description="Moderation model or display level; defaults to settings")
    rating: Union[int, str] = Field(0, description="Declared age rating (0-3, code or label)")
    chapter_ids: Optional[List[Union[int, str]]] = Field(None, alias="chapterIds")
    moderate_book_info: bool = Field(True, alias="moderateBookInfo")


class UnitResultResponse(BaseModel):
    kind: str
    chapter_id: Optional[str] = None
    chapter_number: Optional[int] = None
    chapter_title: Optional[str] = None
    flagged: bool
    category_scores: Dict[str, float]
    severity: Dict[str, str] = {}  # category -> ok | elevated | high | severe
    offending: List[str] = []
    reason: Optional[str] = None
    error: Optional[str] = None


class ModerationRunResponse(BaseModel):
    """One model's verdict for a book, evaluated for a rating."""
    book_id: str
    model: str
    rating: int
    rating_label: str
    passed: bool
    created_at: datetime
    units: List[UnitResultResponse]


class ModerationRunListResponse(BaseModel):
    """Every model's latest verdict for a book."""
    book_id: str
    runs: List[ModerationRunResponse]
    total: int
