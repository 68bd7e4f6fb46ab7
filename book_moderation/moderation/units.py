"""
Unit assembly — turns a submitted book into classification units.

Order is fixed: title, description, cover image, then chapters in the order
they were submitted. Restricting ``chapter_ids`` is how a re-check only pays
for the chapters that changed; unselected chapters are never sent to a
provider.
"""

import html
import json
import re
import logging
from typing import Iterable, List, Optional, Sequence, Set, Tuple, Union

from book_moderation.constants import (
    BOOK_TYPE_MANGA,
    UNIT_CHAPTER,
    UNIT_COVER_IMAGE,
    UNIT_DESCRIPTION,
    UNIT_TITLE,
)
from book_moderation.moderation.errors import UnitNotFound
from book_moderation.schemas.moderation import BookContent, ChapterInput, ModerationUnit

logger = logging.getLogger(__name__)

_BLOCK_TAG = re.compile(r"<\s*(br|/p|/div|/h[1-6]|/li|/blockquote)\s*/?\s*>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def allocate_chapter_images(chapter_count: int, images: Sequence[str]) -> List[List[str]]:
    """
    Split a flat image pool across chapters.

    Each of the first ``chapter_count - 1`` chapters gets ``len(images) // chapter_count``
    images in order; the last chapter takes everything left over.
    """
    if chapter_count <= 0:
        return []
    per_chapter = len(images) // chapter_count
    batches = [
        list(images[index * per_chapter:(index + 1) * per_chapter])
        for index in range(chapter_count - 1)
    ]
    batches.append(list(images[(chapter_count - 1) * per_chapter:]))
    return batches


def extract_chapter_text(content: str) -> str:
    """Strip rich-text editor markup from a chapter body, keeping paragraph breaks."""
    text = _BLOCK_TAG.sub("\n", content)
    text = _ANY_TAG.sub("", text)
    text = html.unescape(text)
    text = "\n".join(line.strip() for line in text.splitlines())
    return _BLANK_LINES.sub("\n\n", text).strip()


def _chapter_identity(chapter: ChapterInput, position: int) -> Tuple[str, int]:
    number = chapter.chapter if chapter.chapter is not None else position + 1
    chapter_id = str(chapter.id) if chapter.id is not None else str(number)
    return chapter_id, number


def _image_list(items: Iterable) -> List[str]:
    images = []
    for item in items:
        # Editor uploads arrive either as bare URLs or as {"url": ...} objects
        if isinstance(item, dict):
            item = item.get("url")
        if not isinstance(item, str):
            raise ValueError(f"image reference has unsupported type {type(item).__name__}")
        if item.strip():
            images.append(item.strip())
    return images


def _chapter_payload(chapter: ChapterInput, book_type: str) -> Tuple[Optional[str], List[str]]:
    """Return ``(text, images)`` for a chapter. Raises ValueError on a malformed payload."""
    content = chapter.content
    if content is None:
        return None, []
    if isinstance(content, list):
        return None, _image_list(content)
    if isinstance(content, str):
        if book_type == BOOK_TYPE_MANGA:
            # Image chapters are stored as a JSON-encoded list of uploaded URLs
            if not content.strip():
                return None, []
            try:
                decoded = json.loads(content)
            except json.JSONDecodeError as e:
                raise ValueError(f"image chapter content is not a JSON list: {e}")
            if not isinstance(decoded, list):
                raise ValueError("image chapter content is not a JSON list")
            return None, _image_list(decoded)
        text = extract_chapter_text(content)
        return (text or None), []
    raise ValueError(f"chapter content has unsupported type {type(content).__name__}")


def _index_chapters(chapters: List[ChapterInput]) -> List[Tuple[str, int, ChapterInput]]:
    return [
        (*_chapter_identity(chapter, position), chapter)
        for position, chapter in enumerate(chapters)
    ]


def _find_chapter(indexed: List[Tuple[str, int, ChapterInput]], chapter_id: Union[int, str]) -> int:
    wanted = str(chapter_id)
    for position, (known_id, _number, _chapter) in enumerate(indexed):
        if known_id == wanted:
            return position
    raise UnitNotFound(chapter_id)


def _selected_positions(
    indexed: List[Tuple[str, int, ChapterInput]],
    chapter_ids: Optional[Iterable[Union[int, str]]],
) -> Optional[Set[int]]:
    if chapter_ids is None:
        return None
    positions = set()
    for requested in chapter_ids:
        try:
            positions.add(_find_chapter(indexed, requested))
        except UnitNotFound as exc:
            logger.warning(f"{exc}; skipping")
    return positions


def build_units(
    content: BookContent,
    chapter_ids: Optional[Iterable[Union[int, str]]] = None,
    moderate_book_info: bool = True,
) -> List[ModerationUnit]:
    """
    Build the ordered list of moderation units for a book.

    Args:
        content: Submitted book fields and chapters
        chapter_ids: Restrict chapters to these ids (``None`` = all chapters)
        moderate_book_info: Include title, description and cover image

    Returns:
        Units in classification order. Empty or malformed chapters produce no unit.
    """
    units: List[ModerationUnit] = []

    if moderate_book_info:
        if content.title and content.title.strip():
            units.append(ModerationUnit(kind=UNIT_TITLE, text=content.title.strip()))
        if content.description and content.description.strip():
            units.append(ModerationUnit(kind=UNIT_DESCRIPTION, text=content.description.strip()))
        if content.cover_image and content.cover_image.strip():
            units.append(ModerationUnit(kind=UNIT_COVER_IMAGE, images=(content.cover_image.strip(),)))

    indexed = _index_chapters(content.chapters)
    selected = _selected_positions(indexed, chapter_ids)

    # Every chapter is prepared so the image pool splits the same way
    # whichever chapters are selected
    prepared = []
    for position, (chapter_id, number, chapter) in enumerate(indexed):
        try:
            text, images = _chapter_payload(chapter, content.book_type)
        except ValueError as e:
            if selected is None or position in selected:
                logger.warning(f"Skipping chapter {chapter_id}: malformed content ({e})")
            continue
        prepared.append((position, {
            "chapter_id": chapter_id,
            "chapter_number": number,
            "chapter_title": chapter.title or f"Chapter {number}",
            "text": text,
            "images": images,
        }))

    if content.chapter_images:
        # Flat pool: hand it out across chapters that brought no content of their own
        receivers = [entry for _, entry in prepared if not entry["text"] and not entry["images"]]
        if not receivers:
            logger.warning(
                f"{len(content.chapter_images)} pooled chapter image(s) ignored: "
                f"no chapter is waiting for images"
            )
        for entry, batch in zip(receivers, allocate_chapter_images(len(receivers), content.chapter_images)):
            entry["images"] = batch

    for position, entry in prepared:
        if selected is not None and position not in selected:
            continue
        text = entry.pop("text")
        images = entry.pop("images")
        if text:
            units.append(ModerationUnit(kind=UNIT_CHAPTER, text=text, **entry))
        elif images:
            units.append(ModerationUnit(kind=UNIT_CHAPTER, images=tuple(images), **entry))
        else:
            logger.debug(f"Chapter {entry['chapter_id']} has no content to classify")

    logger.info(
        f"Assembled {len(units)} moderation unit(s) "
        f"({sum(1 for u in units if u.kind == UNIT_CHAPTER)} chapter(s), "
        f"book info {'included' if moderate_book_info else 'skipped'})"
    )
    return units
