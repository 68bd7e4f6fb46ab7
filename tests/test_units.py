"""Tests for unit assembly and the chapter image allocator."""

import json

import pytest

from book_moderation.moderation.errors import UnitNotFound
from book_moderation.moderation.units import (
    _find_chapter,
    _index_chapters,
    allocate_chapter_images,
    build_units,
    extract_chapter_text,
)
from book_moderation.schemas.moderation import BookContent


def _book(**overrides):
    data = {
        "title": "The Long Night",
        "description": "A story about a storm.",
        "coverImage": "https://cdn.example.com/cover.png",
        "chapters": [
            {"id": 11, "chapter": 1, "title": "Arrival", "content": "<p>They arrived.</p>"},
            {"id": 12, "chapter": 2, "title": "Storm", "content": "<p>The storm hit &amp; raged.</p>"},
            {"id": 13, "chapter": 3, "title": "Morning", "content": "<p>Calm again.</p>"},
        ],
    }
    data.update(overrides)
    return BookContent.model_validate(data)


# --- Allocator ---


def test_allocator_three_chapters_ten_images():
    images = [f"img{i}.png" for i in range(10)]
    batches = allocate_chapter_images(3, images)
    assert [len(b) for b in batches] == [3, 3, 4]
    assert [image for batch in batches for image in batch] == images


def test_allocator_is_deterministic():
    images = [f"img{i}.png" for i in range(7)]
    assert allocate_chapter_images(2, images) == allocate_chapter_images(2, images)


def test_allocator_fewer_images_than_chapters():
    batches = allocate_chapter_images(4, ["a", "b"])
    assert batches == [[], [], [], ["a", "b"]]


def test_allocator_no_chapters():
    assert allocate_chapter_images(0, ["a", "b"]) == []


# --- Text extraction ---


def test_extract_chapter_text_strips_markup():
    text = extract_chapter_text("<h1>One</h1><p>First &lt;line&gt;</p><p>Second<br/>line</p>")
    assert text == "One\nFirst <line>\nSecond\nline"


# --- Assembly ---


def test_build_units_order_and_identity():
    units = build_units(_book())
    assert [u.kind for u in units] == ["title", "description", "coverImage", "chapter", "chapter", "chapter"]
    assert units[2].images == ("https://cdn.example.com/cover.png",)
    assert units[4].chapter_id == "12"
    assert units[4].chapter_number == 2
    assert units[4].text == "The storm hit & raged."
    assert units[4].label == "Chapter 2: Storm"


def test_build_units_without_book_info():
    units = build_units(_book(), moderate_book_info=False)
    assert [u.kind for u in units] == ["chapter", "chapter", "chapter"]


def test_build_units_restricted_to_selected_chapters():
    units = build_units(_book(), chapter_ids=["13", 11], moderate_book_info=False)
    assert [u.chapter_id for u in units] == ["11", "13"]


def test_build_units_skips_unknown_chapter_ids():
    units = build_units(_book(), chapter_ids=[12, 99], moderate_book_info=False)
    assert [u.chapter_id for u in units] == ["12"]


def test_find_chapter_raises_unit_not_found():
    indexed = _index_chapters(_book().chapters)
    with pytest.raises(UnitNotFound):
        _find_chapter(indexed, 42)


def test_build_units_skips_empty_and_malformed_chapters():
    book = _book(
        bookType="manga",
        chapters=[
            {"chapter": 1, "title": "Pages", "content": json.dumps(["p1.png", {"url": "p2.png"}])},
            {"chapter": 2, "title": "Broken", "content": "not json"},
            {"chapter": 3, "title": "Empty", "content": ""},
        ],
    )
    units = build_units(book, moderate_book_info=False)
    assert len(units) == 1
    assert units[0].chapter_id == "1"
    assert units[0].images == ("p1.png", "p2.png")
    assert units[0].is_image


def test_build_units_accepts_image_lists():
    book = _book(chapters=[{"chapter": 1, "title": "Art", "content": ["a.png", "b.png"]}])
    units = build_units(book, moderate_book_info=False)
    assert units[0].images == ("a.png", "b.png")


def test_build_units_allocates_pooled_images():
    book = _book(
        bookType="manga",
        chapters=[
            {"chapter": 1, "title": "One"},
            {"chapter": 2, "title": "Two"},
            {"chapter": 3, "title": "Three"},
        ],
        chapterImages=[f"page{i}.png" for i in range(10)],
    )
    units = build_units(book, moderate_book_info=False)
    assert [len(u.images) for u in units] == [3, 3, 4]
    assert units[2].images[-1] == "page9.png"


def test_build_units_skips_blank_book_info():
    units = build_units(_book(title="  ", description=None, coverImage=None))
    assert [u.kind for u in units] == ["chapter", "chapter", "chapter"]


def test_chapter_ids_default_to_number():
    book = _book(chapters=[{"chapter": 5, "title": "Five", "content": "Text"}])
    units = build_units(book, chapter_ids=[5], moderate_book_info=False)
    assert units[0].chapter_id == "5"
    assert units[0].key == "chapter:5"


def test_selective_build_allocates_pool_like_a_full_build():
    book = _book(
        bookType="manga",
        chapters=[
            {"id": 1, "chapter": 1, "title": "One"},
            {"id": 2, "chapter": 2, "title": "Two"},
        ],
        chapterImages=["p1.png", "p2.png", "p3.png", "p4.png"],
    )
    full = {u.chapter_id: u.images for u in build_units(book, moderate_book_info=False)}
    selective = {u.chapter_id: u.images for u in build_units(book, chapter_ids=[2], moderate_book_info=False)}

    assert full == {"1": ("p1.png", "p2.png"), "2": ("p3.png", "p4.png")}
    assert selective == {"2": ("p3.png", "p4.png")}


def test_malformed_unselected_chapter_does_not_receive_pooled_images():
    book = _book(
        bookType="manga",
        chapters=[
            {"chapter": 1, "title": "Broken", "content": "not json"},
            {"chapter": 2, "title": "Two"},
        ],
        chapterImages=["p1.png", "p2.png"],
    )
    units = build_units(book, chapter_ids=[2], moderate_book_info=False)
    assert units[0].images == ("p1.png", "p2.png")
