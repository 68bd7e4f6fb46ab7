"""
Database-backed run registry, one ``moderation_results`` row per (book, model).

Rows hold the verdict record shape shared with the book service, so a row
can be handed to ``merge_records`` and read back without translation.
"""

import logging
from datetime import timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from book_moderation.db.session import get_session_factory
from book_moderation.models.moderation import ModerationResult
from book_moderation.moderation.records import record_to_run, run_to_record
from book_moderation.registry.base import RunRegistry
from book_moderation.schemas.moderation import AgeRating, ModerationRecord, ModerationRun

logger = logging.getLogger(__name__)


class SqlRunRegistry(RunRegistry):
    """
    Registry persisted through async SQLAlchemy.

    The per-key locks live in this process; run a single writer per
    database or the sequence check degrades to last-write-wins across
    processes.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        super().__init__()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @staticmethod
    def _select_row(content_id: str, model: str):
        return select(ModerationResult).where(
            ModerationResult.book_id == content_id,
            ModerationResult.model == model,
        )

    async def _load(self, content_id: str, model: str) -> Optional[ModerationRun]:
        async with self.session_factory() as db:
            result = await db.execute(self._select_row(content_id, model))
            row = result.scalar_one_or_none()
        if row is None:
            return None

        record = ModerationRecord(
            book_id=row.book_id,
            model=row.model,
            title=row.title,
            description=row.description,
            cover_image=row.cover_image,
            chapters=row.chapters,
        )
        created_at = row.created_at
        # SQLite drops tzinfo; stored values are UTC
        if created_at is not None and created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return record_to_run(record, AgeRating(row.rating), sequence=row.sequence, created_at=created_at)

    async def _load_sequence(self, content_id: str, model: str) -> Optional[int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ModerationResult.sequence).where(
                    ModerationResult.book_id == content_id,
                    ModerationResult.model == model,
                )
            )
            return result.scalar_one_or_none()

    async def _store(self, run: ModerationRun) -> None:
        record = run_to_record(run)
        async with self.session_factory() as db:
            try:
                result = await db.execute(self._select_row(run.content_id, run.model))
                row = result.scalar_one_or_none()
                if row is None:
                    row = ModerationResult(book_id=run.content_id, model=run.model)
                    db.add(row)

                row.title = record.title
                row.description = record.description
                row.cover_image = record.cover_image
                row.chapters = record.chapters
                row.rating = int(run.rating)
                row.passed = run.passed
                row.sequence = run.sequence
                row.created_at = run.created_at
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(f"Book {run.content_id}: failed to store {run.model} run: {e}")
                raise

    async def _list_models(self, content_id: str) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ModerationResult.model).where(ModerationResult.book_id == content_id)
            )
            return list(result.scalars().all())
