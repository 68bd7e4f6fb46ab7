"""Latest moderation verdict per (book, model), one row per pair."""

from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, UniqueConstraint
from sqlalchemy.sql import func

from book_moderation.db.session import Base


class ModerationResult(Base):
    """Stored verdict of one model for one book. Slots hold JSON-serialized unit results."""
    __tablename__ = "moderation_results"
    __table_args__ = (
        UniqueConstraint("book_id", "model", name="uq_moderation_results_book_model"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String(64), nullable=False, index=True)
    model = Column(String(100), nullable=False)
    title = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    cover_image = Column(Text, nullable=True)
    chapters = Column(Text, nullable=True)              # JSON array of unit results
    rating = Column(Integer, nullable=False, default=0)  # AgeRating the flags were decided for
    passed = Column(Boolean, nullable=False, default=True)
    sequence = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
