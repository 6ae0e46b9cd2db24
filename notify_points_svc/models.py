from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Index, Integer, String, JSON
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.types import DateTime

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

class Document(Base):
    __tablename__ = "documents"
    path: Mapped[str] = mapped_column(String(512), primary_key=True)  # e.g. users/u1/points_history/abc
    collection: Mapped[str] = mapped_column(String(512), nullable=False)  # parent path, e.g. users/u1/points_history
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # bumped on every committed write
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_documents_collection", "collection"),
    )
