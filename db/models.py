"""
SQLAlchemy ORM models for the SQL document store backend.

Every collection (``trips``, ``users``, ``inviteCodes``, ``tripLocks``) lives
in a single ``documents`` table keyed by ``(collection, id)``. The document
body is JSON; ``version`` is bumped by the store on every write.
"""

from typing import Any

from sqlalchemy import JSON, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, RowTimestampsMixin

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
DocumentBody = JSON().with_variant(JSONB(), "postgresql")


class Document(Base, RowTimestampsMixin):
    """
    One stored document.

    The body is opaque to the database: sentinel resolution, merging and
    version checks happen in ``db.store``.
    """

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        doc="Collection name (e.g., 'trips')",
    )

    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        doc="Document ID within the collection",
    )

    data: Mapped[dict[str, Any]] = mapped_column(
        DocumentBody,
        nullable=False,
        default=dict,
        doc="Document body with timestamps encoded as {'$timestamp': iso8601}",
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        doc="Monotonic per-document version, bumped on every write",
    )

    __table_args__ = (Index("ix_documents_collection", "collection"),)

    def __repr__(self) -> str:
        return f"<Document(collection={self.collection}, id={self.id}, version={self.version})>"
