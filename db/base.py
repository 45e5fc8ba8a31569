"""
SQLAlchemy declarative base for the SQL document store.

Constraint and index names follow a fixed convention so Alembic migrations
stay stable across databases.
"""

from datetime import datetime

from sqlalchemy import DateTime, MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base; every ``datetime`` column is timezone-aware."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class RowTimestampsMixin:
    """
    Row bookkeeping kept by the database itself.

    These are not document fields: ``createdAt``/``updatedAt`` inside the
    document body are written by the sync layer.
    """

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())
