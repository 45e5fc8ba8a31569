"""
Database package for the trip sync backend.

Provides the document store abstraction (memory and SQL backends) and the
async SQLAlchemy models, session management and repository behind the SQL
backend.
"""

from db.base import Base
from db.models import Document
from db.repositories import DocumentRepository
from db.session import close_db, get_session_factory, init_db
from db.store import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentStore,
    ListenerRegistration,
    MemoryDocumentStore,
    SqlDocumentStore,
    StoreError,
    VersionConflict,
    create_store,
)

__all__ = [
    "Base",
    "Document",
    "DocumentRepository",
    "init_db",
    "close_db",
    "get_session_factory",
    # Store
    "DocumentStore",
    "MemoryDocumentStore",
    "SqlDocumentStore",
    "DocumentSnapshot",
    "ListenerRegistration",
    "create_store",
    "SERVER_TIMESTAMP",
    "DELETE_FIELD",
    "ArrayUnion",
    # Errors
    "StoreError",
    "DocumentNotFound",
    "VersionConflict",
]
