"""
Document store with real-time listeners.

A small document database in the shape the sync layer expects from a hosted
store: string-keyed documents grouped in collections, atomic field updates,
write sentinels (server timestamp, array union, field delete), and push
notifications to document and query listeners.

Every write bumps a per-document ``version``. Writes may pass
``expected_version`` to make themselves conditional; a mismatch raises
``VersionConflict`` and leaves the document untouched.

Backends:
- ``MemoryDocumentStore``: in-process dicts (development, tests)
- ``SqlDocumentStore``: the ``documents`` table via async SQLAlchemy
"""

import asyncio
import copy
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from db.repositories import DocumentRepository
from schemas.common import utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Errors
# ============================================================================


class StoreError(Exception):
    """A read or write against the document store failed."""


class DocumentNotFound(StoreError):
    """An update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"Document not found: {collection}/{doc_id}")
        self.collection = collection
        self.doc_id = doc_id


class VersionConflict(StoreError):
    """A conditional write found a different version than it expected."""

    def __init__(self, collection: str, doc_id: str, expected: int, actual: int):
        super().__init__(
            f"Version conflict on {collection}/{doc_id}: expected {expected}, found {actual}"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


# ============================================================================
# Write sentinels
# ============================================================================


class _Sentinel:
    """Marker value resolved by the store at write time."""

    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __copy__(self) -> "_Sentinel":
        return self

    def __deepcopy__(self, memo) -> "_Sentinel":
        return self


SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
"""Replaced with the store clock's current time."""

DELETE_FIELD = _Sentinel("DELETE_FIELD")
"""Removes the field from the document."""


class ArrayUnion:
    """Append each value that is not already present in the array field."""

    def __init__(self, values: Iterable[Any]):
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


# ============================================================================
# Snapshots and listeners
# ============================================================================


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time copy of a document."""

    collection: str
    id: str
    data: dict[str, Any] | None
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)


SnapshotCallback = Callable[[DocumentSnapshot], Any]
QueryCallback = Callable[[list[DocumentSnapshot]], Any]
ErrorCallback = Callable[[Exception], Any]


@dataclass(eq=False)
class _DocumentListener:
    collection: str
    doc_id: str
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback | None


@dataclass(eq=False)
class _QueryListener:
    collection: str
    order_by: str | None
    descending: bool
    on_snapshot: QueryCallback
    on_error: ErrorCallback | None


class ListenerRegistration:
    """Handle returned by ``listen_*``; call ``remove()`` to unsubscribe."""

    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self.active = True

    def remove(self) -> None:
        if self.active:
            self._remove()
            self.active = False


def _discard(listeners: list, listener: Any) -> None:
    if listener in listeners:
        listeners.remove(listener)


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    """Call a sync or async callback."""
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


# ============================================================================
# Store
# ============================================================================


class DocumentStore(ABC):
    """
    Backend-agnostic store logic.

    Sentinel resolution, merging, version checks and listener fan-out live
    here; subclasses only load, save, remove and scan raw documents.
    Writes are serialized by an ``asyncio.Lock``. Listeners are notified
    after the write completes and always receive a fresh read, so a late
    notification never carries an older state than the store holds.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._write_lock = asyncio.Lock()
        self._document_listeners: list[_DocumentListener] = []
        self._query_listeners: list[_QueryListener] = []

    # --- Backend hooks ---

    @abstractmethod
    async def _load(self, collection: str, doc_id: str) -> tuple[dict[str, Any], int] | None:
        """Return ``(data, version)`` or None when the document is missing."""

    @abstractmethod
    async def _save(
        self, collection: str, doc_id: str, data: dict[str, Any], version: int
    ) -> None:
        """Persist ``data`` at ``version``; the stored version must be ``version - 1``."""

    @abstractmethod
    async def _remove(self, collection: str, doc_id: str) -> bool:
        """Delete a document; return whether it existed."""

    @abstractmethod
    async def _scan(self, collection: str) -> list[tuple[str, dict[str, Any], int]]:
        """Return ``(doc_id, data, version)`` for every document in a collection."""

    # --- Reads ---

    def now(self) -> datetime:
        """Store clock, used for ``SERVER_TIMESTAMP``."""
        return self._clock()

    @property
    def listener_count(self) -> int:
        return len(self._document_listeners) + len(self._query_listeners)

    def remove_all_listeners(self) -> int:
        """Drop every listener, e.g. at shutdown; returns how many were registered."""
        count = self.listener_count
        self._document_listeners.clear()
        self._query_listeners.clear()
        return count

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        """Read one document. Missing documents yield a snapshot with ``exists == False``."""
        stored = await self._load(collection, doc_id)
        if stored is None:
            return DocumentSnapshot(collection, doc_id, None, 0)
        data, version = stored
        return DocumentSnapshot(collection, doc_id, copy.deepcopy(data), version)

    async def query(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[DocumentSnapshot]:
        """
        Read a collection.

        Args:
            collection: Collection name
            where: Field equality filters
            order_by: Field to sort on; documents missing it come last
            descending: Sort direction

        Returns:
            Matching snapshots
        """
        rows = await self._scan(collection)
        snapshots = [
            DocumentSnapshot(collection, doc_id, copy.deepcopy(data), version)
            for doc_id, data, version in rows
        ]
        if where:
            snapshots = [
                snapshot
                for snapshot in snapshots
                if all(snapshot.get(key) == value for key, value in where.items())
            ]
        if order_by is None:
            return snapshots

        present = [s for s in snapshots if s.get(order_by) is not None]
        missing = [s for s in snapshots if s.get(order_by) is None]
        present.sort(key=lambda s: s.get(order_by), reverse=descending)
        return present + missing

    # --- Writes ---

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        merge: bool = False,
        expected_version: int | None = None,
    ) -> DocumentSnapshot:
        """
        Create or overwrite a document.

        With ``merge=True`` top-level fields are merged into the existing
        document instead of replacing it.

        Raises:
            VersionConflict: ``expected_version`` did not match
        """
        async with self._write_lock:
            current = await self._load(collection, doc_id)
            self._check_version(collection, doc_id, current, expected_version)
            base = dict(current[0]) if merge and current is not None else {}
            snapshot = await self._commit(collection, doc_id, base, data, current)
        await self._notify(collection, doc_id)
        return snapshot

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> DocumentSnapshot:
        """
        Update fields of an existing document.

        Raises:
            DocumentNotFound: the document does not exist
            VersionConflict: ``expected_version`` did not match
        """
        async with self._write_lock:
            current = await self._load(collection, doc_id)
            if current is None:
                raise DocumentNotFound(collection, doc_id)
            self._check_version(collection, doc_id, current, expected_version)
            snapshot = await self._commit(collection, doc_id, dict(current[0]), fields, current)
        await self._notify(collection, doc_id)
        return snapshot

    async def delete(
        self, collection: str, doc_id: str, expected_version: int | None = None
    ) -> bool:
        """Delete a document. Deleting a missing document is a no-op."""
        async with self._write_lock:
            current = await self._load(collection, doc_id)
            self._check_version(collection, doc_id, current, expected_version)
            existed = await self._remove(collection, doc_id)
        if existed:
            await self._notify(collection, doc_id)
        return existed

    def _check_version(
        self,
        collection: str,
        doc_id: str,
        current: tuple[dict[str, Any], int] | None,
        expected_version: int | None,
    ) -> None:
        if expected_version is None:
            return
        actual = current[1] if current is not None else 0
        if actual != expected_version:
            raise VersionConflict(collection, doc_id, expected_version, actual)

    async def _commit(
        self,
        collection: str,
        doc_id: str,
        base: dict[str, Any],
        changes: Mapping[str, Any],
        current: tuple[dict[str, Any], int] | None,
    ) -> DocumentSnapshot:
        now = self.now()
        for key, value in copy.deepcopy(dict(changes)).items():
            if value is DELETE_FIELD:
                base.pop(key, None)
            elif isinstance(value, ArrayUnion):
                existing = base.get(key)
                merged = list(existing) if isinstance(existing, list) else []
                for item in value.values:
                    if item not in merged:
                        merged.append(item)
                base[key] = merged
            else:
                base[key] = self._resolve(value, now)

        version = (current[1] if current is not None else 0) + 1
        await self._save(collection, doc_id, base, version)
        return DocumentSnapshot(collection, doc_id, copy.deepcopy(base), version)

    def _resolve(self, value: Any, now: datetime) -> Any:
        if value is SERVER_TIMESTAMP:
            return now
        if isinstance(value, dict):
            return {
                key: self._resolve(item, now)
                for key, item in value.items()
                if item is not DELETE_FIELD
            }
        return value

    # --- Listeners ---

    async def listen_document(
        self,
        collection: str,
        doc_id: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> ListenerRegistration:
        """
        Subscribe to one document.

        ``on_snapshot`` fires immediately with the current state and again
        after every write or delete of the document.
        """
        listener = _DocumentListener(collection, doc_id, on_snapshot, on_error)
        self._document_listeners.append(listener)
        await self._deliver_document(listener)
        return ListenerRegistration(lambda: _discard(self._document_listeners, listener))

    async def listen_query(
        self,
        collection: str,
        on_snapshot: QueryCallback,
        order_by: str | None = None,
        descending: bool = False,
        on_error: ErrorCallback | None = None,
    ) -> ListenerRegistration:
        """
        Subscribe to a whole collection.

        ``on_snapshot`` fires immediately and after every write in the
        collection, each time with the full ordered result.
        """
        listener = _QueryListener(collection, order_by, descending, on_snapshot, on_error)
        self._query_listeners.append(listener)
        await self._deliver_query(listener)
        return ListenerRegistration(lambda: _discard(self._query_listeners, listener))

    async def _notify(self, collection: str, doc_id: str) -> None:
        for listener in list(self._document_listeners):
            if listener.collection == collection and listener.doc_id == doc_id:
                await self._deliver_document(listener)
        for listener in list(self._query_listeners):
            if listener.collection == collection:
                await self._deliver_query(listener)

    async def _deliver_document(self, listener: _DocumentListener) -> None:
        try:
            snapshot = await self.get(listener.collection, listener.doc_id)
        except StoreError as e:
            await self._deliver_error(listener.on_error, e)
            return
        await self._run_listener(listener.on_snapshot, snapshot)

    async def _deliver_query(self, listener: _QueryListener) -> None:
        try:
            snapshots = await self.query(
                listener.collection,
                order_by=listener.order_by,
                descending=listener.descending,
            )
        except StoreError as e:
            await self._deliver_error(listener.on_error, e)
            return
        await self._run_listener(listener.on_snapshot, snapshots)

    async def _deliver_error(self, on_error: ErrorCallback | None, error: StoreError) -> None:
        if on_error is None:
            logger.error(f"Listener read failed: {error}")
            return
        await self._run_listener(on_error, error)

    async def _run_listener(self, callback: Callable[..., Any], payload: Any) -> None:
        try:
            await _invoke(callback, payload)
        except Exception:
            logger.exception("Listener callback raised; continuing with remaining listeners")


class MemoryDocumentStore(DocumentStore):
    """Documents kept in process memory."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        super().__init__(clock)
        self._collections: dict[str, dict[str, tuple[dict[str, Any], int]]] = {}

    async def _load(self, collection, doc_id):
        return self._collections.get(collection, {}).get(doc_id)

    async def _save(self, collection, doc_id, data, version):
        self._collections.setdefault(collection, {})[doc_id] = (data, version)

    async def _remove(self, collection, doc_id):
        return self._collections.get(collection, {}).pop(doc_id, None) is not None

    async def _scan(self, collection):
        return [
            (doc_id, data, version)
            for doc_id, (data, version) in self._collections.get(collection, {}).items()
        ]


# ============================================================================
# SQL backend
# ============================================================================

_TIMESTAMP_KEY = "$timestamp"


def encode_json_value(value: Any) -> Any:
    """Make a document body JSON-safe; datetimes become ``{"$timestamp": iso}``."""
    if isinstance(value, datetime):
        return {_TIMESTAMP_KEY: value.isoformat()}
    if isinstance(value, dict):
        return {key: encode_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_json_value(item) for item in value]
    return value


def decode_json_value(value: Any) -> Any:
    """Inverse of ``encode_json_value``."""
    if isinstance(value, dict):
        if set(value) == {_TIMESTAMP_KEY}:
            return datetime.fromisoformat(value[_TIMESTAMP_KEY])
        return {key: decode_json_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_json_value(item) for item in value]
    return value


class SqlDocumentStore(DocumentStore):
    """
    Documents persisted in the ``documents`` table.

    Each hook runs in its own transaction. ``_save`` re-checks the stored
    version under a row lock, so conditional writes also hold across
    processes sharing the database. Listeners only see writes made through
    this store instance.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(clock)
        self._session_factory = session_factory

    async def _load(self, collection, doc_id):
        try:
            async with self._session_factory() as session:
                document = await DocumentRepository(session).get(collection, doc_id)
                if document is None:
                    return None
                return decode_json_value(document.data), document.version
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {collection}/{doc_id}: {e}") from e

    async def _save(self, collection, doc_id, data, version):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    repo = DocumentRepository(session)
                    existing = await repo.get(collection, doc_id, for_update=True)
                    stored_version = existing.version if existing is not None else 0
                    if stored_version != version - 1:
                        raise VersionConflict(collection, doc_id, version - 1, stored_version)
                    await repo.save(collection, doc_id, encode_json_value(data), version)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write {collection}/{doc_id}: {e}") from e

    async def _remove(self, collection, doc_id):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    return await DocumentRepository(session).delete(collection, doc_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete {collection}/{doc_id}: {e}") from e

    async def _scan(self, collection):
        try:
            async with self._session_factory() as session:
                documents = await DocumentRepository(session).list_collection(collection)
                return [
                    (document.id, decode_json_value(document.data), document.version)
                    for document in documents
                ]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to scan {collection}: {e}") from e


def create_store(settings: Settings) -> DocumentStore:
    """
    Build the document store selected by ``settings.store_backend``.

    The postgres backend requires ``db.session.init_db`` to have run.
    """
    if settings.store_backend == "postgres":
        from db.session import get_session_factory

        return SqlDocumentStore(get_session_factory())
    return MemoryDocumentStore()
