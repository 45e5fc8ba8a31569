"""Tests for the document store.

Exercises write sentinels, merges, conditional writes and listeners against
both the in-memory backend and the SQL backend on an in-memory SQLite
database.
"""

from datetime import UTC, datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from db.base import Base
from db.repositories import DocumentRepository
from db.session import make_session_factory
from db.store import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFound,
    MemoryDocumentStore,
    SqlDocumentStore,
    VersionConflict,
    decode_json_value,
    encode_json_value,
)


async def create_test_engine():
    """Create an in-memory async SQLite engine with all tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine


@pytest_asyncio.fixture
async def async_engine():
    engine = await create_test_engine()

    yield engine

    # Cleanup
    await engine.dispose()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def doc_store(request, clock):
    """Each test runs once per backend."""
    if request.param == "memory":
        yield MemoryDocumentStore(clock=clock)
        return

    engine = await create_test_engine()
    yield SqlDocumentStore(make_session_factory(engine), clock=clock)
    await engine.dispose()


class TestReadsAndWrites:
    """Test basic document operations."""

    @pytest.mark.asyncio
    async def test_missing_document(self, doc_store):
        """Test reading a missing document yields an empty snapshot."""
        snapshot = await doc_store.get("trips", "T1")

        assert snapshot.exists is False
        assert snapshot.version == 0
        assert snapshot.get("title") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, doc_store):
        # Arrange
        when = datetime(2024, 6, 1, 18, 30, tzinfo=UTC)

        # Act
        written = await doc_store.set("trips", "T1", {"title": "Paris Trip", "startDate": when})
        snapshot = await doc_store.get("trips", "T1")

        # Assert
        assert written.version == 1
        assert snapshot.exists
        assert snapshot.version == 1
        assert snapshot.data == {"title": "Paris Trip", "startDate": when}

    @pytest.mark.asyncio
    async def test_every_write_bumps_version(self, doc_store):
        await doc_store.set("trips", "T1", {"title": "Paris"})
        await doc_store.update("trips", "T1", {"title": "Rome"})
        snapshot = await doc_store.set("trips", "T1", {"title": "Oslo"}, merge=True)

        assert snapshot.version == 3

    @pytest.mark.asyncio
    async def test_set_replaces_without_merge(self, doc_store):
        await doc_store.set("trips", "T1", {"title": "Paris", "description": "Summer"})

        await doc_store.set("trips", "T1", {"title": "Rome"})

        snapshot = await doc_store.get("trips", "T1")
        assert snapshot.data == {"title": "Rome"}

    @pytest.mark.asyncio
    async def test_merge_is_shallow(self, doc_store):
        """Test merge keeps untouched top-level fields but replaces nested maps."""
        await doc_store.set("tripLocks", "T1", {"M1": {"userId": "U1"}, "M2": {"userId": "U2"}})

        await doc_store.set("tripLocks", "T1", {"M1": {"userId": "U3"}}, merge=True)

        snapshot = await doc_store.get("tripLocks", "T1")
        assert snapshot.data == {"M1": {"userId": "U3"}, "M2": {"userId": "U2"}}

    @pytest.mark.asyncio
    async def test_update_missing_document(self, doc_store):
        with pytest.raises(DocumentNotFound):
            await doc_store.update("trips", "missing", {"title": "Paris"})

    @pytest.mark.asyncio
    async def test_delete(self, doc_store):
        await doc_store.set("trips", "T1", {"title": "Paris"})

        assert await doc_store.delete("trips", "T1") is True
        assert await doc_store.delete("trips", "T1") is False
        assert (await doc_store.get("trips", "T1")).exists is False

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, doc_store):
        await doc_store.set("trips", "T1", {"participants": ["U1"]})

        snapshot = await doc_store.get("trips", "T1")
        snapshot.data["participants"].append("U2")

        assert (await doc_store.get("trips", "T1")).data["participants"] == ["U1"]


class TestSentinels:
    """Test values resolved by the store at write time."""

    @pytest.mark.asyncio
    async def test_server_timestamp(self, doc_store, clock):
        await doc_store.set("inviteCodes", "123456", {"createdAt": SERVER_TIMESTAMP})

        snapshot = await doc_store.get("inviteCodes", "123456")

        assert snapshot.data["createdAt"] == clock.current

    @pytest.mark.asyncio
    async def test_nested_server_timestamp(self, doc_store, clock):
        await doc_store.set("tripLocks", "T1", {"M1": {"userId": "U1", "at": SERVER_TIMESTAMP}})

        snapshot = await doc_store.get("tripLocks", "T1")

        assert snapshot.data["M1"]["at"] == clock.current

    @pytest.mark.asyncio
    async def test_delete_field(self, doc_store):
        await doc_store.set("tripLocks", "T1", {"M1": {"userId": "U1"}, "M2": {"userId": "U2"}})

        await doc_store.update("tripLocks", "T1", {"M1": DELETE_FIELD})

        snapshot = await doc_store.get("tripLocks", "T1")
        assert snapshot.data == {"M2": {"userId": "U2"}}

    @pytest.mark.asyncio
    async def test_array_union_appends_missing_values(self, doc_store):
        await doc_store.set("trips", "T1", {"participants": ["U1"]})

        await doc_store.update("trips", "T1", {"participants": ArrayUnion(["U1", "U2"])})

        snapshot = await doc_store.get("trips", "T1")
        assert snapshot.data["participants"] == ["U1", "U2"]

    @pytest.mark.asyncio
    async def test_array_union_creates_field(self, doc_store):
        await doc_store.set("trips", "T1", {"title": "Paris"})

        await doc_store.update("trips", "T1", {"modules": ArrayUnion([{"id": "M1"}])})

        snapshot = await doc_store.get("trips", "T1")
        assert snapshot.data["modules"] == [{"id": "M1"}]


class TestConditionalWrites:
    """Test expected_version checks."""

    @pytest.mark.asyncio
    async def test_matching_version_writes(self, doc_store):
        await doc_store.set("trips", "T1", {"title": "Paris"})

        snapshot = await doc_store.update("trips", "T1", {"title": "Rome"}, expected_version=1)

        assert snapshot.version == 2

    @pytest.mark.asyncio
    async def test_stale_version_rejected(self, doc_store):
        """Test a stale writer cannot overwrite a newer document."""
        await doc_store.set("trips", "T1", {"title": "Paris"})
        await doc_store.update("trips", "T1", {"title": "Rome"})

        with pytest.raises(VersionConflict) as exc_info:
            await doc_store.update("trips", "T1", {"title": "Oslo"}, expected_version=1)

        assert exc_info.value.expected == 1
        assert exc_info.value.actual == 2
        assert (await doc_store.get("trips", "T1")).data["title"] == "Rome"

    @pytest.mark.asyncio
    async def test_create_only_with_version_zero(self, doc_store):
        await doc_store.set("tripLocks", "T1", {"M1": {"userId": "U1"}}, expected_version=0)

        with pytest.raises(VersionConflict):
            await doc_store.set("tripLocks", "T1", {"M1": {"userId": "U2"}}, expected_version=0)

    @pytest.mark.asyncio
    async def test_conditional_delete(self, doc_store):
        await doc_store.set("trips", "T1", {"title": "Paris"})

        with pytest.raises(VersionConflict):
            await doc_store.delete("trips", "T1", expected_version=5)

        assert await doc_store.delete("trips", "T1", expected_version=1) is True


class TestQueries:
    """Test collection reads."""

    @pytest.mark.asyncio
    async def test_where_filter(self, doc_store):
        await doc_store.set("inviteCodes", "111111", {"tripId": "T1", "isActive": True})
        await doc_store.set("inviteCodes", "222222", {"tripId": "T1", "isActive": False})
        await doc_store.set("inviteCodes", "333333", {"tripId": "T2", "isActive": True})

        snapshots = await doc_store.query("inviteCodes", where={"tripId": "T1", "isActive": True})

        assert [s.id for s in snapshots] == ["111111"]

    @pytest.mark.asyncio
    async def test_order_by_descending_missing_last(self, doc_store, clock):
        await doc_store.set("trips", "old", {"updatedAt": clock.current})
        await doc_store.set("trips", "none", {"title": "No timestamp"})
        await doc_store.set("trips", "new", {"updatedAt": clock.advance(60)})

        snapshots = await doc_store.query("trips", order_by="updatedAt", descending=True)

        assert [s.id for s in snapshots] == ["new", "old", "none"]


class TestListeners:
    """Test real-time notifications."""

    @pytest.mark.asyncio
    async def test_document_listener_fires_immediately_and_on_change(self, doc_store):
        # Arrange
        received = []
        await doc_store.set("trips", "T1", {"title": "Paris"})

        # Act
        registration = await doc_store.listen_document("trips", "T1", received.append)
        await doc_store.update("trips", "T1", {"title": "Rome"})
        await doc_store.set("trips", "other", {"title": "Ignored"})

        # Assert
        assert [s.get("title") for s in received] == ["Paris", "Rome"]
        assert [s.version for s in received] == [1, 2]
        registration.remove()

    @pytest.mark.asyncio
    async def test_document_listener_sees_delete(self, doc_store):
        received = []
        await doc_store.set("trips", "T1", {"title": "Paris"})
        await doc_store.listen_document("trips", "T1", received.append)

        await doc_store.delete("trips", "T1")

        assert received[-1].exists is False

    @pytest.mark.asyncio
    async def test_query_listener_gets_ordered_collection(self, doc_store, clock):
        received = []
        await doc_store.set("trips", "A", {"updatedAt": clock.current})

        await doc_store.listen_query("trips", received.append, order_by="updatedAt", descending=True)
        await doc_store.set("trips", "B", {"updatedAt": clock.advance(10)})

        assert [[s.id for s in result] for result in received] == [["A"], ["B", "A"]]

    @pytest.mark.asyncio
    async def test_removed_listener_stops_receiving(self, doc_store):
        received = []
        registration = await doc_store.listen_document("trips", "T1", received.append)

        registration.remove()
        registration.remove()
        await doc_store.set("trips", "T1", {"title": "Paris"})

        assert len(received) == 1
        assert registration.active is False
        assert doc_store.listener_count == 0

    @pytest.mark.asyncio
    async def test_remove_all_listeners(self, doc_store):
        received = []
        registration = await doc_store.listen_document("trips", "T1", received.append)
        await doc_store.listen_query("trips", received.append)

        assert doc_store.remove_all_listeners() == 2
        await doc_store.set("trips", "T1", {"title": "Paris"})
        registration.remove()

        assert len(received) == 2
        assert doc_store.listener_count == 0

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self, doc_store):
        received = []

        async def on_snapshot(snapshot):
            received.append(snapshot.version)

        await doc_store.listen_document("trips", "T1", on_snapshot)
        await doc_store.set("trips", "T1", {"title": "Paris"})

        assert received == [0, 1]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_writes(self, doc_store):
        """Test a raising callback is isolated from the writer and other listeners."""
        received = []

        def broken(snapshot):
            if snapshot.exists:
                raise RuntimeError("boom")

        await doc_store.listen_document("trips", "T1", broken)
        await doc_store.listen_document("trips", "T1", received.append)

        snapshot = await doc_store.set("trips", "T1", {"title": "Paris"})

        assert snapshot.version == 1
        assert received[-1].get("title") == "Paris"


class TestSqlEncoding:
    """Test the JSON encoding used by the SQL backend."""

    def test_timestamps_round_trip(self):
        when = datetime(2024, 6, 1, 18, 30, tzinfo=UTC)
        body = {"createdAt": when, "modules": [{"data": {"departureDate": when}}]}

        encoded = encode_json_value(body)

        assert encoded["createdAt"] == {"$timestamp": when.isoformat()}
        assert decode_json_value(encoded) == body

    @pytest.mark.asyncio
    async def test_rows_hold_encoded_body(self, async_engine, clock):
        # Arrange
        session_factory = make_session_factory(async_engine)
        sql_store = SqlDocumentStore(session_factory, clock=clock)

        # Act
        await sql_store.set("trips", "T1", {"createdAt": SERVER_TIMESTAMP})

        # Assert
        async with session_factory() as session:
            document = await DocumentRepository(session).get("trips", "T1")
        assert document.version == 1
        assert document.data == {"createdAt": {"$timestamp": clock.current.isoformat()}}
