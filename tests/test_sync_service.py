"""Tests for the trip synchronization service.

Covers trip CRUD, module writes (including concurrent edits from two
clients), failure recovery and section locks, all against the in-memory
document store.
"""

import asyncio

import pytest

from db.store import MemoryDocumentStore, StoreError, VersionConflict
from schemas.common import ModuleType
from schemas.modules import HotelData
from schemas.trip import Trip, TripModule
from services.codec import serialize_trip
from services.sync import LOCKS_CHANGED, TRIP_LOCKS, TRIPS, TRIPS_CHANGED, SyncService


class InterleavingStore(MemoryDocumentStore):
    """Yields to the event loop on every read so concurrent writers interleave."""

    async def _load(self, collection, doc_id):
        await asyncio.sleep(0)
        return await super()._load(collection, doc_id)


class ConflictingStore(MemoryDocumentStore):
    """Every conditional write loses the race."""

    async def update(self, collection, doc_id, fields, expected_version=None):
        if expected_version is not None:
            raise VersionConflict(collection, doc_id, expected_version, expected_version + 1)
        return await super().update(collection, doc_id, fields)


class FailingStore(MemoryDocumentStore):
    """Reads work, writes fail."""

    async def _save(self, collection, doc_id, data, version):
        raise StoreError("store unavailable")


def hotel_module(position: int, name: str = "") -> TripModule:
    return TripModule(type=ModuleType.HOTEL, data=HotelData(hotel_name=name), position=position)


class TestTrips:
    """Test trip document operations."""

    @pytest.mark.asyncio
    async def test_create_trip(self, sync_service, store, paris_trip):
        """Test creating a trip writes it and refreshes the owner's list."""
        # Act
        created = await sync_service.create_trip(paris_trip)

        # Assert
        assert created.id == paris_trip.id
        assert created.version == 1
        assert created.participants == ["U1"]
        assert created.modules == []
        assert [trip.id for trip in sync_service.trips] == [paris_trip.id]
        snapshot = await store.get(TRIPS, paris_trip.id)
        assert snapshot.get("title") == "Paris Trip"
        assert snapshot.get("createdBy") == "U1"

    @pytest.mark.asyncio
    async def test_create_trip_adds_owner_to_participants(self, sync_service, paris_trip):
        trip = paris_trip.model_copy(update={"participants": ["U2"]})

        created = await sync_service.create_trip(trip)

        assert created.participants == ["U2", "U1"]

    @pytest.mark.asyncio
    async def test_create_trip_failure(self, test_settings, paris_trip):
        service = SyncService(FailingStore(), test_settings)

        assert await service.create_trip(paris_trip) is None
        assert service.trips == []

    @pytest.mark.asyncio
    async def test_load_trips_filters_and_orders(self, store, test_settings, clock):
        """Test the trip list only shows the user's trips, newest first."""
        # Arrange
        older = Trip.create("Paris", clock.current, clock.current, created_by="U1")
        older = older.model_copy(update={"updated_at": clock.current})
        shared = Trip.create("Rome", clock.current, clock.current, created_by="U2")
        shared = shared.model_copy(
            update={"participants": ["U2", "U1"], "updated_at": clock.advance(60)}
        )
        foreign = Trip.create("Oslo", clock.current, clock.current, created_by="U3")
        for trip in (older, shared, foreign):
            await store.set(TRIPS, trip.id, serialize_trip(trip))
        service = SyncService(store, test_settings)

        # Act
        await service.load_trips("U1")

        # Assert
        assert [trip.title for trip in service.trips] == ["Rome", "Paris"]
        assert service.current_user_id == "U1"
        service.stop_listening()

    @pytest.mark.asyncio
    async def test_load_trips_receives_pushes(self, sync_service, store, paris_trip):
        events = []
        sync_service.subscribe(events.append)
        await sync_service.load_trips("U1")

        await store.set(TRIPS, paris_trip.id, serialize_trip(paris_trip))

        assert [trip.id for trip in sync_service.trips] == [paris_trip.id]
        assert events == [TRIPS_CHANGED, TRIPS_CHANGED]

    @pytest.mark.asyncio
    async def test_fetch_trips(self, sync_service, stored_trip):
        sync_service.trips = []

        trips = await sync_service.fetch_trips("U1")

        assert [trip.id for trip in trips] == [stored_trip.id]
        assert await sync_service.fetch_trips("U9") == []

    @pytest.mark.asyncio
    async def test_update_trip(self, sync_service, store, stored_trip):
        renamed = stored_trip.model_copy(update={"title": "Paris & Lyon"})

        updated = await sync_service.update_trip(renamed)

        assert updated.title == "Paris & Lyon"
        assert updated.version == 2
        assert updated.updated_at >= stored_trip.updated_at
        assert (await store.get(TRIPS, stored_trip.id)).get("title") == "Paris & Lyon"

    @pytest.mark.asyncio
    async def test_update_trip_details_keeps_module_edit(
        self, sync_service, store, stored_trip, flight_module, test_settings
    ):
        """Test a rename from a stale copy does not undo another client's module edit."""
        # Arrange
        stale = await sync_service.add_module(stored_trip.id, flight_module)
        other = SyncService(store, test_settings)
        rebooked = flight_module.model_copy(
            update={"data": flight_module.data.model_copy(update={"flight_number": "BA200"})}
        )
        assert await other.update_module(stored_trip.id, rebooked) is not None

        # Act
        updated = await sync_service.update_trip_details(
            stale.model_copy(update={"title": "Paris & Lyon"})
        )

        # Assert
        assert updated.title == "Paris & Lyon"
        assert updated.modules[0].data.flight_number == "BA200"
        stored = await store.get(TRIPS, stored_trip.id)
        assert stored.get("title") == "Paris & Lyon"
        assert stored.get("modules")[0]["data"]["flightNumber"] == "BA200"

    @pytest.mark.asyncio
    async def test_update_trip_details_participants_need_current_version(
        self, sync_service, store, stored_trip, test_settings
    ):
        """Test a participant change from a stale copy is refused and the trip reloaded."""
        other = SyncService(store, test_settings)
        await other.update_trip_details(stored_trip.model_copy(update={"title": "Renamed"}))

        result = await sync_service.update_trip_details(
            stored_trip.model_copy(update={"participants": ["U1", "U3"]}),
            include_participants=True,
        )

        assert result is None
        assert sync_service.get_trip(stored_trip.id).title == "Renamed"
        assert (await store.get(TRIPS, stored_trip.id)).get("participants") == ["U1"]

    @pytest.mark.asyncio
    async def test_delete_trip(self, sync_service, store, stored_trip):
        assert await sync_service.delete_trip(stored_trip.id) is True

        assert sync_service.get_trip(stored_trip.id) is None
        assert (await store.get(TRIPS, stored_trip.id)).exists is False

    @pytest.mark.asyncio
    async def test_reload_drops_deleted_trip(self, sync_service, store, stored_trip):
        await store.delete(TRIPS, stored_trip.id)

        assert await sync_service.reload_trip(stored_trip.id) is None
        assert sync_service.trips == []

    @pytest.mark.asyncio
    async def test_listen_to_trip_updates(self, sync_service, store, stored_trip):
        """Test single-trip listeners see changes and deletion."""
        received = []
        await sync_service.listen_to_trip_updates(stored_trip.id, received.append)

        await store.update(TRIPS, stored_trip.id, {"title": "Lyon"})
        await store.delete(TRIPS, stored_trip.id)

        assert [trip.title if trip else None for trip in received] == ["Paris Trip", "Lyon", None]
        assert sync_service.get_trip(stored_trip.id).version == 2

    @pytest.mark.asyncio
    async def test_stop_listening(self, sync_service, store, stored_trip):
        await sync_service.load_trips("U1")
        await sync_service.listen_to_trip_updates(stored_trip.id, lambda trip: None)
        await sync_service.listen_to_section_locks(stored_trip.id)

        sync_service.stop_listening()

        assert store.listener_count == 0


class TestModules:
    """Test module writes."""

    @pytest.mark.asyncio
    async def test_add_module(self, sync_service, store, stored_trip, flight_module):
        """Test the Paris flight lands in the stored module array."""
        trip = await sync_service.add_module(stored_trip.id, flight_module)

        assert trip.version == 2
        assert [module.id for module in trip.modules] == [flight_module.id]
        assert trip.modules[0].data.flight_number == "AA100"
        assert trip.modules[0].data.cost == 0.0
        stored = await store.get(TRIPS, stored_trip.id)
        assert stored.get("modules")[0]["data"]["departureAirport"] == "JFK"

    @pytest.mark.asyncio
    async def test_add_module_to_missing_trip(self, sync_service, flight_module):
        assert await sync_service.add_module("missing", flight_module) is None

    @pytest.mark.asyncio
    async def test_update_module(self, sync_service, stored_trip, flight_module):
        await sync_service.add_module(stored_trip.id, flight_module)
        edited = flight_module.model_copy(
            update={"data": flight_module.data.model_copy(update={"cost": 420.0})}
        )

        trip = await sync_service.update_module(stored_trip.id, edited)

        assert trip.version == 3
        assert trip.modules[0].data.cost == 420.0
        assert trip.cost_summary().total_cost == 420.0

    @pytest.mark.asyncio
    async def test_update_removed_module(self, sync_service, stored_trip, flight_module):
        """Test editing a module someone else deleted is dropped."""
        assert await sync_service.update_module(stored_trip.id, flight_module) is None
        assert sync_service.get_trip(stored_trip.id).modules == []

    @pytest.mark.asyncio
    async def test_concurrent_module_edits_both_survive(self, test_settings, paris_trip):
        """Test two clients editing different modules at once keep both edits."""
        # Arrange
        store = InterleavingStore()
        first, second = hotel_module(0), hotel_module(1)
        trip = paris_trip.model_copy(update={"modules": [first, second]})
        await store.set(TRIPS, trip.id, serialize_trip(trip))
        alice = SyncService(store, test_settings)
        bob = SyncService(store, test_settings)

        # Act
        await asyncio.gather(
            alice.update_module(
                trip.id, first.model_copy(update={"data": HotelData(hotel_name="Lutetia")})
            ),
            bob.update_module(
                trip.id, second.model_copy(update={"data": HotelData(hotel_name="Ritz")})
            ),
        )

        # Assert
        stored = await alice.reload_trip(trip.id)
        assert [m.data.hotel_name for m in stored.modules] == ["Lutetia", "Ritz"]
        assert stored.version == 3

    @pytest.mark.asyncio
    async def test_unconditional_array_writes_lose_an_edit(self, store, paris_trip):
        """Test why module writes are conditional: blind full-array writes clobber."""
        # Arrange: both clients read the same trip
        first, second = hotel_module(0), hotel_module(1)
        trip = paris_trip.model_copy(update={"modules": [first, second]})
        await store.set(TRIPS, trip.id, serialize_trip(trip))
        alice_view = (await store.get(TRIPS, trip.id)).get("modules")
        bob_view = (await store.get(TRIPS, trip.id)).get("modules")

        # Act: each writes its whole array back without a version check
        alice_view[0]["data"]["hotelName"] = "Lutetia"
        bob_view[1]["data"]["hotelName"] = "Ritz"
        await store.update(TRIPS, trip.id, {"modules": alice_view})
        await store.update(TRIPS, trip.id, {"modules": bob_view})

        # Assert
        stored = (await store.get(TRIPS, trip.id)).get("modules")
        assert [m["data"]["hotelName"] for m in stored] == ["", "Ritz"]

    @pytest.mark.asyncio
    async def test_update_module_gives_up_after_retries(self, test_settings, paris_trip):
        store = ConflictingStore()
        module = hotel_module(0)
        trip = paris_trip.model_copy(update={"modules": [module]})
        await store.set(TRIPS, trip.id, serialize_trip(trip))
        service = SyncService(store, test_settings)

        result = await service.update_module(trip.id, module)

        assert result is None
        assert service.get_trip(trip.id).version == 1

    @pytest.mark.asyncio
    async def test_toggle_module_completion(self, sync_service, stored_trip, flight_module):
        await sync_service.add_module(stored_trip.id, flight_module)

        trip = await sync_service.toggle_module_completion(stored_trip.id, flight_module.id)
        assert trip.modules[0].is_completed is True

        trip = await sync_service.toggle_module_completion(stored_trip.id, flight_module.id)
        assert trip.modules[0].is_completed is False
        assert trip.version == 4

    @pytest.mark.asyncio
    async def test_delete_module(self, sync_service, store, stored_trip, flight_module):
        await sync_service.add_module(stored_trip.id, flight_module)

        trip = await sync_service.delete_module(stored_trip.id, flight_module.id)

        assert trip.modules == []
        assert (await store.get(TRIPS, stored_trip.id)).get("modules") == []

    @pytest.mark.asyncio
    async def test_delete_unknown_module(self, sync_service, stored_trip):
        assert await sync_service.delete_module(stored_trip.id, "missing") is None

    @pytest.mark.asyncio
    async def test_update_modules_batch(self, sync_service, stored_trip):
        modules = [hotel_module(0, "A"), hotel_module(1, "B")]

        trip = await sync_service.update_modules_batch(stored_trip.id, modules)

        assert [m.data.hotel_name for m in trip.sorted_modules()] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_stale_batch_write_reloads(self, sync_service, store, stored_trip):
        """Test a write based on an outdated trip is rejected and the cache refreshed."""
        # Arrange: another client renames the trip behind our back
        await store.update(TRIPS, stored_trip.id, {"title": "Lyon"})

        # Act
        result = await sync_service.update_modules_batch(stored_trip.id, [hotel_module(0)])

        # Assert
        assert result is None
        cached = sync_service.get_trip(stored_trip.id)
        assert cached.title == "Lyon"
        assert cached.modules == []
        assert cached.version == 2


class TestSectionLocks:
    """Test section lock acquisition and expiry."""

    @pytest.mark.asyncio
    async def test_lock_section(self, sync_service, store, clock):
        events = []
        sync_service.subscribe(events.append)

        lock = await sync_service.lock_section("T1", "M1", "U1")

        assert lock.user_id == "U1"
        assert (lock.expires_at - clock.current).total_seconds() == 60
        assert sync_service.is_locked_by("M1", "U1")
        assert events == [LOCKS_CHANGED]
        stored = await store.get(TRIP_LOCKS, "T1")
        assert stored.get("M1")["userId"] == "U1"

    @pytest.mark.asyncio
    async def test_lock_held_by_another_user(self, sync_service, store, test_settings):
        other = SyncService(store, test_settings)
        await other.lock_section("T1", "M1", "U2")

        assert await sync_service.lock_section("T1", "M1", "U1") is None

    @pytest.mark.asyncio
    async def test_expired_lock_can_be_taken_over(self, sync_service, store, test_settings, clock):
        other = SyncService(store, test_settings)
        await other.lock_section("T1", "M1", "U2")
        clock.advance(61)

        lock = await sync_service.lock_section("T1", "M1", "U1")

        assert lock.user_id == "U1"
        assert await other.renew_section_lock("T1", "M1", "U2") is None

    @pytest.mark.asyncio
    async def test_locks_on_other_modules_kept(self, sync_service, store):
        await sync_service.lock_section("T1", "M1", "U1")
        await sync_service.lock_section("T1", "M2", "U2")

        stored = await store.get(TRIP_LOCKS, "T1")

        assert {module_id: entry["userId"] for module_id, entry in stored.data.items()} == {
            "M1": "U1",
            "M2": "U2",
        }

    @pytest.mark.asyncio
    async def test_renew_extends_expiry(self, sync_service, clock):
        first = await sync_service.lock_section("T1", "M1", "U1")
        clock.advance(20)

        renewed = await sync_service.renew_section_lock("T1", "M1", "U1")

        assert renewed.expires_at > first.expires_at

    @pytest.mark.asyncio
    async def test_renew_released_lock(self, sync_service):
        await sync_service.lock_section("T1", "M1", "U1")
        await sync_service.unlock_section("T1", "M1")

        assert await sync_service.renew_section_lock("T1", "M1", "U1") is None

    @pytest.mark.asyncio
    async def test_unlock_section(self, sync_service, store):
        await sync_service.lock_section("T1", "M1", "U1")

        assert await sync_service.unlock_section("T1", "M1") is True

        assert (await store.get(TRIP_LOCKS, "T1")).data == {}
        assert sync_service.section_locks == {}

    @pytest.mark.asyncio
    async def test_unlock_without_lock_document(self, sync_service):
        assert await sync_service.unlock_section("T1", "M1") is True
        assert await sync_service.unlock_section("T1", "M1", "U1") is True

    @pytest.mark.asyncio
    async def test_holder_unlocks_own_lock(self, sync_service, store):
        await sync_service.lock_section("T1", "M1", "U1")
        await sync_service.lock_section("T1", "M2", "U2")

        assert await sync_service.unlock_section("T1", "M1", "U1") is True

        assert set((await store.get(TRIP_LOCKS, "T1")).data) == {"M2"}
        assert "M1" not in sync_service.section_locks

    @pytest.mark.asyncio
    async def test_unlock_leaves_lock_taken_over_after_expiry(
        self, sync_service, store, test_settings, clock
    ):
        """Test a user whose lock expired cannot release the new holder's lock."""
        # Arrange
        await sync_service.lock_section("T1", "M1", "U1")
        clock.advance(61)
        other = SyncService(store, test_settings)
        assert await other.lock_section("T1", "M1", "U2") is not None

        # Act
        released = await sync_service.unlock_section("T1", "M1", "U1")

        # Assert
        assert released is False
        assert "M1" not in sync_service.section_locks
        assert (await store.get(TRIP_LOCKS, "T1")).get("M1")["userId"] == "U2"
        await other.fetch_section_locks("T1")
        assert other.is_locked_by("M1", "U2")

    @pytest.mark.asyncio
    async def test_unlock_ignores_expired_lock_of_other_user(
        self, sync_service, store, test_settings, clock
    ):
        other = SyncService(store, test_settings)
        await other.lock_section("T1", "M1", "U2")
        clock.advance(61)

        assert await sync_service.unlock_section("T1", "M1", "U1") is True
        assert (await store.get(TRIP_LOCKS, "T1")).get("M1")["userId"] == "U2"

    @pytest.mark.asyncio
    async def test_unlock_retries_when_lock_document_changes(self, test_settings, clock):
        """Test a release racing a claim on another module still removes only its own entry."""
        store = InterleavingStore(clock=clock)
        alice = SyncService(store, test_settings)
        bob = SyncService(store, test_settings)
        await alice.lock_section("T1", "M1", "U1")

        released, claimed = await asyncio.gather(
            alice.unlock_section("T1", "M1", "U1"),
            bob.lock_section("T1", "M2", "U2"),
        )

        assert released is True
        stored = await store.get(TRIP_LOCKS, "T1")
        assert "M1" not in stored.data
        assert (claimed is not None) == ("M2" in stored.data)

    @pytest.mark.asyncio
    async def test_listen_to_section_locks(self, sync_service, store, test_settings, clock):
        """Test lock pushes from another client and the lock truth table."""
        # Arrange
        other = SyncService(store, test_settings)
        await sync_service.listen_to_section_locks("T1")

        # Act
        await other.lock_section("T1", "M1", "U2")

        # Assert
        assert set(sync_service.section_locks) == {"M1"}
        assert sync_service.is_section_locked("M1", "U1") is True
        assert sync_service.is_section_locked("M1", "U2") is False
        assert sync_service.is_locked_by("M1", "U2") is True
        assert sync_service.is_section_locked("M2", "U1") is False

        clock.advance(60)
        assert sync_service.is_section_locked("M1", "U1") is False
        assert sync_service.active_locks() == {}

    @pytest.mark.asyncio
    async def test_legacy_lock_entry_never_blocks(self, sync_service, store):
        await store.set(TRIP_LOCKS, "T1", {"M1": "U2"})

        await sync_service.fetch_section_locks("T1")

        assert sync_service.is_section_locked("M1", "U1") is False
        assert (await sync_service.lock_section("T1", "M1", "U1")).user_id == "U1"

    @pytest.mark.asyncio
    async def test_concurrent_lock_attempts(self, test_settings):
        """Test only one of two simultaneous claims wins."""
        store = InterleavingStore()
        alice = SyncService(store, test_settings)
        bob = SyncService(store, test_settings)

        results = await asyncio.gather(
            alice.lock_section("T1", "M1", "U1"),
            bob.lock_section("T1", "M1", "U2"),
        )

        assert sum(result is not None for result in results) == 1
