"""
Real-time trip synchronization service.

Keeps a local projection of the signed-in user's trips and section locks in
step with the document store:

- Local changes are applied to the cache first, then written remotely
- Store listeners push remote changes back into the cache
- Module writes are conditional on the trip version and rebase on conflict
- Section locks expire unless their holder renews them

Write operations return the post-write ``Trip`` projection, or ``None`` when
the write failed. Store failures are logged, never raised to callers; the
recovery path is reloading the affected trip.
"""

import asyncio
import inspect
from collections.abc import Callable, Iterable
from typing import Any

from config import Settings, get_settings
from db.store import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentStore,
    ListenerRegistration,
    StoreError,
    VersionConflict,
)
from schemas.common import utc_now
from schemas.trip import SectionLock, Trip, TripModule
from services.codec import (
    deserialize_locks,
    deserialize_trip,
    serialize_lock,
    serialize_module,
    serialize_trip,
)
from utils.logging import get_sync_logger

# Store collections
TRIPS = "trips"
USERS = "users"
INVITE_CODES = "inviteCodes"
TRIP_LOCKS = "tripLocks"

# Trip fields written by update_trip_details
TRIP_DETAIL_FIELDS = ("title", "description", "startDate", "endDate")

# Change events delivered to subscribers
TRIPS_CHANGED = "trips"
LOCKS_CHANGED = "locks"

ChangeCallback = Callable[[str], Any]
TripCallback = Callable[[Trip | None], Any]


class SyncService:
    """
    Local trip cache backed by a ``DocumentStore``.

    Attributes:
        trips: Trips visible to ``current_user_id``, most recently updated first
        section_locks: ``module_id -> SectionLock`` for the trip whose locks
            are being listened to
    """

    def __init__(self, store: DocumentStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()
        self.logger = get_sync_logger("sync_service")

        self.trips: list[Trip] = []
        self.section_locks: dict[str, SectionLock] = {}
        self.current_user_id: str | None = None

        self._subscribers: list[ChangeCallback] = []
        self._trips_registration: ListenerRegistration | None = None
        self._locks_registration: ListenerRegistration | None = None
        self._trip_registrations: list[ListenerRegistration] = []

    # ========================================================================
    # Change notification
    # ========================================================================

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """
        Register ``callback(event)`` for ``"trips"`` and ``"locks"`` changes.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: str) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                self.logger.error(e, context="subscriber_failed", event=event)

    # ========================================================================
    # Local cache
    # ========================================================================

    def get_trip(self, trip_id: str) -> Trip | None:
        """Cached trip by ID."""
        for trip in self.trips:
            if trip.id == trip_id:
                return trip
        return None

    def _put_trip(self, trip: Trip) -> None:
        for index, cached in enumerate(self.trips):
            if cached.id == trip.id:
                self.trips[index] = trip
                break
        else:
            self.trips.insert(0, trip)
        self._emit(TRIPS_CHANGED)

    def _drop_trip(self, trip_id: str) -> None:
        remaining = [trip for trip in self.trips if trip.id != trip_id]
        if len(remaining) != len(self.trips):
            self.trips = remaining
            self._emit(TRIPS_CHANGED)

    def _adopt_snapshot(self, snapshot: DocumentSnapshot) -> Trip:
        """Overwrite the cached trip with a post-write snapshot."""
        trip = deserialize_trip(snapshot.data or {}, snapshot.version)
        self._put_trip(trip)
        return trip

    def _visible_trips(self, user_id: str, snapshots: Iterable[DocumentSnapshot]) -> list[Trip]:
        trips = []
        for snapshot in snapshots:
            trip = deserialize_trip(snapshot.data or {}, snapshot.version)
            if trip.is_visible_to(user_id):
                trips.append(trip)
            else:
                self.logger.skipped("trip not shared with user", trip_id=snapshot.id, user_id=user_id)
        return trips

    # ========================================================================
    # Trips
    # ========================================================================

    async def load_trips(self, user_id: str) -> None:
        """
        Subscribe to the user's trips.

        Every push replaces ``trips`` with the trips the user owns or
        participates in, newest ``updatedAt`` first. A failed push leaves
        the cache untouched.
        """
        self.logger.operation("load_trips", user_id=user_id)
        self.current_user_id = user_id
        if self._trips_registration is not None:
            self._trips_registration.remove()

        def on_snapshot(snapshots: list[DocumentSnapshot]) -> None:
            self.trips = self._visible_trips(user_id, snapshots)
            self.logger.push(TRIPS, "*", user_id=user_id, count=len(self.trips))
            self._emit(TRIPS_CHANGED)

        def on_error(error: Exception) -> None:
            self.logger.error(error, context="load_trips", user_id=user_id)

        self._trips_registration = await self.store.listen_query(
            TRIPS,
            on_snapshot,
            order_by="updatedAt",
            descending=True,
            on_error=on_error,
        )

    async def fetch_trips(self, user_id: str) -> list[Trip]:
        """Read the user's trips once, without subscribing."""
        self.logger.operation("fetch_trips", user_id=user_id)
        try:
            snapshots = await self.store.query(TRIPS, order_by="updatedAt", descending=True)
        except StoreError as e:
            self.logger.error(e, context="fetch_trips", user_id=user_id)
            return self.trips

        self.current_user_id = user_id
        self.trips = self._visible_trips(user_id, snapshots)
        self._emit(TRIPS_CHANGED)
        return self.trips

    async def create_trip(self, trip: Trip) -> Trip | None:
        """
        Write a new trip document.

        The owner is added to ``participants`` when missing. The owner's trip
        list is refreshed afterwards, unless a live listener already does so.
        """
        self.logger.operation("create_trip", trip_id=trip.id, user_id=trip.created_by)
        if trip.created_by not in trip.participants:
            trip = trip.model_copy(update={"participants": [*trip.participants, trip.created_by]})

        try:
            snapshot = await self.store.set(TRIPS, trip.id, serialize_trip(trip))
        except StoreError as e:
            self.logger.error(e, context="create_trip", trip_id=trip.id)
            return None

        self.logger.remote_write(TRIPS, trip.id, version=snapshot.version)
        created = deserialize_trip(snapshot.data or {}, snapshot.version)
        if self._trips_registration is None or self.current_user_id != trip.created_by:
            await self.fetch_trips(trip.created_by)
        return created

    async def update_trip(self, trip: Trip) -> Trip | None:
        """Overwrite the whole trip document with ``trip``, stamping ``updated_at``."""
        self.logger.operation("update_trip", trip_id=trip.id)
        stamped = trip.model_copy(update={"updated_at": utc_now()})
        self._put_trip(stamped)

        try:
            snapshot = await self.store.set(TRIPS, trip.id, serialize_trip(stamped))
        except StoreError as e:
            self.logger.error(e, context="update_trip", trip_id=trip.id)
            await self.reload_trip(trip.id)
            return None

        self.logger.remote_write(TRIPS, trip.id, version=snapshot.version)
        return self._adopt_snapshot(snapshot)

    async def update_trip_details(
        self, trip: Trip, include_participants: bool = False
    ) -> Trip | None:
        """
        Write ``trip``'s title, description and dates; modules are not touched.

        With ``include_participants`` the participant list is written too,
        conditionally on ``trip.version`` so a concurrent join is not lost.
        """
        self.logger.operation("update_trip_details", trip_id=trip.id)
        document = serialize_trip(trip)
        fields: dict[str, Any] = {key: document[key] for key in TRIP_DETAIL_FIELDS}
        fields["updatedAt"] = SERVER_TIMESTAMP
        expected_version = None
        if include_participants:
            fields["participants"] = document["participants"]
            expected_version = trip.version

        try:
            snapshot = await self.store.update(
                TRIPS, trip.id, fields, expected_version=expected_version
            )
        except StoreError as e:
            self.logger.error(e, context="update_trip_details", trip_id=trip.id)
            await self.reload_trip(trip.id)
            return None

        self.logger.remote_write(TRIPS, trip.id, version=snapshot.version)
        return self._adopt_snapshot(snapshot)

    async def delete_trip(self, trip_id: str) -> bool:
        """Remove the trip locally, then delete the document. No rollback on failure."""
        self.logger.operation("delete_trip", trip_id=trip_id)
        self._drop_trip(trip_id)

        try:
            await self.store.delete(TRIPS, trip_id)
        except StoreError as e:
            self.logger.error(e, context="delete_trip", trip_id=trip_id)
            return False

        self.logger.remote_write(TRIPS, trip_id, deleted=True)
        return True

    async def reload_trip(self, trip_id: str) -> Trip | None:
        """Replace the cached trip with the stored one; drop it if it is gone."""
        try:
            snapshot = await self.store.get(TRIPS, trip_id)
        except StoreError as e:
            self.logger.error(e, context="reload_trip", trip_id=trip_id)
            return None

        if not snapshot.exists:
            self._drop_trip(trip_id)
            return None
        return self._adopt_snapshot(snapshot)

    async def _cached_or_stored(self, trip_id: str) -> Trip | None:
        return self.get_trip(trip_id) or await self.reload_trip(trip_id)

    async def listen_to_trip_updates(
        self, trip_id: str, callback: TripCallback
    ) -> ListenerRegistration:
        """
        Subscribe to a single trip.

        ``callback`` receives the decoded trip on every push, or ``None``
        once the trip is deleted. Pushes newer than the cached trip also
        refresh the cache.
        """
        self.logger.operation("listen_to_trip_updates", trip_id=trip_id)

        async def on_snapshot(snapshot: DocumentSnapshot) -> None:
            if not snapshot.exists:
                result = callback(None)
            else:
                trip = deserialize_trip(snapshot.data, snapshot.version)
                cached = self.get_trip(trip_id)
                if cached is None or trip.version > cached.version:
                    self._put_trip(trip)
                self.logger.push(TRIPS, trip_id, version=snapshot.version)
                result = callback(trip)
            if inspect.isawaitable(result):
                await result

        def on_error(error: Exception) -> None:
            self.logger.error(error, context="listen_to_trip_updates", trip_id=trip_id)

        registration = await self.store.listen_document(TRIPS, trip_id, on_snapshot, on_error)
        self._trip_registrations.append(registration)
        return registration

    def stop_listening(self) -> None:
        """Remove every listener this service registered."""
        for registration in (self._trips_registration, self._locks_registration):
            if registration is not None:
                registration.remove()
        for registration in self._trip_registrations:
            registration.remove()
        self._trips_registration = None
        self._locks_registration = None
        self._trip_registrations = []

    # ========================================================================
    # Modules
    # ========================================================================

    async def add_module(self, trip_id: str, module: TripModule) -> Trip | None:
        """
        Append ``module`` to the stored module array.

        Callers insert the module into their local state first.
        """
        self.logger.operation("add_module", trip_id=trip_id, module_id=module.id)
        try:
            snapshot = await self.store.update(
                TRIPS,
                trip_id,
                {"modules": ArrayUnion([serialize_module(module)]), "updatedAt": SERVER_TIMESTAMP},
            )
        except StoreError as e:
            self.logger.error(e, context="add_module", trip_id=trip_id, module_id=module.id)
            await self.reload_trip(trip_id)
            return None

        self.logger.remote_write(TRIPS, trip_id, version=snapshot.version, module_id=module.id)
        return self._adopt_snapshot(snapshot)

    async def update_module(self, trip_id: str, module: TripModule) -> Trip | None:
        """
        Replace one module in the stored trip.

        Reads the trip, swaps in ``module`` and writes back conditionally on
        the version read. When another writer got there first the replacement
        is re-applied on top of the newer document, up to
        ``settings.max_write_retries`` times, so concurrent edits to other
        modules are preserved.
        """
        self.logger.operation("update_module", trip_id=trip_id, module_id=module.id)
        record = serialize_module(module.model_copy(update={"updated_at": utc_now()}))

        for attempt in range(self.settings.max_write_retries + 1):
            try:
                current = await self.store.get(TRIPS, trip_id)
                if not current.exists:
                    raise DocumentNotFound(TRIPS, trip_id)

                modules = list(current.get("modules") or [])
                index = next(
                    (
                        i
                        for i, existing in enumerate(modules)
                        if isinstance(existing, dict) and existing.get("id") == module.id
                    ),
                    None,
                )
                if index is None:
                    self.logger.skipped(
                        "module no longer in trip", trip_id=trip_id, module_id=module.id
                    )
                    await self.reload_trip(trip_id)
                    return None
                modules[index] = record

                snapshot = await self.store.update(
                    TRIPS,
                    trip_id,
                    {"modules": modules, "updatedAt": SERVER_TIMESTAMP},
                    expected_version=current.version,
                )
            except VersionConflict as e:
                self.logger.skipped(
                    "version conflict, rebasing",
                    trip_id=trip_id,
                    module_id=module.id,
                    attempt=attempt + 1,
                    expected=e.expected,
                    actual=e.actual,
                )
                await asyncio.sleep(0)
                continue
            except StoreError as e:
                self.logger.error(e, context="update_module", trip_id=trip_id, module_id=module.id)
                await self.reload_trip(trip_id)
                return None

            self.logger.remote_write(TRIPS, trip_id, version=snapshot.version, module_id=module.id)
            return self._adopt_snapshot(snapshot)

        self.logger.logger.warning(
            "update_module gave up after repeated version conflicts",
            extra={"trip_id": trip_id, "module_id": module.id},
        )
        await self.reload_trip(trip_id)
        return None

    async def update_modules_batch(self, trip_id: str, modules: list[TripModule]) -> Trip | None:
        """Replace the whole module list (e.g. after a reorder)."""
        self.logger.operation("update_modules_batch", trip_id=trip_id, count=len(modules))
        trip = await self._cached_or_stored(trip_id)
        if trip is None:
            return None
        return await self._write_modules(trip, list(modules), "update_modules_batch")

    async def toggle_module_completion(self, trip_id: str, module_id: str) -> Trip | None:
        """Flip ``is_completed`` on one module."""
        self.logger.operation("toggle_module_completion", trip_id=trip_id, module_id=module_id)
        trip = await self._cached_or_stored(trip_id)
        if trip is None:
            return None
        index = trip.find_module(module_id)
        if index is None:
            self.logger.skipped("module not found", trip_id=trip_id, module_id=module_id)
            return None

        modules = list(trip.modules)
        toggled = modules[index]
        modules[index] = toggled.model_copy(
            update={"is_completed": not toggled.is_completed, "updated_at": utc_now()}
        )
        return await self._write_modules(trip, modules, "toggle_module_completion")

    async def delete_module(self, trip_id: str, module_id: str) -> Trip | None:
        """Remove one module; the trip is fetched first when it is not cached."""
        self.logger.operation("delete_module", trip_id=trip_id, module_id=module_id)
        trip = await self._cached_or_stored(trip_id)
        if trip is None:
            return None
        if trip.find_module(module_id) is None:
            self.logger.skipped("module not found", trip_id=trip_id, module_id=module_id)
            return None

        modules = [module for module in trip.modules if module.id != module_id]
        return await self._write_modules(trip, modules, "delete_module")

    async def _write_modules(
        self, trip: Trip, modules: list[TripModule], operation: str
    ) -> Trip | None:
        """
        Apply ``modules`` to the cache, then write the full array conditionally
        on the cached version. Any failure reloads the trip from the store.
        """
        self._put_trip(trip.model_copy(update={"modules": modules, "updated_at": utc_now()}))
        try:
            snapshot = await self.store.update(
                TRIPS,
                trip.id,
                {
                    "modules": [serialize_module(module) for module in modules],
                    "updatedAt": SERVER_TIMESTAMP,
                },
                expected_version=trip.version,
            )
        except StoreError as e:
            self.logger.error(e, context=operation, trip_id=trip.id)
            await self.reload_trip(trip.id)
            return None

        self.logger.remote_write(TRIPS, trip.id, version=snapshot.version, operation=operation)
        return self._adopt_snapshot(snapshot)

    # ========================================================================
    # Section locks
    # ========================================================================

    async def lock_section(self, trip_id: str, module_id: str, user_id: str) -> SectionLock | None:
        """
        Claim ``module_id`` for editing.

        Fails (returns None) while another user holds an unexpired lock.
        The claim is written conditionally on the lock document's version
        so two users cannot both acquire it.
        """
        self.logger.operation("lock_section", trip_id=trip_id, module_id=module_id, user_id=user_id)
        return await self._claim_lock(trip_id, module_id, user_id, require_existing=False)

    async def renew_section_lock(
        self, trip_id: str, module_id: str, user_id: str
    ) -> SectionLock | None:
        """
        Push the expiry of a lock ``user_id`` holds.

        Returns None when the lock was released or taken over by someone else.
        """
        return await self._claim_lock(trip_id, module_id, user_id, require_existing=True)

    async def _claim_lock(
        self, trip_id: str, module_id: str, user_id: str, require_existing: bool
    ) -> SectionLock | None:
        try:
            current = await self.store.get(TRIP_LOCKS, trip_id)
            now = self.store.now()
            held = deserialize_locks(current.data).get(module_id)
            if held is not None and held.user_id != user_id and not held.is_expired(now):
                self.logger.skipped(
                    "section held by another user",
                    trip_id=trip_id,
                    module_id=module_id,
                    holder=held.user_id,
                )
                return None
            if require_existing and (held is None or held.user_id != user_id):
                self.logger.skipped("lock no longer held", trip_id=trip_id, module_id=module_id)
                return None

            lock = SectionLock.for_user(user_id, self.settings.lock_ttl_seconds, now=now)
            await self.store.set(
                TRIP_LOCKS,
                trip_id,
                {module_id: serialize_lock(lock)},
                merge=True,
                expected_version=current.version,
            )
        except StoreError as e:
            self.logger.error(e, context="lock_section", trip_id=trip_id, module_id=module_id)
            return None

        self.logger.remote_write(TRIP_LOCKS, trip_id, module_id=module_id, user_id=user_id)
        self.section_locks[module_id] = lock
        self._emit(LOCKS_CHANGED)
        return lock

    async def unlock_section(
        self, trip_id: str, module_id: str, user_id: str | None = None
    ) -> bool:
        """
        Release the lock on ``module_id``. Releasing an absent lock succeeds.

        With ``user_id`` only that user's lock is removed: a lock someone else
        has taken over is left in place, and the call fails while it is live.
        The removal is conditional on the lock document's version.
        """
        self.logger.operation(
            "unlock_section", trip_id=trip_id, module_id=module_id, user_id=user_id
        )
        for attempt in range(self.settings.max_write_retries + 1):
            try:
                expected_version = None
                if user_id is not None:
                    current = await self.store.get(TRIP_LOCKS, trip_id)
                    held = deserialize_locks(current.data).get(module_id)
                    if held is None or held.user_id != user_id:
                        self._forget_lock(module_id, user_id)
                        if held is not None and not held.is_expired(self.store.now()):
                            self.logger.skipped(
                                "section taken over by another user",
                                trip_id=trip_id,
                                module_id=module_id,
                                holder=held.user_id,
                            )
                            return False
                        return True
                    expected_version = current.version

                await self.store.update(
                    TRIP_LOCKS,
                    trip_id,
                    {module_id: DELETE_FIELD},
                    expected_version=expected_version,
                )
            except DocumentNotFound:
                pass
            except VersionConflict:
                self.logger.skipped(
                    "lock document changed, retrying release",
                    trip_id=trip_id,
                    module_id=module_id,
                    attempt=attempt + 1,
                )
                continue
            except StoreError as e:
                self.logger.error(e, context="unlock_section", trip_id=trip_id, module_id=module_id)
                return False

            self.logger.remote_write(TRIP_LOCKS, trip_id, module_id=module_id, released=True)
            if self.section_locks.pop(module_id, None) is not None:
                self._emit(LOCKS_CHANGED)
            return True

        self.logger.logger.warning(
            "unlock_section gave up after repeated version conflicts",
            extra={"trip_id": trip_id, "module_id": module_id},
        )
        return False

    def _forget_lock(self, module_id: str, user_id: str) -> None:
        """Drop a cached lock of ``user_id`` that the store no longer has."""
        cached = self.section_locks.get(module_id)
        if cached is not None and cached.user_id == user_id:
            del self.section_locks[module_id]
            self._emit(LOCKS_CHANGED)

    async def listen_to_section_locks(self, trip_id: str) -> None:
        """Mirror ``tripLocks/{trip_id}`` into ``section_locks``; each push replaces the map."""
        self.logger.operation("listen_to_section_locks", trip_id=trip_id)
        if self._locks_registration is not None:
            self._locks_registration.remove()

        def on_snapshot(snapshot: DocumentSnapshot) -> None:
            self.section_locks = deserialize_locks(snapshot.data)
            self.logger.push(TRIP_LOCKS, trip_id, count=len(self.section_locks))
            self._emit(LOCKS_CHANGED)

        def on_error(error: Exception) -> None:
            self.logger.error(error, context="listen_to_section_locks", trip_id=trip_id)

        self._locks_registration = await self.store.listen_document(
            TRIP_LOCKS, trip_id, on_snapshot, on_error
        )

    async def fetch_section_locks(self, trip_id: str) -> dict[str, SectionLock]:
        """Read ``tripLocks/{trip_id}`` once into ``section_locks``."""
        try:
            snapshot = await self.store.get(TRIP_LOCKS, trip_id)
        except StoreError as e:
            self.logger.error(e, context="fetch_section_locks", trip_id=trip_id)
            return self.section_locks

        self.section_locks = deserialize_locks(snapshot.data)
        self._emit(LOCKS_CHANGED)
        return self.section_locks

    def active_locks(self) -> dict[str, SectionLock]:
        """Unexpired locks by module ID."""
        now = self.store.now()
        return {
            module_id: lock
            for module_id, lock in self.section_locks.items()
            if not lock.is_expired(now)
        }

    def is_section_locked(self, module_id: str, by_user_id: str) -> bool:
        """True when someone other than ``by_user_id`` holds an unexpired lock."""
        lock = self.active_locks().get(module_id)
        return lock is not None and lock.user_id != by_user_id

    def is_locked_by(self, module_id: str, user_id: str) -> bool:
        """True when ``user_id`` holds an unexpired lock on ``module_id``."""
        lock = self.active_locks().get(module_id)
        return lock is not None and lock.user_id == user_id
