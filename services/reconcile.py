"""
Reconciliation of pushed trip snapshots with local optimistic edits.

A trip screen edits its own copy of the trip before the store confirms the
write. Meanwhile the store keeps pushing snapshots, including the echo of
that very write. ``ReconciliationGuard`` decides which pushes may overwrite
local state, using the store-assigned document version:

- while any local write is in flight, pushes are held back
- a push is applied only if its version is newer than the last one applied
- a push held back during a write triggers a refresh once writes settle
"""

from collections.abc import Awaitable, Callable
from typing import Any

from schemas.common import ModuleType
from schemas.trip import CostSummary, Trip, TripModule, reorder_modules
from services.locks import LockHeartbeat
from services.sync import SyncService
from utils.logging import get_sync_logger

logger = get_sync_logger("trip_session")


class ReconciliationGuard:
    """Version bookkeeping for one trip."""

    def __init__(self, version: int = 0):
        self.last_known_version = version
        self.pending_writes = 0
        self._deferred_version = 0

    @property
    def is_performing_local_operation(self) -> bool:
        return self.pending_writes > 0

    def begin_local_write(self) -> None:
        self.pending_writes += 1

    def end_local_write(self, version: int | None = None) -> bool:
        """
        Mark one local write finished.

        Args:
            version: Version the store assigned to the write, if it succeeded

        Returns:
            True when a push newer than everything applied was held back
            during the write and the trip should be refreshed
        """
        self.pending_writes = max(0, self.pending_writes - 1)
        if version is not None:
            self.record_applied(version)
        if self.is_performing_local_operation:
            return False
        needs_refresh = self._deferred_version > self.last_known_version
        self._deferred_version = 0
        return needs_refresh

    def should_apply(self, version: int) -> bool:
        """
        Whether a pushed snapshot at ``version`` may replace local state.

        Pushes arriving during a local write are remembered so that
        ``end_local_write`` can ask for a refresh.
        """
        if self.is_performing_local_operation:
            self._deferred_version = max(self._deferred_version, version)
            return False
        return version > self.last_known_version

    def record_applied(self, version: int) -> None:
        self.last_known_version = max(self.last_known_version, version)


class TripSession:
    """
    Local state of one open trip.

    Mutations update ``trip`` immediately and then go through the
    ``SyncService``; the confirmed result (or, on failure, the reloaded
    trip) replaces the optimistic state once no other write is in flight.
    """

    def __init__(self, service: SyncService, trip: Trip, user_id: str):
        self.service = service
        self.trip = trip
        self.user_id = user_id
        self.guard = ReconciliationGuard(trip.version)
        self.deleted = False
        self._registration = None
        self._heartbeats: dict[str, LockHeartbeat] = {}
        self._subscribers: list[Callable[[Trip], Any]] = []

    @property
    def trip_id(self) -> str:
        return self.trip.id

    @property
    def modules(self) -> list[TripModule]:
        return self.trip.modules

    def subscribe(self, callback: Callable[[Trip], Any]) -> Callable[[], None]:
        """Call ``callback(trip)`` whenever the session's trip changes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # --- Lifecycle ---

    async def open(self) -> None:
        """Start listening to the trip and its section locks."""
        logger.operation("open_trip", trip_id=self.trip_id, user_id=self.user_id)
        self._registration = await self.service.listen_to_trip_updates(
            self.trip_id, self._on_push
        )
        await self.service.listen_to_section_locks(self.trip_id)

    async def close(self) -> None:
        """Release held locks and stop listening."""
        for module_id in list(self._heartbeats):
            await self.end_edit(module_id)
        if self._registration is not None:
            self._registration.remove()
            self._registration = None

    async def __aenter__(self) -> "TripSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- State ---

    def _set_trip(self, trip: Trip) -> None:
        self.trip = trip
        for callback in list(self._subscribers):
            callback(trip)

    def _apply_local(self, modules: list[TripModule]) -> None:
        self._set_trip(self.trip.model_copy(update={"modules": modules}))

    def _adopt(self, trip: Trip) -> None:
        self.guard.record_applied(trip.version)
        self._set_trip(trip)

    def _on_push(self, trip: Trip | None) -> None:
        if trip is None:
            logger.operation("trip_deleted", trip_id=self.trip_id)
            self.deleted = True
            return
        if not self.guard.should_apply(trip.version):
            logger.skipped(
                "push held back",
                trip_id=self.trip_id,
                version=trip.version,
                last_known=self.guard.last_known_version,
                pending=self.guard.pending_writes,
            )
            return
        logger.push("trips", self.trip_id, version=trip.version)
        self._adopt(trip)

    async def refresh(self) -> Trip | None:
        """Replace local state with the stored trip."""
        trip = await self.service.reload_trip(self.trip_id)
        if trip is None:
            return None
        if not self.guard.is_performing_local_operation:
            self._adopt(trip)
        return trip

    async def _run_write(self, write: Awaitable[Trip | None]) -> Trip | None:
        self.guard.begin_local_write()
        result = None
        try:
            result = await write
        finally:
            version = result.version if result is not None else None
            needs_refresh = self.guard.end_local_write(version)

        if self.guard.is_performing_local_operation:
            return result
        if result is None or needs_refresh:
            await self.refresh()
        elif result.version >= self.guard.last_known_version:
            self._adopt(result)
        return result

    # --- Optimistic edits ---

    def _next_position(self) -> int:
        return max((module.position for module in self.modules), default=-1) + 1

    async def add_module(self, module_type: ModuleType) -> TripModule:
        """Append a blank module of ``module_type``."""
        module = TripModule.new(module_type, position=self._next_position())
        self._apply_local([*self.modules, module])
        await self._run_write(self.service.add_module(self.trip_id, module))
        return module

    async def update_module(self, module: TripModule) -> Trip | None:
        self._apply_local([module if m.id == module.id else m for m in self.modules])
        return await self._run_write(self.service.update_module(self.trip_id, module))

    async def delete_module(self, module_id: str) -> Trip | None:
        self._apply_local([m for m in self.modules if m.id != module_id])
        return await self._run_write(self.service.delete_module(self.trip_id, module_id))

    async def toggle_completion(self, module_id: str) -> Trip | None:
        self._apply_local(
            [
                m.model_copy(update={"is_completed": not m.is_completed}) if m.id == module_id else m
                for m in self.modules
            ]
        )
        return await self._run_write(
            self.service.toggle_module_completion(self.trip_id, module_id)
        )

    async def reorder_modules(self, module_ids: list[str]) -> Trip | None:
        """
        Renumber positions to follow ``module_ids``.

        Modules not listed keep their relative order after the listed ones.
        """
        modules = reorder_modules(self.modules, module_ids)
        self._apply_local(modules)
        return await self._run_write(self.service.update_modules_batch(self.trip_id, modules))

    # --- Editing locks ---

    async def begin_edit(self, module_id: str) -> bool:
        """Lock ``module_id`` for this user and keep the lock alive until ``end_edit``."""
        if self.service.is_section_locked(module_id, self.user_id):
            return False
        if await self.service.lock_section(self.trip_id, module_id, self.user_id) is None:
            return False

        heartbeat = LockHeartbeat(
            self.service,
            self.trip_id,
            module_id,
            self.user_id,
            on_lost=lambda lost_id: self._heartbeats.pop(lost_id, None),
        )
        heartbeat.start()
        self._heartbeats[module_id] = heartbeat
        return True

    async def end_edit(self, module_id: str) -> bool:
        """Stop renewing and release this user's lock on ``module_id``, if it still holds one."""
        heartbeat = self._heartbeats.pop(module_id, None)
        if heartbeat is not None:
            await heartbeat.stop()
        return await self.service.unlock_section(self.trip_id, module_id, self.user_id)

    def is_editing(self, module_id: str) -> bool:
        return module_id in self._heartbeats

    # --- Derived views ---

    def sorted_modules(self) -> list[TripModule]:
        return self.trip.sorted_modules()

    def cost_summary(self) -> CostSummary:
        return self.trip.cost_summary()
