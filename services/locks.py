"""
Section lock heartbeat.

A lock written by ``SyncService.lock_section`` expires after
``settings.lock_ttl_seconds``. While a user keeps editing, a heartbeat task
renews it every ``settings.lock_heartbeat_seconds`` so the lock only lapses
when the editor goes away.
"""

import asyncio
import contextlib
from collections.abc import Callable
from typing import Any

from services.sync import SyncService
from utils.logging import get_sync_logger

logger = get_sync_logger("lock_heartbeat")


class LockHeartbeat:
    """
    Background task renewing one section lock.

    Example:
        heartbeat = LockHeartbeat(service, trip_id, module_id, user_id)
        heartbeat.start()
        ...
        await heartbeat.stop()
    """

    def __init__(
        self,
        service: SyncService,
        trip_id: str,
        module_id: str,
        user_id: str,
        interval: float | None = None,
        on_lost: Callable[[str], Any] | None = None,
    ):
        self.service = service
        self.trip_id = trip_id
        self.module_id = module_id
        self.user_id = user_id
        self.interval = interval if interval is not None else service.settings.lock_heartbeat_seconds
        self.on_lost = on_lost
        self.renewals = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start renewing; calling it twice is a no-op."""
        if self.running:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"lock-heartbeat-{self.trip_id}-{self.module_id}"
        )

    async def stop(self) -> None:
        """Cancel the renewal task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            lock = await self.service.renew_section_lock(self.trip_id, self.module_id, self.user_id)
            if lock is None:
                logger.logger.warning(
                    "Section lock lost, stopping heartbeat",
                    extra={"trip_id": self.trip_id, "module_id": self.module_id},
                )
                if self.on_lost is not None:
                    self.on_lost(self.module_id)
                return
            self.renewals += 1
