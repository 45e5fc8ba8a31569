"""
Section lock API endpoints.

Provides endpoints for listing, acquiring (or renewing) and releasing the
advisory edit locks on trip modules. Locks expire after
``settings.lock_ttl_seconds`` unless renewed with another PUT.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import get_current_user_id, get_sync_service, get_visible_trip
from schemas.trip import LockResponse, OperationResponse
from services.sync import SyncService

router = APIRouter(tags=["Locks"])


@router.get("/{trip_id}/locks", response_model=list[LockResponse])
async def list_locks(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> list[LockResponse]:
    """List the unexpired locks on a trip's modules."""
    await get_visible_trip(service, trip_id, user_id)
    await service.fetch_section_locks(trip_id)
    return [
        LockResponse(module_id=module_id, user_id=lock.user_id, expires_at=lock.expires_at)
        for module_id, lock in service.active_locks().items()
    ]


@router.put("/{trip_id}/locks/{module_id}", response_model=LockResponse)
async def acquire_lock(
    trip_id: str,
    module_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> LockResponse:
    """
    Lock a module for editing, or extend a lock the caller already holds.

    **Response:**
    ```json
    {
      "module_id": "A9F0...",
      "user_id": "U1",
      "expires_at": "2024-06-01T10:01:00Z"
    }
    ```
    """
    await get_visible_trip(service, trip_id, user_id)
    lock = await service.lock_section(trip_id, module_id, user_id)
    if lock is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Module is being edited by another user",
        )
    return LockResponse(module_id=module_id, user_id=lock.user_id, expires_at=lock.expires_at)


@router.delete("/{trip_id}/locks/{module_id}", response_model=OperationResponse)
async def release_lock(
    trip_id: str,
    module_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> OperationResponse:
    """Release a lock. Locks held by other users cannot be released until they expire."""
    await get_visible_trip(service, trip_id, user_id)
    await service.fetch_section_locks(trip_id)
    if service.is_section_locked(module_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Lock is held by another user",
        )

    if not await service.unlock_section(trip_id, module_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to release lock",
        )
    return OperationResponse(success=True)
