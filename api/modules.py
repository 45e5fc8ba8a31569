"""
Trip module API endpoints.

Provides endpoints for adding, replacing, reordering, completing and
deleting the modules of a trip.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from api.deps import get_current_user_id, get_sync_service, get_visible_trip
from schemas.trip import (
    ModuleOrderRequest,
    ModuleWriteRequest,
    Trip,
    TripModule,
    reorder_modules,
)
from services.sync import SyncService
from utils.logging import get_sync_logger

router = APIRouter(tags=["Modules"])
logger = get_sync_logger("api.modules")


def _build_module(request: ModuleWriteRequest, **kwargs) -> TripModule:
    try:
        return request.to_module(**kwargs)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid {request.type.value} module data: {e.errors(include_url=False)}",
        )


def _write_failed(operation: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Failed to {operation}; the trip was reloaded, please retry",
    )


@router.post("/{trip_id}/modules", status_code=status.HTTP_201_CREATED, response_model=Trip)
async def add_module(
    trip_id: str,
    request: ModuleWriteRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """
    Add a module to a trip.

    **Request Body:**
    ```json
    {
      "type": "flight",
      "data": {"flight_number": "AA100", "departure_airport": "JFK"}
    }
    ```

    Without ``position`` the module goes after every existing module.
    """
    trip = await get_visible_trip(service, trip_id, user_id)
    next_position = max((module.position for module in trip.modules), default=-1) + 1
    module = _build_module(request, position=next_position)

    logger.logger.info(
        "Adding module",
        extra={"trip_id": trip_id, "module_id": module.id, "module_type": module.type.value},
    )
    updated = await service.add_module(trip_id, module)
    if updated is None:
        raise _write_failed("add module")
    return updated


@router.put("/{trip_id}/modules", response_model=Trip)
async def reorder_trip_modules(
    trip_id: str,
    request: ModuleOrderRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """
    Reorder a trip's modules in one batch write.

    **Request Body:**
    ```json
    {
      "module_ids": ["B1C2...", "A9F0..."]
    }
    ```
    """
    trip = await get_visible_trip(service, trip_id, user_id)
    updated = await service.update_modules_batch(
        trip_id, reorder_modules(trip.modules, request.module_ids)
    )
    if updated is None:
        raise _write_failed("reorder modules")
    return updated


@router.put("/{trip_id}/modules/{module_id}", response_model=Trip)
async def update_module(
    trip_id: str,
    module_id: str,
    request: ModuleWriteRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """
    Replace one module.

    Section locks are advisory and do not block the write. Concurrent edits
    to other modules of the same trip are preserved.
    """
    trip = await get_visible_trip(service, trip_id, user_id)
    index = trip.find_module(module_id)
    if index is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Module {module_id} not found",
        )
    if request.type is not trip.modules[index].type:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Module type cannot be changed",
        )

    existing = trip.modules[index]
    module = _build_module(request, module_id=module_id, position=existing.position)
    module = module.model_copy(update={"created_at": existing.created_at})

    updated = await service.update_module(trip_id, module)
    if updated is None:
        raise _write_failed("update module")
    return updated


@router.delete("/{trip_id}/modules/{module_id}", response_model=Trip)
async def delete_module(
    trip_id: str,
    module_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """Delete one module."""
    trip = await get_visible_trip(service, trip_id, user_id)
    if trip.find_module(module_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Module {module_id} not found",
        )

    updated = await service.delete_module(trip_id, module_id)
    if updated is None:
        raise _write_failed("delete module")
    return updated


@router.post("/{trip_id}/modules/{module_id}/toggle", response_model=Trip)
async def toggle_module(
    trip_id: str,
    module_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """Flip a module's completed flag."""
    trip = await get_visible_trip(service, trip_id, user_id)
    if trip.find_module(module_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Module {module_id} not found",
        )

    updated = await service.toggle_module_completion(trip_id, module_id)
    if updated is None:
        raise _write_failed("toggle module")
    return updated
