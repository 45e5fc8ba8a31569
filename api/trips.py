"""
Trips API endpoints.

Provides endpoints for listing, creating, updating and deleting trips.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import get_current_user_id, get_sync_service, get_visible_trip
from schemas.trip import OperationResponse, Trip, TripCreateRequest, TripUpdateRequest
from services.sync import SyncService
from utils.logging import get_sync_logger

router = APIRouter(tags=["Trips"])
logger = get_sync_logger("api.trips")


@router.get("", response_model=list[Trip])
async def list_trips(
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> list[Trip]:
    """
    List the trips the caller owns or participates in.

    Most recently updated trips come first.
    """
    return await service.fetch_trips(user_id)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Trip)
async def create_trip(
    request: TripCreateRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """
    Create a trip owned by the caller.

    **Request Body:**
    ```json
    {
      "title": "Paris Trip",
      "description": "Summer in Paris",
      "start_date": "2024-06-01T00:00:00Z",
      "end_date": "2024-06-10T00:00:00Z"
    }
    ```

    The caller becomes the owner and first participant; the trip starts
    without modules.
    """
    logger.logger.info(
        "Creating trip",
        extra={"user_id": user_id, "title": request.title},
    )

    trip = Trip.create(
        title=request.title,
        description=request.description,
        start_date=request.start_date,
        end_date=request.end_date,
        created_by=user_id,
    )
    created = await service.create_trip(trip)
    if created is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to create trip",
        )
    return created


@router.get("/{trip_id}", response_model=Trip)
async def get_trip(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """Get one trip with its modules in stored order."""
    return await get_visible_trip(service, trip_id, user_id)


@router.put("/{trip_id}", response_model=Trip)
async def update_trip(
    trip_id: str,
    request: TripUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> Trip:
    """
    Replace a trip's title, description, dates and (optionally) participants.

    Modules are left as stored. The owner always stays a participant. A
    participant change is rejected with 409 when the trip changed meanwhile.
    """
    trip = await get_visible_trip(service, trip_id, user_id)

    participants = trip.participants
    if request.participants is not None:
        participants = list(dict.fromkeys(request.participants))
        if trip.created_by not in participants:
            participants.insert(0, trip.created_by)

    updated = await service.update_trip_details(
        trip.model_copy(
            update={
                "title": request.title,
                "description": request.description,
                "start_date": request.start_date,
                "end_date": request.end_date,
                "participants": participants,
            }
        ),
        include_participants=request.participants is not None,
    )
    if updated is None:
        current = service.get_trip(trip_id)
        if current is not None and current.version != trip.version:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Trip changed while updating; please retry",
            )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to update trip",
        )
    return updated


@router.delete("/{trip_id}", response_model=OperationResponse)
async def delete_trip(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
) -> OperationResponse:
    """
    Delete a trip. Only the owner may delete it.

    **Response:**
    ```json
    {
      "success": true
    }
    ```
    """
    trip = await get_visible_trip(service, trip_id, user_id)
    if trip.created_by != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the trip owner can delete this trip",
        )

    logger.logger.info("Deleting trip", extra={"trip_id": trip_id, "user_id": user_id})
    if not await service.delete_trip(trip_id):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to delete trip",
        )
    return OperationResponse(success=True)
