"""
Invite API endpoints.

Provides endpoints for generating trip invite codes and joining trips with
them.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import (
    get_current_user_id,
    get_invitation_service,
    get_sync_service,
    get_visible_trip,
)
from schemas.invite import InviteCodeResponse, JoinTripResponse
from services.invitations import InvitationService, InviteError
from services.sync import SyncService
from utils.logging import get_sync_logger

router = APIRouter(tags=["Invites"])
logger = get_sync_logger("api.invites")


@router.post(
    "/trips/{trip_id}/invites",
    status_code=status.HTTP_201_CREATED,
    response_model=InviteCodeResponse,
)
async def create_invite(
    trip_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SyncService = Depends(get_sync_service),
    invitations: InvitationService = Depends(get_invitation_service),
) -> InviteCodeResponse:
    """
    Generate a 6-digit invite code for a trip the caller can see.

    **Response:**
    ```json
    {
      "code": "482913",
      "trip_id": "62A88F76-E87D-4084-A89E-FD897B3E4592"
    }
    ```
    """
    await get_visible_trip(service, trip_id, user_id)
    code = await invitations.generate_invite_code(trip_id)
    if code is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to generate invite code",
        )
    return InviteCodeResponse(code=code, trip_id=trip_id)


@router.post("/invites/{code}/join", response_model=JoinTripResponse)
async def join_trip(
    code: str,
    user_id: str = Depends(get_current_user_id),
    invitations: InvitationService = Depends(get_invitation_service),
) -> JoinTripResponse:
    """
    Join the trip behind an invite code as a participant.

    Fails with 400 and a user-facing message when the code is invalid or
    the caller already belongs to the trip, and 404 when the trip is gone.
    """
    try:
        trip = await invitations.join_trip(code, user_id)
    except InviteError as e:
        logger.logger.info(
            "Join rejected",
            extra={"user_id": user_id, "reason": e.message},
        )
        status_code = (
            status.HTTP_404_NOT_FOUND
            if e.message == "Trip not found"
            else status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(status_code=status_code, detail=e.message)

    return JoinTripResponse(success=True, trip_id=trip.id)
