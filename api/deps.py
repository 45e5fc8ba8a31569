"""
Shared FastAPI dependencies.

The document store is created once per application (see ``main.lifespan``)
and kept on ``app.state``; each request gets its own ``SyncService`` over it.
The caller is identified by the ``X-User-ID`` header, set by the gateway
after authenticating the user.
"""

from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status

from config import Settings, get_settings
from db.store import DocumentStore
from schemas.trip import Trip
from services.invitations import InvitationService
from services.sync import SyncService


def get_store(request: Request) -> DocumentStore:
    """Document store created at startup."""
    return request.app.state.store


async def get_sync_service(
    store: DocumentStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> AsyncIterator[SyncService]:
    """Per-request sync service; its listeners are removed when the request ends."""
    service = SyncService(store, settings)
    try:
        yield service
    finally:
        service.stop_listening()


def get_invitation_service(
    store: DocumentStore = Depends(get_store),
    sync: SyncService = Depends(get_sync_service),
) -> InvitationService:
    return InvitationService(store, sync)


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """
    Caller's user ID from the ``X-User-ID`` header.

    Raises:
        HTTPException: 401 when the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )
    return x_user_id.strip()


async def get_visible_trip(service: SyncService, trip_id: str, user_id: str) -> Trip:
    """
    Load a trip the caller owns or participates in.

    Raises:
        HTTPException: 404 when the trip does not exist or is not shared
            with the caller
    """
    trip = await service.reload_trip(trip_id)
    if trip is None or not trip.is_visible_to(user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Trip {trip_id} not found",
        )
    return trip
