"""
Invite codes for sharing trips.

A trip owner generates a 6-digit code stored at ``inviteCodes/{code}``;
anyone holding an active code can join the trip as a participant.
"""

import re
import secrets

from db.store import SERVER_TIMESTAMP, ArrayUnion, DocumentStore, StoreError
from schemas.trip import Trip
from services.codec import deserialize_trip
from services.sync import INVITE_CODES, TRIPS, SyncService
from utils.logging import get_sync_logger

logger = get_sync_logger("invitations")

INVITE_CODE_PATTERN = re.compile(r"\d{6}")


class InviteError(Exception):
    """Joining through an invite code failed; ``message`` is shown to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def new_invite_code() -> str:
    """Random code in 100000..999999."""
    return str(secrets.randbelow(900000) + 100000)


class InvitationService:
    """Generate, validate and redeem trip invite codes."""

    def __init__(self, store: DocumentStore, sync: SyncService | None = None):
        self.store = store
        self.sync = sync

    async def generate_invite_code(self, trip_id: str) -> str | None:
        """
        Create an active invite code for ``trip_id``.

        Codes are not checked for collisions; a clash overwrites the older
        code.

        Returns:
            The code, or None if it could not be stored
        """
        code = new_invite_code()
        try:
            await self.store.set(
                INVITE_CODES,
                code,
                {"tripId": trip_id, "isActive": True, "createdAt": SERVER_TIMESTAMP},
            )
        except StoreError as e:
            logger.error(e, context="generate_invite_code", trip_id=trip_id)
            return None

        logger.remote_write(INVITE_CODES, code, trip_id=trip_id)
        return code

    async def validate_invite_code(self, code: str) -> str | None:
        """Trip ID for an active code; None for unknown, inactive or malformed codes."""
        if not INVITE_CODE_PATTERN.fullmatch(code):
            return None
        try:
            snapshot = await self.store.get(INVITE_CODES, code)
        except StoreError as e:
            logger.error(e, context="validate_invite_code")
            return None

        trip_id = snapshot.get("tripId")
        if not isinstance(trip_id, str) or snapshot.get("isActive") is not True:
            return None
        return trip_id

    async def deactivate_invite_code(self, code: str) -> bool:
        """Mark a code inactive so it can no longer be redeemed."""
        try:
            await self.store.update(INVITE_CODES, code, {"isActive": False})
        except StoreError as e:
            logger.error(e, context="deactivate_invite_code")
            return False
        logger.remote_write(INVITE_CODES, code, is_active=False)
        return True

    async def join_trip(self, code: str, user_id: str) -> Trip:
        """
        Add ``user_id`` to the participants of the trip behind ``code``.

        Raises:
            InviteError: The code is invalid, the trip is gone, the user owns
                the trip or already participates, or the write failed
        """
        logger.operation("join_trip", user_id=user_id)
        if not INVITE_CODE_PATTERN.fullmatch(code):
            raise InviteError("Please enter a valid 6-digit invite code")

        trip_id = await self.validate_invite_code(code)
        if trip_id is None:
            raise InviteError("Invalid or expired invite code")

        try:
            snapshot = await self.store.get(TRIPS, trip_id)
        except StoreError as e:
            logger.error(e, context="join_trip", trip_id=trip_id)
            raise InviteError(f"Failed to verify trip details: {e}") from e
        if not snapshot.exists:
            raise InviteError("Trip not found")

        trip = deserialize_trip(snapshot.data, snapshot.version)
        if trip.created_by == user_id:
            raise InviteError("You cannot join your own trip")
        if user_id in trip.participants:
            raise InviteError("You are already a participant in this trip")

        try:
            written = await self.store.update(
                TRIPS, trip_id, {"participants": ArrayUnion([user_id])}
            )
        except StoreError as e:
            logger.error(e, context="join_trip", trip_id=trip_id)
            raise InviteError(f"Failed to join trip: {e}") from e

        logger.remote_write(TRIPS, trip_id, joined=user_id, version=written.version)
        joined = deserialize_trip(written.data, written.version)
        if self.sync is not None:
            await self.sync.fetch_trips(user_id)
        return joined

    async def add_participant(self, trip_id: str, user_id: str) -> bool:
        """Array-union ``user_id`` into a trip's participants without checks."""
        try:
            await self.store.update(TRIPS, trip_id, {"participants": ArrayUnion([user_id])})
        except StoreError as e:
            logger.error(e, context="add_participant", trip_id=trip_id)
            return False
        logger.remote_write(TRIPS, trip_id, joined=user_id)
        return True
