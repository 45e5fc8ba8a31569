"""
Invite code schemas.

Request and response models for sharing a trip through a 6-digit code.
"""

from pydantic import BaseModel, Field


class InviteCodeResponse(BaseModel):
    """A freshly generated invite code."""

    code: str = Field(pattern=r"^\d{6}$", examples=["482913"])
    trip_id: str


class JoinTripResponse(BaseModel):
    """Result of joining a trip through an invite code."""

    success: bool = Field(examples=[True])
    trip_id: str
