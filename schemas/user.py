"""
User profile schemas.

Defines the user record stored at ``users/{id}`` and the credential
payload accepted for email/password sign-up.
"""

import uuid

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from schemas.common import Timestamp, utc_now


class User(BaseModel):
    """
    A signed-in person, or a guest who joined through an invite code.

    Created on first authentication; re-saved on later logins.
    """

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()).upper(),
        description="Provider-issued user ID, or a locally generated one for guests",
        examples=["6b2e069d-ce69-45dc-96b2-b570680f56b7"],
    )
    username: str = Field(description="Display name", examples=["jane"])
    email: str | None = Field(default=None, examples=["jane@example.com"])
    is_temporary: bool = Field(default=False, description="Guest account flag")
    created_at: Timestamp = Field(default_factory=utc_now)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "6b2e069d-ce69-45dc-96b2-b570680f56b7",
                    "username": "jane",
                    "email": "jane@example.com",
                    "is_temporary": False,
                    "created_at": "2024-05-01T10:00:00Z",
                }
            ]
        }
    )


class EmailCredentials(BaseModel):
    """Email/password pair submitted for sign-up or sign-in."""

    email: EmailStr = Field(examples=["jane@example.com"])
    password: str = Field(min_length=1)

    @property
    def username_hint(self) -> str:
        """Local part of the email, used as the default display name."""
        return self.email.split("@", 1)[0]
