"""Pydantic schemas shared by the handlers, validators and authenticator."""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, StringConstraints, field_validator

from .models.user import Role


class Identity(BaseModel):
    """Caller identity reconstructed from a verified token."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class UserResponse(BaseModel):
    """Serialized user record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str
    role: Role
    created_at: datetime
    updated_at: datetime


class DeletedUser(BaseModel):
    """Public fields of a user removed from the store."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    name: str


class UserUpdate(BaseModel):
    """Request body for a partial user update.

    Unknown keys are dropped; a key that is present must carry a value.
    """

    model_config = ConfigDict(extra="ignore")

    name: Optional[
        Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=255)]
    ] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None

    @field_validator("name", "email", "role", mode="before")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("Field may not be null")
        return value

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            if len(value) > 255:
                raise ValueError("String should have at most 255 characters")
        return value
