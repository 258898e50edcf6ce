from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agrigrow.storage.models import Account

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "TOKEN_REQUIRED",
    "EMAIL_EXISTS",
    "INVALID_CREDENTIALS",
    "NO_TOKEN",
    "INVALID_TOKEN_FORMAT",
    "INVALID_TOKEN",
    "FORBIDDEN",
    "USER_NOT_FOUND",
    "NOT_FOUND",
    "METHOD_NOT_ALLOWED",
    "RATE_LIMITED",
    "HTTP_ERROR",
    "SERVER_ERROR",
    "SERVICE_UNAVAILABLE",
})


class ErrorBody(BaseModel):
    """Error payload returned for every non-2xx response."""

    message: str
    code: str
    details: Optional[Any] = None  # object, array, or null
    stack: Optional[str] = None  # development only

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class SignupRequest(BaseModel):
    # Rules are checked together in AuthService so every violation is reported
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=1024)
    name: str = Field(default="", max_length=512)


class LoginRequest(BaseModel):
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=1024)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class LocationUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: Optional[str] = Field(default=None, max_length=512)
    city: Optional[str] = Field(default=None, max_length=256)
    country: Optional[str] = Field(default=None, max_length=256)


class ProfileUpdateRequest(BaseModel):
    """Partial profile update; unknown fields such as ``email`` or ``role`` are dropped."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = Field(default=None, max_length=512)
    phone: Optional[str] = Field(default=None, max_length=64)
    location: Optional[LocationUpdate] = None
    profile_image: Optional[str] = Field(default=None, alias="profileImage", max_length=2048)

    def to_changes(self) -> dict:
        changes = self.model_dump(exclude_unset=True)
        if "location" in self.model_fields_set and self.location is not None:
            changes["location"] = self.location.model_dump(exclude_unset=True)
        return changes


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., max_length=32)


class LocationResponse(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    name: str
    role: str
    phone: Optional[str] = None
    location: Optional[LocationResponse] = None
    profile_image: Optional[str] = Field(default=None, alias="profileImage")
    date_joined: datetime = Field(alias="dateJoined")

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        location = None
        if account.location is not None:
            location = LocationResponse(
                address=account.location.address,
                city=account.location.city,
                country=account.location.country,
            )
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            phone=account.phone,
            location=location,
            profile_image=account.profile_image,
            date_joined=account.date_joined,
        )


class AuthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user: UserResponse
    token: str
    refresh_token: str = Field(alias="refreshToken")


class TokenResponse(BaseModel):
    token: str


class MessageResponse(BaseModel):
    message: str


class UserListResponse(BaseModel):
    items: List[UserResponse]


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    environment: str
    storage_connected: bool = Field(alias="storageConnected")
