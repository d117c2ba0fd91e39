"""
API request and response models for AccountCore REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

UserResponse.from_user() is the only place a User becomes JSON, and it never
copies password_hash, token hashes or refresh tokens.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Role, User

_USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Password strength is checked by the service, not here, so that weak
    passwords surface as the weak_password error with its reasons.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=3, max_length=30, pattern=_USERNAME_PATTERN)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=50)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Optional body for POST /refresh-token; the cookie takes precedence."""

    refresh_token: Optional[str] = None


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    password: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class DeleteAccountRequest(BaseModel):
    password: str = Field(min_length=1, max_length=255)


class ProfileFields(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=500)
    bio: Optional[str] = Field(default=None, max_length=500)
    date_of_birth: Optional[str] = Field(default=None, max_length=10)
    phone_number: Optional[str] = Field(default=None, max_length=30)
    address: Optional[str] = Field(default=None, max_length=255)
    counseling_notes: Optional[str] = Field(default=None, max_length=5000)


class NotificationPreferences(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: Optional[bool] = None
    push: Optional[bool] = None


class PreferenceFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language: Optional[str] = Field(default=None, max_length=10)
    timezone: Optional[str] = Field(default=None, max_length=64)
    notifications: Optional[NotificationPreferences] = None


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/profile. Only these keys are merged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=_USERNAME_PATTERN)
    profile: Optional[ProfileFields] = None
    preferences: Optional[PreferenceFields] = None

    def to_updates(self) -> dict:
        """Return only the fields the client actually sent."""
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an Identity Record."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    username: str
    role: Role
    is_active: bool
    is_email_verified: bool
    profile: dict
    preferences: dict
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            role=user.role,
            is_active=user.is_active,
            is_email_verified=user.is_email_verified,
            profile={k: v for k, v in user.profile.items() if not k.endswith("_encrypted")},
            preferences=user.preferences,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    """Returned by register and login. The refresh token goes in a cookie."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class CheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: UserResponse


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    reasons: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]

    @field_validator("components")
    @classmethod
    def known_states(cls, value: dict[str, str]) -> dict[str, str]:
        for state in value.values():
            if state not in ("ok", "error"):
                raise ValueError(f"Unknown component state: {state!r}")
        return value
