from datetime import datetime
from typing import Literal

from pydantic import Field, field_validator, model_validator

from chirp.schemas.auth import CamelModel, normalize_username, validate_password_length


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword")
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        return validate_password_length(v)

    @model_validator(mode="after")
    def validate_confirm(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Password confirmation does not match")
        return self


class LogoutRequest(CamelModel):
    refresh_token: str | None = Field(default=None, alias="refreshToken")


class LogoutAllResponse(CamelModel):
    message: str
    revoked_sessions: int = Field(alias="revokedSessions")


class SessionResponse(CamelModel):
    id: str
    user_agent: str = Field(alias="userAgent")
    device: str
    ip: str | None = None
    login_time: datetime | None = Field(default=None, alias="loginTime")
    last_used: datetime | None = Field(default=None, alias="lastUsed")


class SessionListResponse(CamelModel):
    total_sessions: int = Field(alias="totalSessions")
    sessions: list[SessionResponse]


class DeleteAccountRequest(CamelModel):
    password: str = Field(min_length=1)
    confirm_delete: Literal["DELETE"] = Field(alias="confirmDelete")


class UpdateProfileRequest(CamelModel):
    display_name: str | None = Field(default=None, alias="displayName", max_length=50)
    bio: str | None = Field(default=None, max_length=160)

    @field_validator("display_name", "bio")
    @classmethod
    def strip_text(cls, v: str | None) -> str | None:
        return v.strip() if v is not None else None


class UpdateUsernameRequest(CamelModel):
    username: str = Field(min_length=3, max_length=20)
    current_password: str = Field(alias="currentPassword", min_length=1)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        return normalize_username(v)


class PublicUserResponse(CamelModel):
    id: int
    username: str
    display_name: str = Field(alias="displayName")
    bio: str = ""
    is_verified: bool = Field(alias="isVerified")
    created_at: datetime | None = Field(default=None, alias="createdAt")
