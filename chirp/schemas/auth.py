import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
MIN_PASSWORD_LENGTH = 6


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def validate_password_length(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return value


def normalize_username(value: str) -> str:
    value = value.strip().lower()
    if not USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain lowercase letters, numbers, and underscores")
    return value


class RegisterRequest(CamelModel):
    username: str = Field(min_length=3, max_length=20)
    email: EmailStr
    password: str
    display_name: str = Field(alias="displayName", min_length=1, max_length=50)

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        return normalize_username(v)

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Display name cannot be empty")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_length(v)


class UserResponse(CamelModel):
    id: int
    username: str
    email: str
    display_name: str = Field(alias="displayName")
    bio: str = ""
    role: str
    is_verified: bool = Field(alias="isVerified")
    created_at: datetime | None = Field(default=None, alias="createdAt")


class RegisterResponse(CamelModel):
    message: str
    user: UserResponse


class LoginRequest(CamelModel):
    identifier: str = Field(min_length=1)
    password: str = Field(min_length=1)

    model_config = ConfigDict(
        json_schema_extra={"examples": [{"identifier": "user@example.com", "password": "securepassword"}]},
        populate_by_name=True,
    )


class TokenResponse(CamelModel):
    message: str
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    session_id: str = Field(alias="sessionId")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_in: int = Field(alias="expiresIn")
    refresh_expires_in: int = Field(alias="refreshExpiresIn")
    user: UserResponse | None = None


class RefreshRequest(CamelModel):
    refresh_token: str | None = Field(default=None, alias="refreshToken")


class VerifyEmailRequest(CamelModel):
    token: str = Field(min_length=1)


class EmailRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    token: str = Field(min_length=1)
    password: str
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_length(v)

    @model_validator(mode="after")
    def validate_confirm(self) -> "ResetPasswordRequest":
        if self.password != self.confirm_password:
            raise ValueError("Password confirmation does not match")
        return self


class MessageResponse(CamelModel):
    message: str
