from chirp.schemas.auth import (
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserResponse,
)
from chirp.schemas.users import SessionListResponse, SessionResponse

__all__ = [
    "LoginRequest",
    "MessageResponse",
    "RegisterRequest",
    "RegisterResponse",
    "TokenResponse",
    "UserResponse",
    "SessionListResponse",
    "SessionResponse",
]
