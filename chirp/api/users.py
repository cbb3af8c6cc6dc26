import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.exc import IntegrityError

from chirp.api.auth import clear_refresh_cookie, presented_refresh_token, user_to_response
from chirp.dependencies import get_current_user, get_session_manager, get_user_directory
from chirp.errors import BadRequest, Conflict, NotFound, Unauthorized
from chirp.models import User
from chirp.schemas.auth import MessageResponse, UserResponse
from chirp.schemas.users import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    LogoutAllResponse,
    LogoutRequest,
    PublicUserResponse,
    SessionListResponse,
    SessionResponse,
    UpdateProfileRequest,
    UpdateUsernameRequest,
)
from chirp.services.sessions import SessionInfo, SessionManager
from chirp.services.users import UserDirectory, get_password_hash, verify_password

router = APIRouter()
logger = logging.getLogger(__name__)


def session_to_response(session: SessionInfo) -> SessionResponse:
    return SessionResponse(
        id=session.public_id,
        userAgent=session.user_agent,
        device=session.device_label,
        ip=session.ip,
        loginTime=session.created_at,
        lastUsed=session.last_used_at,
    )


@router.get("/me", response_model=UserResponse, summary="Get current authenticated user")
def me(current_user: Annotated[User, Depends(get_current_user)]):
    return user_to_response(current_user)


@router.put("/me", response_model=UserResponse, summary="Update profile")
def update_profile(
    body: UpdateProfileRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
):
    """Update display name and bio; omitted or blank fields keep their current value."""
    users.update_profile(current_user, display_name=body.display_name, bio=body.bio)
    users.db.commit()
    return user_to_response(current_user)


@router.put("/me/username", response_model=UserResponse, summary="Change username")
def change_username(
    body: UpdateUsernameRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
):
    if not verify_password(body.current_password, current_user.hashed_password):
        raise Unauthorized("Current password is incorrect")

    holder = users.find_by_username(body.username)
    if holder is not None and holder.id != current_user.id:
        raise Conflict("Username is already taken")

    try:
        users.rename(current_user, body.username)
        users.db.commit()
    except IntegrityError:
        users.db.rollback()
        raise Conflict("Username is already taken")

    logger.info("Username changed for user id=%s", current_user.id)
    return user_to_response(current_user)


@router.post("/change-password", response_model=MessageResponse, summary="Change password")
def change_password(
    body: ChangePasswordRequest,
    response: Response,
    current_user: Annotated[User, Depends(get_current_user)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Change the password; every existing access and refresh token stops working."""
    if not verify_password(body.current_password, current_user.hashed_password):
        raise Unauthorized("Invalid current password")
    if verify_password(body.new_password, current_user.hashed_password):
        raise BadRequest("New password must be different from current password")

    user_id = current_user.id
    users.mark_password_changed(user_id, get_password_hash(body.new_password))
    sessions.logout_all(user_id)
    users.db.commit()

    clear_refresh_cookie(response)
    logger.info("Password changed for user id=%s", user_id)
    return MessageResponse(message="Password changed successfully. Please login again.")


@router.post("/logout", response_model=MessageResponse, summary="Logout current session")
def logout(
    request: Request,
    response: Response,
    current_user: Annotated[User, Depends(get_current_user)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    body: LogoutRequest | None = None,
):
    refresh_token = presented_refresh_token(request, body.refresh_token if body else None)
    if not refresh_token:
        raise BadRequest("Refresh token is required for logout")

    if not sessions.logout(refresh_token, current_user.id):
        raise BadRequest("Invalid or already revoked refresh token")

    clear_refresh_cookie(response)
    return MessageResponse(message="Logout successful")


@router.post("/logout-all", response_model=LogoutAllResponse, summary="Logout from all devices")
def logout_all(
    response: Response,
    current_user: Annotated[User, Depends(get_current_user)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    revoked = sessions.logout_all(current_user.id)
    clear_refresh_cookie(response)
    return LogoutAllResponse(
        message=f"Successfully logged out from all devices ({revoked} sessions)",
        revokedSessions=revoked,
    )


@router.get("/sessions", response_model=SessionListResponse, summary="List active sessions")
def list_sessions(
    current_user: Annotated[User, Depends(get_current_user)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Active sessions, most recently used first. Raw tokens are never exposed."""
    active = sessions.list_sessions(current_user.id)
    return SessionListResponse(
        totalSessions=len(active),
        sessions=[session_to_response(session) for session in active],
    )


@router.delete("/sessions/{session_id}", response_model=MessageResponse, summary="Revoke one session")
def remove_session(
    session_id: str,
    current_user: Annotated[User, Depends(get_current_user)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    sessions.revoke_session(current_user.id, session_id)
    return MessageResponse(message="Session removed successfully")


@router.delete("/me", response_model=MessageResponse, summary="Delete (deactivate) account")
def delete_account(
    body: DeleteAccountRequest,
    response: Response,
    current_user: Annotated[User, Depends(get_current_user)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    if not verify_password(body.password, current_user.hashed_password):
        raise Unauthorized("Password is incorrect")

    user_id = current_user.id
    users.deactivate(user_id)
    sessions.logout_all(user_id)
    users.db.commit()

    clear_refresh_cookie(response)
    logger.info("Account deactivated for user id=%s", user_id)
    return MessageResponse(message="Account deleted successfully")


@router.get("/{user_id}", response_model=PublicUserResponse, summary="Get a user's public profile")
def get_user(
    user_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
):
    user = users.find_active_by_id(user_id)
    if user is None:
        raise NotFound("User not found")
    return PublicUserResponse(
        id=user.id,
        username=user.username,
        displayName=user.display_name,
        bio=user.bio or "",
        isVerified=user.is_verified,
        createdAt=user.created_at,
    )
