import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.exc import IntegrityError

from chirp.config import settings
from chirp.dependencies import get_session_manager, get_user_directory
from chirp.errors import Conflict, Internal, NotFound, TooManyRequests, Unauthorized
from chirp.models import TokenKind, User
from chirp.schemas.auth import (
    EmailRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from chirp.services.credential_store import DeviceInfo
from chirp.services.email_service import send_password_reset_email, send_verification_email
from chirp.services.sessions import RefreshStrategy, SessionManager, SessionTokens, device_label_for
from chirp.services.users import (
    UserDirectory,
    burn_password_check,
    get_password_hash,
    new_user,
    utcnow,
    verify_password,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        displayName=user.display_name,
        bio=user.bio or "",
        role=user.role,
        isVerified=user.is_verified,
        createdAt=user.created_at,
    )


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _get_client_ip(request: Request) -> str | None:
    if not request.client:
        return None
    return request.client.host


def _get_user_agent(request: Request) -> str | None:
    user_agent = request.headers.get("user-agent")
    if not user_agent:
        return None
    return user_agent[:512]


def device_info_from_request(request: Request) -> DeviceInfo:
    user_agent = _get_user_agent(request)
    return DeviceInfo(user_agent=user_agent, ip=_get_client_ip(request), device_label=device_label_for(user_agent))


def set_refresh_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite=settings.COOKIE_SAMESITE,
        max_age=settings.JWT_REFRESH_EXPIRE_DAYS * 24 * 60 * 60,
        path="/",
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(key=settings.REFRESH_COOKIE_NAME, path="/")


def presented_refresh_token(request: Request, body_token: str | None) -> str | None:
    return body_token or request.cookies.get(settings.REFRESH_COOKIE_NAME)


def _build_token_response(message: str, tokens: SessionTokens, user: User | None = None) -> TokenResponse:
    return TokenResponse(
        message=message,
        accessToken=tokens.access_token,
        refreshToken=tokens.refresh_token,
        sessionId=tokens.public_id,
        expiresIn=settings.JWT_ACCESS_EXPIRE_MINUTES * 60,
        refreshExpiresIn=settings.JWT_REFRESH_EXPIRE_DAYS * 24 * 60 * 60,
        user=user_to_response(user) if user is not None else None,
    )


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new user",
)
def register(
    body: RegisterRequest,
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Create the account and send an email verification link."""
    existing = users.find_conflicting(body.username, body.email)
    if existing:
        if existing.email == body.email.lower():
            raise Conflict("Email is already registered")
        raise Conflict("Username is already taken")

    user = new_user(
        username=body.username,
        email=body.email,
        password=body.password,
        display_name=body.display_name,
    )
    try:
        users.add(user)
        users.db.commit()
    except IntegrityError:
        users.db.rollback()
        raise Conflict("Email or username is already taken")

    verification_token = sessions.create_email_verification_token(user.id)
    try:
        send_verification_email(user.email, verification_token, user.display_name)
    except Exception:
        logger.exception("Failed to send verification email to user id=%s", user.id)

    logger.info("New user registered: id=%s", user.id)
    return RegisterResponse(
        message="Account created successfully. Please check your email to verify your account.",
        user=user_to_response(user),
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login and get access/refresh tokens",
)
def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Login with email or username and return a JWT access + refresh token pair."""
    user = users.find_by_email_or_username(body.identifier)
    if user is None:
        burn_password_check(body.password)
        raise Unauthorized("Invalid credentials")
    if not verify_password(body.password, user.hashed_password):
        raise Unauthorized("Invalid credentials")
    if not user.is_active:
        raise Unauthorized("Account has been deactivated")
    if not user.is_verified:
        raise Unauthorized("Please verify your email before logging in")

    tokens = sessions.login(user.id, device_info_from_request(request))
    users.touch_last_active(user)
    users.db.commit()

    set_refresh_cookie(response, tokens.refresh_token)
    logger.info("User logged in: id=%s", user.id)
    return _build_token_response("Login successful", tokens, user)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Rotate the refresh token and mint a new access token",
)
def refresh_tokens(
    request: Request,
    response: Response,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    body: RefreshRequest | None = None,
):
    """Accepts the refresh token from the body field ``refreshToken`` or the cookie."""
    refresh_token = presented_refresh_token(request, body.refresh_token if body else None)
    if not refresh_token:
        raise Unauthorized("Refresh token is required")

    tokens = sessions.refresh(refresh_token, RefreshStrategy.ROTATE)
    set_refresh_cookie(response, tokens.refresh_token)
    return _build_token_response("Token refreshed successfully", tokens)


@router.post(
    "/verify-email",
    response_model=MessageResponse,
    summary="Confirm email verification token",
)
def verify_email(
    body: VerifyEmailRequest,
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    user_id = sessions.consume_email_verification_token(body.token)
    user = users.find_by_id(user_id)
    if user is None:
        raise NotFound("User not found")
    if user.is_verified:
        return MessageResponse(message="Email is already verified. You can now login.")

    users.mark_verified(user_id)
    users.db.commit()
    logger.info("Email verified for user id=%s", user_id)
    return MessageResponse(message="Email verified successfully. You can now login.")


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    summary="Resend email verification link",
)
def resend_verification(
    body: EmailRequest,
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Generic response for unknown or already verified addresses; delivery failures are surfaced."""
    generic = MessageResponse(message="If the account exists and is not verified, a verification email has been sent.")
    user = users.find_by_email(body.email)
    if not user or user.is_verified or not user.is_active:
        return generic

    last_issued = sessions.last_issued_at(user.id, TokenKind.EMAIL_VERIFICATION)
    cooldown = timedelta(seconds=settings.EMAIL_RESEND_COOLDOWN_SECONDS)
    if last_issued and _to_utc(last_issued) > utcnow() - cooldown:
        raise TooManyRequests("Please wait before requesting another verification email")

    verification_token = sessions.create_email_verification_token(user.id)
    try:
        send_verification_email(user.email, verification_token, user.display_name)
    except Exception as exc:
        logger.exception("Failed to resend verification email to user id=%s", user.id)
        raise Internal("Failed to send verification email") from exc

    return generic


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    summary="Request password reset email",
)
def forgot_password(
    body: EmailRequest,
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Always answers the same way, whether or not the address is registered."""
    generic = MessageResponse(message="If this email is registered, you will receive a password reset link.")
    user = users.find_by_email(body.email)
    if not user or not user.is_active:
        return generic

    reset_token = sessions.create_password_reset_token(user.id)
    try:
        send_password_reset_email(user.email, reset_token, user.display_name)
    except Exception:
        logger.exception("Failed to send password reset email to user id=%s", user.id)

    logger.info("Password reset requested for user id=%s", user.id)
    return generic


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    summary="Reset password by token",
)
def reset_password(
    body: ResetPasswordRequest,
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    """Set the new password and sign the account out everywhere."""
    user_id = sessions.consume_password_reset_token(body.token)
    user = users.mark_password_changed(user_id, get_password_hash(body.password))
    if user is None:
        raise NotFound("User not found")

    sessions.logout_all(user_id)
    users.db.commit()
    logger.info("Password reset completed for user id=%s", user_id)
    return MessageResponse(message="Password reset successful. Please login with your new password.")
