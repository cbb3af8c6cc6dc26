import logging
from datetime import timezone
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chirp.errors import Internal, Unauthorized
from chirp.models import TokenKind, User, get_db
from chirp.services.credential_store import CredentialStore
from chirp.services.sessions import SessionManager
from chirp.services.token_codec import ExpiredToken, InvalidToken, TokenCodec
from chirp.services.users import UserDirectory

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_token_codec() -> TokenCodec:
    return TokenCodec.from_settings()


def get_user_directory(db: Annotated[Session, Depends(get_db)]) -> UserDirectory:
    return UserDirectory(db)


def get_session_manager(
    db: Annotated[Session, Depends(get_db)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> SessionManager:
    return SessionManager(CredentialStore(db), codec, UserDirectory(db))


def authenticate_access_token(token: str | None, users: UserDirectory, codec: TokenCodec) -> User:
    """Resolve a bearer access token to an active user or raise ``Unauthorized``."""
    if not token:
        raise Unauthorized("Access token is required")
    try:
        payload = codec.verify_access_token(token)
    except ExpiredToken as exc:
        raise Unauthorized("Your session has expired") from exc
    except InvalidToken as exc:
        logger.warning("Rejected access token that failed verification")
        raise Unauthorized("Invalid authentication token") from exc

    if payload.kind != TokenKind.ACCESS:
        raise Unauthorized("Invalid token type")

    try:
        user = users.find_by_id(payload.user_id)
    except SQLAlchemyError as exc:
        logger.error("User lookup failed during authentication (user_id=%s): %s", payload.user_id, exc.__class__.__name__)
        raise Internal("Could not verify authentication") from exc

    if user is None:
        raise Unauthorized("User not found")
    if not user.is_active:
        raise Unauthorized("Account has been deactivated")
    if user.password_changed_at is not None:
        changed_at = user.password_changed_at
        if changed_at.tzinfo is None:
            changed_at = changed_at.replace(tzinfo=timezone.utc)
        if int(payload.issued_at.timestamp()) < int(changed_at.timestamp()):
            raise Unauthorized("Password was changed. Please login again")

    try:
        users.touch_last_active(user)
        users.db.commit()
    except SQLAlchemyError:
        users.db.rollback()
        logger.warning("Could not update last activity for user=%s", user.id)
    return user


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    users: Annotated[UserDirectory, Depends(get_user_directory)],
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> User:
    token = credentials.credentials if credentials else None
    return authenticate_access_token(token, users, codec)
