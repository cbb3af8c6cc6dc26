"""Session and credential lifecycle.

``SessionManager`` owns every stateful token operation: login, refresh (with
rotation), single/all-device logout, session listing and targeted revocation,
and the one-shot email-verification / password-reset flows. It keeps no state
of its own; all of it lives in the credential store, and each public method is
one unit of work against it (committed on success, rolled back on failure).
"""
import enum
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sqlalchemy.exc import SQLAlchemyError

from chirp.config import settings
from chirp.errors import BadRequest, Internal, NotFound, Unauthorized
from chirp.models import TokenKind
from chirp.services.credential_store import CredentialStore, DeviceInfo, new_token_record
from chirp.services.token_codec import ExpiredToken, InvalidToken, TokenCodec, utcnow
from chirp.services.users import UserDirectory

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE = "Unknown Device"


class RefreshStrategy(str, enum.Enum):
    ROTATE = "rotate"  # refresh token is single-use and replaced in place
    REUSE = "reuse"  # only a new access token is minted


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    public_id: str


@dataclass(frozen=True)
class SessionInfo:
    public_id: str
    user_agent: str
    device_label: str
    ip: str | None
    created_at: datetime | None
    last_used_at: datetime | None


def device_label_for(user_agent: str | None) -> str:
    if not user_agent:
        return UNKNOWN_DEVICE
    ua = user_agent.lower()
    if "mobile" in ua or "android" in ua or "iphone" in ua:
        return "Mobile Device"
    if "tablet" in ua or "ipad" in ua:
        return "Tablet"
    return "Desktop Computer"


class SessionManager:
    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        users: UserDirectory,
        verification_ttl: timedelta | None = None,
        reset_ttl: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.codec = codec
        self.users = users
        self.verification_ttl = verification_ttl or timedelta(minutes=settings.EMAIL_VERIFY_TOKEN_EXPIRE_MINUTES)
        self.reset_ttl = reset_ttl or timedelta(minutes=settings.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES)
        self.clock = clock

    @contextmanager
    def _unit_of_work(self, operation: str, user_id: int | None = None) -> Iterator[None]:
        try:
            yield
            self.store.commit()
        except SQLAlchemyError as exc:
            self.store.rollback()
            # Statement parameters can carry token hashes; log the failure type only.
            logger.error(
                "Credential store failure during %s (user_id=%s): %s",
                operation,
                user_id,
                exc.__class__.__name__,
            )
            raise Internal("Could not complete the session operation") from exc
        except Exception:
            self.store.rollback()
            raise

    def _verify_refresh(self, refresh_token: str):
        try:
            payload = self.codec.verify_refresh_token(refresh_token)
        except ExpiredToken as exc:
            raise Unauthorized("Your session has expired") from exc
        except InvalidToken as exc:
            logger.warning("Rejected refresh token that failed verification")
            raise Unauthorized("Invalid authentication token") from exc
        if payload.kind != TokenKind.REFRESH:
            raise Unauthorized("Invalid token type")
        return payload

    def login(self, user_id: int, device: DeviceInfo | None = None) -> SessionTokens:
        now = self.clock()
        access_token = self.codec.issue_access_token(user_id, now)
        issued = self.codec.issue_refresh_token(user_id, now)
        with self._unit_of_work("login", user_id):
            self.store.create(
                new_token_record(
                    user_id=user_id,
                    kind=TokenKind.REFRESH,
                    token_value=self.codec.hash(issued.token),
                    expires_at=issued.expires_at,
                    now=now,
                    public_id=issued.public_id,
                    device=device,
                )
            )
        logger.info("New session created for user=%s, session=%s", user_id, issued.public_id)
        return SessionTokens(access_token=access_token, refresh_token=issued.token, public_id=issued.public_id)

    def refresh(self, refresh_token: str, strategy: RefreshStrategy = RefreshStrategy.ROTATE) -> SessionTokens:
        payload = self._verify_refresh(refresh_token)
        now = self.clock()
        token_value = self.codec.hash(refresh_token)
        owner_unavailable = False
        result = None

        with self._unit_of_work("refresh", payload.user_id):
            record = self.store.find_active(token_value, TokenKind.REFRESH, now)
            if record is None or record.user_id != payload.user_id:
                raise Unauthorized("Session expired or invalid")
            record_id, public_id = record.id, record.public_id

            user = self.users.find_by_id(payload.user_id)
            if user is None or not user.is_active:
                self.store.revoke(token_value, TokenKind.REFRESH, now, user_id=payload.user_id)
                owner_unavailable = True
            elif strategy == RefreshStrategy.ROTATE:
                issued = self.codec.issue_refresh_token(payload.user_id, now)
                swapped = self.store.replace_value(
                    record_id,
                    expected_value=token_value,
                    new_value=self.codec.hash(issued.token),
                    new_public_id=issued.public_id,
                    new_expires_at=issued.expires_at,
                    now=now,
                )
                if not swapped:
                    # Lost a race with another rotation of the same token.
                    raise Unauthorized("Session expired or invalid")
                result = SessionTokens(
                    access_token=self.codec.issue_access_token(payload.user_id, now),
                    refresh_token=issued.token,
                    public_id=issued.public_id,
                )
            else:
                if not self.store.touch(record_id, token_value, now):
                    raise Unauthorized("Session expired or invalid")
                result = SessionTokens(
                    access_token=self.codec.issue_access_token(payload.user_id, now),
                    refresh_token=refresh_token,
                    public_id=public_id,
                )

        if owner_unavailable:
            logger.warning("Refresh for unavailable account user=%s; session %s revoked", payload.user_id, public_id)
            raise Unauthorized("User account not found or deactivated")

        if strategy == RefreshStrategy.ROTATE:
            logger.info("Refresh token rotated for user=%s, session=%s", payload.user_id, result.public_id)
        else:
            logger.info("Access token refreshed for user=%s, session=%s", payload.user_id, result.public_id)
        return result

    def logout(self, refresh_token: str, user_id: int) -> bool:
        now = self.clock()
        with self._unit_of_work("logout", user_id):
            revoked = self.store.revoke(self.codec.hash(refresh_token), TokenKind.REFRESH, now, user_id=user_id)
        if revoked:
            logger.info("Session ended for user=%s", user_id)
        else:
            logger.warning("No active session found for user=%s", user_id)
        return revoked

    def logout_all(self, user_id: int) -> int:
        now = self.clock()
        with self._unit_of_work("logout_all", user_id):
            revoked = self.store.revoke_all(user_id, TokenKind.REFRESH, now)
        logger.info("All sessions ended for user=%s (%s devices)", user_id, revoked)
        return revoked

    def list_sessions(self, user_id: int) -> list[SessionInfo]:
        now = self.clock()
        with self._unit_of_work("list_sessions", user_id):
            records = self.store.list_active(user_id, TokenKind.REFRESH, now)
            sessions = [
                SessionInfo(
                    public_id=record.public_id,
                    user_agent=record.user_agent or UNKNOWN_DEVICE,
                    device_label=record.device_label or UNKNOWN_DEVICE,
                    ip=record.ip,
                    created_at=record.created_at,
                    last_used_at=record.last_used_at,
                )
                for record in records
            ]
        return sessions

    def revoke_session(self, user_id: int, public_id: str) -> None:
        now = self.clock()
        with self._unit_of_work("revoke_session", user_id):
            revoked = self.store.revoke_by_public_id(user_id, public_id, now)
            if not revoked:
                raise NotFound("Session not found")
        logger.info("Session removed for user=%s, session=%s", user_id, public_id)

    def _create_one_shot(self, user_id: int, kind: TokenKind, ttl: timedelta) -> str:
        now = self.clock()
        secret = self.codec.random_opaque_secret()
        with self._unit_of_work(f"create_{kind.value}", user_id):
            if kind == TokenKind.PASSWORD_RESET:
                # at most one live reset token per user; the owner lock orders concurrent requests
                self.store.lock_owner(user_id)
                self.store.revoke_all(user_id, TokenKind.PASSWORD_RESET, now)
            self.store.create(
                new_token_record(
                    user_id=user_id,
                    kind=kind,
                    token_value=self.codec.hash(secret),
                    expires_at=now + ttl,
                    now=now,
                )
            )
        return secret

    def _consume_one_shot(self, secret: str, kind: TokenKind, failure_message: str) -> int:
        if not secret:
            raise BadRequest(failure_message)
        now = self.clock()
        with self._unit_of_work(f"consume_{kind.value}"):
            user_id = self.store.consume(self.codec.hash(secret), kind, now)
            if user_id is None:
                raise BadRequest(failure_message)
        return user_id

    def create_email_verification_token(self, user_id: int) -> str:
        return self._create_one_shot(user_id, TokenKind.EMAIL_VERIFICATION, self.verification_ttl)

    def consume_email_verification_token(self, secret: str) -> int:
        return self._consume_one_shot(secret, TokenKind.EMAIL_VERIFICATION, "Invalid or expired verification token")

    def create_password_reset_token(self, user_id: int) -> str:
        return self._create_one_shot(user_id, TokenKind.PASSWORD_RESET, self.reset_ttl)

    def consume_password_reset_token(self, secret: str) -> int:
        return self._consume_one_shot(secret, TokenKind.PASSWORD_RESET, "Invalid or expired reset token")

    def last_issued_at(self, user_id: int, kind: TokenKind) -> datetime | None:
        with self._unit_of_work("last_issued_at", user_id):
            record = self.store.latest(user_id, kind)
            created_at = record.created_at if record is not None else None
        return created_at

    def purge_stale(self, retention: timedelta = timedelta(days=7)) -> int:
        """Physically delete expired rows and rows revoked longer than ``retention`` ago."""
        now = self.clock()
        with self._unit_of_work("purge_stale"):
            deleted = self.store.purge(before=now - retention, now=now)
        logger.info("Cleaned up %s stale auth tokens", deleted)
        return deleted
