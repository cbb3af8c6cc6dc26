from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chirp.models import AuthToken, TokenKind, User
from chirp.models.auth_token import PERSISTED_KINDS


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str | None = None
    ip: str | None = None
    device_label: str | None = None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_token_record(
    user_id: int,
    kind: TokenKind,
    token_value: str,
    expires_at: datetime,
    now: datetime,
    public_id: str | None = None,
    device: DeviceInfo | None = None,
) -> AuthToken:
    """Build a validated, not yet persisted token record."""
    if user_id is None:
        raise ValueError("Token record requires an owning user")
    if kind not in PERSISTED_KINDS:
        raise ValueError(f"Tokens of kind '{kind.value}' are not persisted")
    if (kind == TokenKind.REFRESH) != bool(public_id):
        raise ValueError("public_id is required for refresh tokens and only for them")
    if not token_value:
        raise ValueError("Token value is required")
    device = device or DeviceInfo()
    return AuthToken(
        user_id=user_id,
        kind=kind.value,
        token_value=token_value,
        public_id=public_id,
        is_active=True,
        expires_at=expires_at,
        last_used_at=now,
        created_at=now,
        user_agent=device.user_agent,
        ip=device.ip,
        device_label=device.device_label,
    )


class CredentialStore:
    """Token records over a SQLAlchemy session.

    Every lookup filters on ``is_active`` and ``expires_at > now`` in SQL, and every
    consuming mutation is a single conditional UPDATE, so two callers can never both
    win on the same record. Commit/rollback is left to the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    def _db_datetime(self, value: datetime) -> datetime:
        bind = self.db.get_bind()
        if bind is not None and bind.dialect.name == "sqlite":
            return _as_utc(value).replace(tzinfo=None)
        return value

    def _usable(self, now: datetime):
        return (AuthToken.is_active.is_(True), AuthToken.expires_at > self._db_datetime(now))

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def lock_owner(self, user_id: int) -> None:
        """Row-lock the owning user until commit so per-user token writes serialize (no-op on SQLite)."""
        self.db.query(User.id).filter(User.id == user_id).with_for_update().first()

    def create(self, record: AuthToken) -> AuthToken:
        record.expires_at = self._db_datetime(record.expires_at)
        record.last_used_at = self._db_datetime(record.last_used_at)
        record.created_at = self._db_datetime(record.created_at)
        self.db.add(record)
        self.db.flush()
        return record

    def find_active(self, token_value: str, kind: TokenKind, now: datetime) -> AuthToken | None:
        return (
            self.db.query(AuthToken)
            .filter(AuthToken.token_value == token_value, AuthToken.kind == kind.value, *self._usable(now))
            .first()
        )

    def latest(self, user_id: int, kind: TokenKind) -> AuthToken | None:
        return (
            self.db.query(AuthToken)
            .filter(AuthToken.user_id == user_id, AuthToken.kind == kind.value)
            .order_by(AuthToken.created_at.desc(), AuthToken.id.desc())
            .first()
        )

    def list_active(self, user_id: int, kind: TokenKind, now: datetime) -> list[AuthToken]:
        return (
            self.db.query(AuthToken)
            .filter(AuthToken.user_id == user_id, AuthToken.kind == kind.value, *self._usable(now))
            .order_by(AuthToken.last_used_at.desc(), AuthToken.id.desc())
            .all()
        )

    def replace_value(
        self,
        record_id: int,
        expected_value: str,
        new_value: str,
        new_public_id: str,
        new_expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Compare-and-swap rotation: only succeeds if the row still holds ``expected_value``."""
        db_now = self._db_datetime(now)
        updated = (
            self.db.query(AuthToken)
            .filter(AuthToken.id == record_id, AuthToken.token_value == expected_value, *self._usable(now))
            .update(
                {
                    AuthToken.token_value: new_value,
                    AuthToken.public_id: new_public_id,
                    AuthToken.expires_at: self._db_datetime(new_expires_at),
                    AuthToken.last_used_at: db_now,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def touch(self, record_id: int, expected_value: str, now: datetime) -> bool:
        db_now = self._db_datetime(now)
        updated = (
            self.db.query(AuthToken)
            .filter(AuthToken.id == record_id, AuthToken.token_value == expected_value, *self._usable(now))
            .update({AuthToken.last_used_at: db_now}, synchronize_session=False)
        )
        return updated == 1

    def consume(self, token_value: str, kind: TokenKind, now: datetime) -> int | None:
        """Deactivate a live one-shot record in one statement and return its owner."""
        db_now = self._db_datetime(now)
        record = (
            self.db.query(AuthToken.id, AuthToken.user_id)
            .filter(AuthToken.token_value == token_value, AuthToken.kind == kind.value, *self._usable(now))
            .first()
        )
        if record is None:
            return None
        updated = (
            self.db.query(AuthToken)
            .filter(AuthToken.id == record.id, AuthToken.token_value == token_value, *self._usable(now))
            .update({AuthToken.is_active: False, AuthToken.revoked_at: db_now}, synchronize_session=False)
        )
        if updated != 1:
            return None
        return record.user_id

    def revoke(self, token_value: str, kind: TokenKind, now: datetime, user_id: int | None = None) -> bool:
        db_now = self._db_datetime(now)
        query = self.db.query(AuthToken).filter(
            AuthToken.token_value == token_value,
            AuthToken.kind == kind.value,
            *self._usable(now),
        )
        if user_id is not None:
            query = query.filter(AuthToken.user_id == user_id)
        updated = query.update(
            {AuthToken.is_active: False, AuthToken.revoked_at: db_now},
            synchronize_session=False,
        )
        return updated == 1

    def revoke_by_public_id(self, user_id: int, public_id: str, now: datetime) -> bool:
        db_now = self._db_datetime(now)
        updated = (
            self.db.query(AuthToken)
            .filter(
                AuthToken.public_id == public_id,
                AuthToken.user_id == user_id,
                AuthToken.kind == TokenKind.REFRESH.value,
                *self._usable(now),
            )
            .update({AuthToken.is_active: False, AuthToken.revoked_at: db_now}, synchronize_session=False)
        )
        return updated == 1

    def revoke_all(self, user_id: int, kind: TokenKind, now: datetime) -> int:
        db_now = self._db_datetime(now)
        return (
            self.db.query(AuthToken)
            .filter(AuthToken.user_id == user_id, AuthToken.kind == kind.value, AuthToken.is_active.is_(True))
            .update({AuthToken.is_active: False, AuthToken.revoked_at: db_now}, synchronize_session=False)
        )

    def purge(self, before: datetime, now: datetime) -> int:
        """Out-of-band sweep of expired rows and rows revoked before ``before``."""
        return (
            self.db.query(AuthToken)
            .filter(
                or_(
                    AuthToken.expires_at <= self._db_datetime(now),
                    (AuthToken.is_active.is_(False)) & (AuthToken.revoked_at < self._db_datetime(before)),
                )
            )
            .delete(synchronize_session=False)
        )
