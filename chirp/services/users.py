from datetime import datetime, timedelta, timezone

from passlib.context import CryptContext
from sqlalchemy import or_
from sqlalchemy.orm import Session

from chirp.models import User

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Verified against for unknown identifiers so login timing does not reveal account existence.
_DUMMY_PASSWORD_HASH = pwd_context.hash("chirp-dummy-password")


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def burn_password_check(plain: str) -> None:
    pwd_context.verify(plain, _DUMMY_PASSWORD_HASH)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_user(username: str, email: str, password: str, display_name: str) -> User:
    """Build a normalized user with a hashed password; nothing is persisted here."""
    display_name = display_name.strip()
    first_name = display_name.split(" ")[0] if display_name else ""
    return User(
        username=username.strip().lower(),
        email=email.strip().lower(),
        display_name=display_name,
        hashed_password=get_password_hash(password),
        bio=f"Hi, I'm {first_name}!" if first_name else "",
        role="user",
        is_verified=False,
        is_active=True,
        last_active_at=utcnow(),
    )


class UserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def add(self, user: User) -> User:
        self.db.add(user)
        self.db.flush()
        return user

    def find_by_id(self, user_id: int) -> User | None:
        return self.db.query(User).filter(User.id == user_id).first()

    def find_active_by_id(self, user_id: int) -> User | None:
        return self.db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()

    def find_by_username(self, username: str) -> User | None:
        return self.db.query(User).filter(User.username == username.strip().lower()).first()

    def find_by_email(self, email: str) -> User | None:
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def find_by_email_or_username(self, identifier: str) -> User | None:
        value = identifier.strip().lower()
        return self.db.query(User).filter(or_(User.email == value, User.username == value)).first()

    def find_conflicting(self, username: str, email: str) -> User | None:
        return (
            self.db.query(User)
            .filter(or_(User.email == email.strip().lower(), User.username == username.strip().lower()))
            .first()
        )

    def mark_verified(self, user_id: int) -> User | None:
        user = self.find_by_id(user_id)
        if user is not None and not user.is_verified:
            user.is_verified = True
            self.db.flush()
        return user

    def mark_password_changed(self, user_id: int, new_hash: str) -> User | None:
        user = self.find_by_id(user_id)
        if user is None:
            return None
        user.hashed_password = new_hash
        # Back-dated a second so tokens minted right after the change still pass the gate.
        user.password_changed_at = utcnow() - timedelta(seconds=1)
        self.db.flush()
        return user

    def touch_last_active(self, user: User) -> None:
        user.last_active_at = utcnow()
        self.db.flush()

    def deactivate(self, user_id: int) -> User | None:
        user = self.find_by_id(user_id)
        if user is None:
            return None
        user.is_active = False
        # hyphen is outside the username alphabet, so no registered account can hold this name
        user.username = f"deleted-{user.id}"
        user.email = f"deleted-{user.id}@deleted.invalid"
        user.deleted_at = utcnow()
        self.db.flush()
        return user

    def update_profile(self, user: User, display_name: str | None = None, bio: str | None = None) -> User:
        """Apply the non-empty fields only; blank values leave the stored ones untouched."""
        if display_name:
            user.display_name = display_name
        if bio:
            user.bio = bio
        self.db.flush()
        return user

    def rename(self, user: User, username: str) -> User:
        user.username = username.strip().lower()
        self.db.flush()
        return user
