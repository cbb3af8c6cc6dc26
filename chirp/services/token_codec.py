"""Signing and verification of access/refresh JWTs, plus opaque one-shot secrets.

The codec is pure: it never touches the database. Access and refresh tokens are
signed with two independent secrets so that leaking one does not allow forging
the other.
"""
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from chirp.config import settings
from chirp.models.auth_token import TokenKind


class InvalidToken(Exception):
    """Signature, structure or claims are wrong."""


class ExpiredToken(Exception):
    """Signature is valid but the embedded expiry has passed."""


@dataclass(frozen=True)
class TokenPayload:
    user_id: int
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    public_id: str | None = None


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    public_id: str
    expires_at: datetime


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenCodec:
    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        if not access_secret or not refresh_secret:
            raise ValueError("Both access and refresh signing secrets are required")
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls) -> "TokenCodec":
        return cls(
            access_secret=settings.JWT_ACCESS_SECRET,
            refresh_secret=settings.JWT_REFRESH_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            access_ttl=timedelta(minutes=settings.JWT_ACCESS_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=settings.JWT_REFRESH_EXPIRE_DAYS),
        )

    def _encode(self, claims: dict, secret: str) -> str:
        return jwt.encode(claims, secret, algorithm=self.algorithm)

    def issue_access_token(self, user_id: int, now: datetime | None = None) -> str:
        issued_at = now or utcnow()
        claims = {
            "sub": str(user_id),
            "type": TokenKind.ACCESS.value,
            "iat": issued_at,
            "exp": issued_at + self.access_ttl,
        }
        return self._encode(claims, self.access_secret)

    def issue_refresh_token(self, user_id: int, now: datetime | None = None) -> IssuedRefreshToken:
        issued_at = now or utcnow()
        public_id = str(uuid.uuid4())
        expires_at = issued_at + self.refresh_ttl
        claims = {
            "sub": str(user_id),
            "type": TokenKind.REFRESH.value,
            "jti": public_id,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = self._encode(claims, self.refresh_secret)
        # exp is serialized with second precision; keep the record in step with the token
        return IssuedRefreshToken(token=token, public_id=public_id, expires_at=expires_at.replace(microsecond=0))

    def verify(self, token: str, secret: str) -> TokenPayload:
        if not token:
            raise InvalidToken("Token is empty")
        try:
            claims = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require_exp": True, "require_iat": True, "require_sub": True},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredToken("Token has expired") from exc
        except JWTError as exc:
            raise InvalidToken("Token could not be verified") from exc

        try:
            kind = TokenKind(claims.get("type"))
            return TokenPayload(
                user_id=int(claims["sub"]),
                kind=kind,
                issued_at=_from_timestamp(claims["iat"]),
                expires_at=_from_timestamp(claims["exp"]),
                public_id=claims.get("jti"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidToken("Token payload is malformed") from exc

    def verify_access_token(self, token: str) -> TokenPayload:
        return self.verify(token, self.access_secret)

    def verify_refresh_token(self, token: str) -> TokenPayload:
        return self.verify(token, self.refresh_secret)

    @staticmethod
    def random_opaque_secret() -> str:
        return secrets.token_hex(32)

    @staticmethod
    def hash(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()
