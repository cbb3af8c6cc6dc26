import enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.sql import func

from chirp.models.database import Base


class TokenKind(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


PERSISTED_KINDS = frozenset({TokenKind.REFRESH, TokenKind.EMAIL_VERIFICATION, TokenKind.PASSWORD_RESET})


class AuthToken(Base):
    __tablename__ = "auth_tokens"
    __table_args__ = (
        Index("ix_auth_tokens_user_lookup", "user_id", "kind", "is_active", "expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    kind = Column(String(32), nullable=False)  # refresh | email_verification | password_reset
    # sha256 hex of the secret; the plaintext is never stored
    token_value = Column(String(128), unique=True, nullable=False, index=True)
    # NULL for one-shot kinds, so uniqueness only binds refresh rows
    public_id = Column(String(64), unique=True, nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    user_agent = Column(String(512), nullable=True)
    ip = Column(String(64), nullable=True)
    device_label = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
