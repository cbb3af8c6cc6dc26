from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from chirp.config import settings


def _normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql+psycopg://", 1)

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    return database_url


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": settings.DB_CONNECT_TIMEOUT_SECONDS}
    if database_url.startswith("postgresql"):
        # Every store round-trip is bounded; a stalled statement surfaces as an error.
        return {
            "connect_timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
            "options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}",
        }
    return {}


_database_url = _normalize_database_url(settings.DATABASE_URL)
engine = create_engine(
    _database_url,
    connect_args=_connect_args(_database_url),
    pool_pre_ping=True,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
