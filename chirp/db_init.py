import logging
import time
from datetime import timedelta
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from chirp.config import settings
from chirp.errors import ApiError
from chirp.models import AuthToken, User  # noqa: F401 - register models
from chirp.models.database import Base, SessionLocal, _normalize_database_url, engine

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _ping() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def wait_for_db(retries: int, retry_delay_seconds: int) -> None:
    """Block until the database answers ``SELECT 1`` or the retries run out."""
    last_error = None
    for attempt in range(1, retries + 1):
        try:
            _ping()
        except OperationalError as exc:
            last_error = exc
            logger.warning("Database not reachable (attempt %s/%s): %s", attempt, retries, exc.__class__.__name__)
            if attempt < retries:
                time.sleep(retry_delay_seconds)
            continue
        logger.info("Database connection established on attempt %s", attempt)
        return

    raise RuntimeError(
        f"Database is unreachable after {retries} attempts. "
        "Check DATABASE_URL and ensure the DB server is running."
    ) from last_error


def run_migrations() -> None:
    """Upgrade the schema to the latest Alembic revision."""
    from alembic import command
    from alembic.config import Config

    alembic_ini = PROJECT_ROOT / "alembic.ini"
    script_location = PROJECT_ROOT / "alembic"
    if not alembic_ini.exists() or not script_location.exists():
        raise RuntimeError("Alembic configuration is missing (alembic.ini or alembic/ directory not found).")

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", _normalize_database_url(settings.DATABASE_URL))
    command.upgrade(config, "head")


def purge_stale_tokens(retention_days: int) -> int:
    """Delete expired auth tokens and tokens revoked more than ``retention_days`` ago."""
    from chirp.services.credential_store import CredentialStore
    from chirp.services.sessions import SessionManager
    from chirp.services.token_codec import TokenCodec
    from chirp.services.users import UserDirectory

    db = SessionLocal()
    try:
        manager = SessionManager(CredentialStore(db), TokenCodec.from_settings(), UserDirectory(db))
        return manager.purge_stale(retention=timedelta(days=retention_days))
    finally:
        db.close()


def init_db() -> None:
    wait_for_db(
        retries=settings.DB_CONNECT_RETRIES,
        retry_delay_seconds=settings.DB_CONNECT_RETRY_DELAY_SECONDS,
    )
    if settings.DATABASE_URL.startswith("sqlite://"):
        Base.metadata.create_all(bind=engine)
    else:
        run_migrations()

    if settings.TOKEN_PURGE_ON_STARTUP:
        try:
            purge_stale_tokens(settings.TOKEN_RETENTION_DAYS)
        except ApiError as exc:
            # maintenance sweep; never fatal
            logger.warning("Stale token purge skipped: %s", exc.message)
