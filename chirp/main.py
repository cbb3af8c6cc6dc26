import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chirp.api import auth, realtime, users
from chirp.config import DEFAULT_ACCESS_SECRET, DEFAULT_REFRESH_SECRET, settings
from chirp.db_init import init_db
from chirp.errors import register_exception_handlers
from chirp.services.presence import PresenceRegistry

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("chirp.startup")

MIN_SECRET_LENGTH = 20


def _is_localhost(host: str | None) -> bool:
    return host in {"localhost", "127.0.0.1"}


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.hostname)


def _get_cors_origins(cors_raw: str) -> list[str]:
    return [origin.strip() for origin in cors_raw.split(",") if origin.strip()]


def _validate_database_url_for_runtime(database_url: str) -> None:
    parsed = urlparse(database_url)
    scheme = parsed.scheme
    host = parsed.hostname
    db_name = parsed.path.lstrip("/")
    postgres_schemes = {"postgres", "postgresql", "postgresql+psycopg"}

    if not scheme:
        raise RuntimeError("DATABASE_URL is missing URL scheme (expected postgresql:// or postgresql+psycopg://).")
    if scheme == "sqlite":
        return
    if scheme not in postgres_schemes:
        raise RuntimeError(
            f"DATABASE_URL has unsupported scheme '{scheme}' "
            "(expected postgresql:// or postgresql+psycopg://)."
        )
    if not host:
        raise RuntimeError("DATABASE_URL is missing host.")
    if not db_name:
        raise RuntimeError("DATABASE_URL is missing database name in path.")


def _db_url_diagnostics(database_url: str) -> str:
    parsed = urlparse(database_url)
    host = parsed.hostname or "<missing>"
    port = parsed.port or "<missing>"
    db_name = parsed.path.lstrip("/") or "<missing>"
    scheme = parsed.scheme or "<missing>"
    query = parsed.query or "<empty>"

    tips = []
    if _is_localhost(host):
        tips.append("Host points to localhost; in containers use the database service name instead.")
    if scheme in {"postgres", "postgresql"}:
        tips.append("URL scheme is fine; app normalizes it to postgresql+psycopg internally.")
    if "sslmode" not in query:
        tips.append("No sslmode in URL query; external managed DBs often require sslmode=require.")
    if not tips:
        tips.append("URL structure looks valid; check network access, DB credentials, and DB service status.")

    return (
        f"scheme={scheme}, host={host}, port={port}, database={db_name}, query={query}; "
        f"tips={' | '.join(tips)}"
    )


def _validate_required_env_for_runtime() -> None:
    errors = []
    warnings = []
    is_production = settings.IS_PRODUCTION

    access_secret = settings.JWT_ACCESS_SECRET.strip()
    refresh_secret = settings.JWT_REFRESH_SECRET.strip()
    if not access_secret:
        errors.append("JWT_ACCESS_SECRET is required.")
    if not refresh_secret:
        errors.append("JWT_REFRESH_SECRET is required.")
    if access_secret and access_secret == refresh_secret:
        errors.append("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be different.")

    insecure = [
        name
        for name, value, default in (
            ("JWT_ACCESS_SECRET", access_secret, DEFAULT_ACCESS_SECRET),
            ("JWT_REFRESH_SECRET", refresh_secret, DEFAULT_REFRESH_SECRET),
        )
        if value and (value == default or len(value) < MIN_SECRET_LENGTH)
    ]
    if insecure:
        message = f"{', '.join(insecure)} uses an insecure default or is shorter than {MIN_SECRET_LENGTH} characters."
        if is_production:
            errors.append(message)
        else:
            warnings.append(message)

    if not _is_http_url(settings.BASE_URL):
        errors.append("BASE_URL must be an absolute http(s) URL, e.g. https://api.example.com")

    origins = _get_cors_origins(settings.CORS_ORIGINS)
    if not origins:
        errors.append("CORS_ORIGINS must contain at least one comma-separated origin URL.")
    else:
        invalid_origins = [origin for origin in origins if not _is_http_url(origin)]
        if invalid_origins:
            errors.append(f"CORS_ORIGINS contains invalid URL(s): {', '.join(invalid_origins)}")
        if is_production:
            localhost_origins = [origin for origin in origins if _is_localhost(urlparse(origin).hostname)]
            if localhost_origins:
                warnings.append(f"CORS_ORIGINS includes localhost in production: {', '.join(localhost_origins)}")

    if is_production and not settings.SMTP_HOST:
        warnings.append("SMTP_HOST is not set; verification and reset emails cannot be delivered.")

    if warnings:
        logger.warning("Startup environment warnings: %s", " | ".join(warnings))

    if errors:
        raise RuntimeError("Startup environment validation failed: " + " | ".join(errors))


@asynccontextmanager
async def lifespan(app: FastAPI):
    database_url = "<unavailable>"
    logger.info("Application startup initiated.")
    try:
        database_url = settings.DATABASE_URL
        logger.info("DATABASE_URL diagnostics at startup: %s", _db_url_diagnostics(database_url))
        _validate_database_url_for_runtime(database_url)
        _validate_required_env_for_runtime()
        init_db()
    except Exception as exc:
        diagnostics = (
            _db_url_diagnostics(database_url)
            if database_url != "<unavailable>"
            else "DATABASE_URL unavailable (missing or unreadable)."
        )
        logger.exception(
            "Database initialization failed: %s. DATABASE_URL diagnostics: %s",
            str(exc),
            diagnostics,
        )
        raise
    logger.info("Application startup completed successfully.")
    yield


app = FastAPI(
    title="Chirp API",
    description=(
        "Backend API for the Chirp social network: accounts, sessions and real-time presence. "
        f"Use **Authorize** with the access token from `POST {settings.API_PREFIX}/auth/login`."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auth", "description": "Register, login, token refresh, email verification, password reset."},
        {"name": "Users", "description": "Current account and session management (requires auth)."},
        {"name": "Realtime", "description": "Presence and typing websocket."},
    ],
)

# One registry per process, owned by the application.
app.state.presence = PresenceRegistry()

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(settings.CORS_ORIGINS),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix=f"{settings.API_PREFIX}/auth", tags=["Auth"])
app.include_router(users.router, prefix=f"{settings.API_PREFIX}/users", tags=["Users"])
app.include_router(realtime.router, prefix=settings.API_PREFIX, tags=["Realtime"])


@app.get("/")
def root():
    return {"status": "ok", "service": "Chirp API"}


@app.get("/health")
def health():
    return {"status": "ok"}
