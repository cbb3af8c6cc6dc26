import os
from typing import Generator

# Override settings for tests before importing app modules
TEST_DATABASE_URL = "sqlite:///:memory:"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["JWT_ACCESS_SECRET"] = "test-access-secret-for-testing-only"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret-for-testing-only"
os.environ["ENVIRONMENT"] = "test"
os.environ["SMTP_HOST"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chirp.main import app
from chirp.models.database import Base, get_db
from chirp.models.user import User
from chirp.services.credential_store import CredentialStore
from chirp.services.sessions import SessionManager
from chirp.services.token_codec import TokenCodec
from chirp.services.users import UserDirectory, get_password_hash

TEST_PASSWORD = "testpassword123"

# Create test database engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db_session = TestSessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_user(db: Session, username: str, email: str, display_name: str, **overrides) -> User:
    values = {
        "username": username,
        "email": email,
        "display_name": display_name,
        "hashed_password": get_password_hash(TEST_PASSWORD),
        "is_verified": True,
        "is_active": True,
    }
    values.update(overrides)
    user = User(**values)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user(db: Session) -> User:
    """Create a verified, active test user."""
    return _create_user(db, "testuser", "test@example.com", "Test User")


@pytest.fixture
def test_user2(db: Session) -> User:
    """Create a second test user."""
    return _create_user(db, "otheruser", "other@example.com", "Other User")


@pytest.fixture
def unverified_user(db: Session) -> User:
    return _create_user(db, "newbie", "newbie@example.com", "New Bie", is_verified=False)


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec.from_settings()


@pytest.fixture
def store(db: Session) -> CredentialStore:
    return CredentialStore(db)


@pytest.fixture
def session_manager(db: Session, store: CredentialStore, codec: TokenCodec) -> SessionManager:
    return SessionManager(store, codec, UserDirectory(db))


def login(client: TestClient, identifier: str, password: str = TEST_PASSWORD, user_agent: str | None = None):
    headers = {"User-Agent": user_agent} if user_agent else None
    return client.post(
        "/api/v1/auth/login",
        json={"identifier": identifier, "password": password},
        headers=headers,
    )


@pytest.fixture
def auth_tokens(client: TestClient, test_user: User) -> dict:
    """Login the test user and return the token response body."""
    response = login(client, "test@example.com")
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def auth_token(auth_tokens: dict) -> str:
    return auth_tokens["accessToken"]


@pytest.fixture
def auth_headers(auth_token: str) -> dict[str, str]:
    """Get auth headers with token."""
    return {"Authorization": f"Bearer {auth_token}"}
