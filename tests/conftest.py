"""
Shared fixtures: an in-memory SQLite database, users, and an API client
wired to the same session.
"""
import os

# Must be set before app.database is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.models import db_models  # noqa: F401  (registers tables)
from app.models.db_models import UserDB, UserRole, UserStatus
from app.auth import hash_password, create_access_token

TEST_PASSWORD = "password123"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user_password():
    """Plain-text password of every user built by make_user."""
    return TEST_PASSWORD


@pytest.fixture
def make_user(db_session):
    """Factory creating a persisted user with the test password."""
    def _make_user(
        role=UserRole.CLIENT,
        email=None,
        name="Test User",
        status=UserStatus.ACTIVE,
        permissions=None,
    ) -> UserDB:
        user = UserDB(
            id=str(uuid4()),
            name=name,
            email=email or f"user-{uuid4().hex[:8]}@example.com",
            password_hash=hash_password(TEST_PASSWORD),
            role=role,
            status=status,
            admin_permissions=permissions or {},
            login_history=[],
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user: UserDB) -> dict:
        token = create_access_token(user.id, user.email, user.role)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def main_admin(make_user):
    return make_user(role=UserRole.MAIN_ADMIN, email="owner@example.com", name="Owner")


@pytest.fixture
def upload_root(tmp_path):
    return tmp_path / "uploads"


@pytest.fixture
def client(db_session, upload_root):
    from app.main import app
    from app.routers.settings import get_storage
    from app.services.storage import LocalStorageService

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_storage] = lambda: LocalStorageService(root=str(upload_root))

    # Not used as a context manager: the lifespan would create tables on the app engine
    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()
