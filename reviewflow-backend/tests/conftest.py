import os
import uuid

import pytest

# Settings are read at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import reviewflow.models  # noqa: E402,F401
from reviewflow.core.config import settings  # noqa: E402
from reviewflow.core.deps import get_db  # noqa: E402
from reviewflow.core.security import hash_password  # noqa: E402
from reviewflow.db.base import Base  # noqa: E402
from reviewflow.main import app  # noqa: E402
from reviewflow.models.account import User  # noqa: E402
from reviewflow.models.business import Business  # noqa: E402
from reviewflow.models.customer import Customer  # noqa: E402
from reviewflow.routers.auth import login_rate_limiter  # noqa: E402
from reviewflow.routers.feedback import feedback_rate_limiter  # noqa: E402


@pytest.fixture()
def memory_engine():
    """One in-memory SQLite database shared by every session of a test."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def test_context(memory_engine, monkeypatch):
    """API client wired to a fresh database, plus a session factory for assertions."""
    monkeypatch.setattr(settings, "secret_key", "test-secret-key")
    session_local = sessionmaker(bind=memory_engine, autoflush=False)

    def _db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _db
    try:
        with TestClient(app) as client:
            yield client, session_local
    finally:
        app.dependency_overrides.pop(get_db, None)
        login_rate_limiter.clear()
        feedback_rate_limiter.clear()


@pytest.fixture()
def db_session(memory_engine):
    db = sessionmaker(bind=memory_engine, autoflush=False)()
    yield db
    db.close()


@pytest.fixture()
def make_business(db_session):
    def _make(**overrides) -> Business:
        tag = uuid.uuid4().hex[:8]
        owner = User(
            email=f"owner-{tag}@example.com",
            username=f"owner_{tag}",
            full_name="Owner",
            hashed_password=hash_password("password123"),
        )
        db_session.add(owner)
        db_session.flush()
        fields = {
            "id": str(uuid.uuid4()),
            "owner_user_id": owner.id,
            "name": "Sparkle Auto Detailing",
            "public_rating_threshold": 4,
            **overrides,
        }
        business = Business(**fields)
        db_session.add(business)
        db_session.flush()
        return business

    return _make


@pytest.fixture()
def make_customer(db_session):
    def _make(business: Business, **overrides) -> Customer:
        fields = {
            "id": str(uuid.uuid4()),
            "business_id": business.id,
            "name": "Aisha Bello",
            "phone": "+15551234567",
            "email": "aisha@example.com",
            "service_type": "Full detail",
            **overrides,
        }
        customer = Customer(**fields)
        db_session.add(customer)
        db_session.flush()
        return customer

    return _make
