"""
Pytest configuration and shared fixtures.

Test settings are exported here before anything from aside is imported,
so the module-level settings object is built from them.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_aside.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest00000000000000000000000000")
os.environ.setdefault("WS_PING_INTERVAL_SECONDS", "3600")
os.environ.setdefault("POST_PROCESS_DELAY_SECONDS", "0.05")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from aside.config import get_settings
get_settings.cache_clear()

from aside import models  # noqa: E402,F401
from aside.main import app  # noqa: E402
from aside.storage import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Session on a fresh database, for tests below the HTTP layer."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)
