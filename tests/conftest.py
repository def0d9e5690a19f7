"""Shared test fixtures."""

import os

# Test environment, set before any application module reads settings
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")
os.environ.setdefault("MINIO_BUCKET", "test-exports")
os.environ.setdefault("SCHEDULER_TIMEZONE", "Europe/Berlin")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import cleandoc_export.models  # noqa: F401  registers models on Base
from cleandoc_export.db.base import Base
from cleandoc_export.services.storage_service import StorageService

from tests.factories import FakeMinio, make_records


# ── Database ─────────────────────────────────────────
@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ── Storage ──────────────────────────────────────────
@pytest.fixture
def fake_minio() -> FakeMinio:
    return FakeMinio()


@pytest.fixture
def storage(fake_minio) -> StorageService:
    return StorageService(client=fake_minio, bucket="test-exports", sse_enabled=True)


# ── Activity data ────────────────────────────────────
@pytest.fixture
def report_date() -> str:
    return "2024-03-15"


@pytest.fixture
def records(report_date):
    return make_records(report_date)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    calls = []

    def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep
