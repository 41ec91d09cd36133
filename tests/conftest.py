"""Pytest configuration and shared fixtures."""
import json
import os

# Keep the app's own engine off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from worktrack.database import Base, get_db
from worktrack.models.domain import Item, RoutineCompletion, RoutineSkip, ItemLink
from worktrack.models.audit import Activity
from worktrack.models.enums import ItemStatus, ItemType


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # StaticPool keeps one connection so the API client's worker thread sees the same data
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def make_item(db_session):
    """Factory for one-off tasks."""
    def _make(title="Write report", status=ItemStatus.PENDING):
        item = Item(title=title, item_type=ItemType.TASK, status=status)
        db_session.add(item)
        db_session.commit()
        db_session.refresh(item)
        return item
    return _make


@pytest.fixture
def make_routine(db_session):
    """
    Factory for routine templates.

    days/months may be lists (stored as JSON) or raw strings (stored as-is,
    for malformed-data cases).
    """
    def _encode(value):
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    def _make(
        title="Water plants",
        rule="daily",
        days=None,
        months=None,
        created=datetime(2025, 1, 1, 9, 30),
        recurrence_time=None
    ):
        routine = Item(
            title=title,
            item_type=ItemType.ROUTINE,
            status=ItemStatus.PENDING,
            recurrence_rule=rule,
            recurrence_days=_encode(days),
            recurrence_months=_encode(months),
            recurrence_time=recurrence_time,
            created_at=created
        )
        db_session.add(routine)
        db_session.commit()
        db_session.refresh(routine)
        return routine
    return _make


@pytest.fixture
def client(db_session):
    """TestClient bound to the FastAPI app with the test session injected."""
    from worktrack.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
