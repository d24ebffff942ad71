import os
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pricerun.models  # noqa: F401
from pricerun.core.clock import utc_now
from pricerun.core.deps import get_db
from pricerun.db.base import Base
from pricerun.main import app
from pricerun.services.channel_connector import build_channel_registry
from pricerun.workers.rules_worker import RuleRunWorker


class FakeClock:
    """Wall clock plus a manually advanced offset."""

    def __init__(self):
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return utc_now() + self.offset

    def advance(self, seconds: float) -> None:
        self.offset += timedelta(seconds=seconds)


@pytest.fixture()
def test_context():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    channels = build_channel_registry()
    app.state.channels = channels
    app.state.worker = RuleRunWorker(channels=channels, worker_id="test-inline", sleep=lambda _: None)
    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def pipeline(test_context, clock):
    _, session_local = test_context
    channels = build_channel_registry()
    worker = RuleRunWorker(
        channels=channels,
        worker_id="test-worker",
        sleep=lambda _: None,
        clock=clock,
        rng=lambda: 0.5,
    )
    db = session_local()
    try:
        yield db, channels, worker
    finally:
        db.close()
