import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import rollout.database as database
import rollout.events as events
import rollout.utils.ticker as ticker
from rollout.config import get_settings
from rollout.models import metadata


@pytest.fixture(autouse=True)
def engine(monkeypatch):
    monkeypatch.setenv("TICK_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("LOCK_BACKEND", "local")
    monkeypatch.setenv("EVENT_BACKEND", "local")
    monkeypatch.setenv("WORKFLOW_BACKEND", "thread")
    monkeypatch.delenv("PLAN_DEFAULTS_PATH", raising=False)
    get_settings.cache_clear()
    monkeypatch.setattr(ticker, "_ticker", None)
    events.reset_event_channel()

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    TestingSessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    metadata.create_all(engine)

    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "SessionLocal", TestingSessionLocal)

    yield engine

    events.reset_event_channel()
    get_settings.cache_clear()
    engine.dispose()
