"""Shared fixtures: SQLite-backed sessions, an API client bound to them, and actor helpers."""
import os

# Keep the app's own engine off the working directory during tests
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from intelreview.database import build_engine, init_db
from intelreview.models.base import ClassificationEnum, utcnow
from intelreview.modules.report_store import create_post, create_report, unit_of_work
from intelreview.schemas.actor import Actor
from intelreview.schemas.intel_report import IntelReportCreate

AGENT = Actor(user_id=10, username="agent.smith", role="agent")
OTHER_AGENT = Actor(user_id=11, username="agent.jones", role="agent")
SUPERVISOR = Actor(user_id=20, username="sup.lee", role="supervisor")
ADMIN = Actor(user_id=1, username="admin", role="admin")


def _sqlite_engine(url: str):
    engine = build_engine(url)
    init_db(bind=engine)
    return engine


@pytest.fixture
def db():
    """In-memory SQLite session with all tables, one per test."""
    engine = _sqlite_engine("sqlite:///:memory:")
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite engine, for tests that need several independent sessions."""
    engine = _sqlite_engine(f"sqlite:///{tmp_path / 'intelreview_test.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(file_engine):
    return sessionmaker(bind=file_engine)


@pytest.fixture
def api_client(session_factory):
    """TestClient with get_db overridden to hand out sessions on a temp-file SQLite database."""
    from intelreview.api.routes import limiter
    from intelreview.database import get_db
    from intelreview.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    limiter.reset()
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def headers_for(actor: Actor) -> dict:
    return {
        "X-User-Id": str(actor.user_id),
        "X-Username": actor.username,
        "X-User-Role": actor.role,
    }


def make_report(db, author: Actor = AGENT, submitted_days_ago: float = 0, retention_days=None, **fields):
    """Create and commit a pending report submitted ``submitted_days_ago`` days before now."""
    data = IntelReportCreate(
        classification=fields.pop("classification", ClassificationEnum.SENSITIVE),
        subject=fields.pop("subject", "Suspicious activity near the docks"),
        submitted_at=utcnow() - timedelta(days=submitted_days_ago),
        retention_days=retention_days,
        **fields,
    )
    with unit_of_work(db):
        report = create_report(db, data, author, default_retention_days=1825)
    return report


def make_post(db, published_at: datetime, retention_days: int = 1825, title: str = "Bulletin"):
    with unit_of_work(db):
        post = create_post(db, title, "body", AGENT, retention_days, published_at=published_at)
    return post
