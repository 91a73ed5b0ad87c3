# tests/conftest.py

"""
Shared fixtures. The API singletons bind to DATABASE_URL at import time, so
the environment is pointed at a throwaway SQLite file before ``app`` loads.
Service-level tests get their own SQLite file under ``tmp_path``.
"""

import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="bulk-eval-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR}/api.db"
os.environ["AUTH_JWT_SECRET"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["REDIS_URL"] = "redis://localhost:6399/0"

from datetime import datetime, timedelta  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.db.base import Base  # noqa: E402
import app.models  # noqa: E402,F401
from app.models import Challenge, Competition, Submission  # noqa: E402


RUBRIC = [
    {"name": "Correctness", "description": "Solves the stated problem", "weight": 0.6},
    {"name": "Creativity", "description": "Original approach", "weight": 0.4},
]


class Clock:
    """Settable clock for lease staleness."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite file per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path}/evaluation.db",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def seed(session_factory):
    """Insert rows through a short-lived session."""

    def _seed(*rows):
        db = session_factory()
        try:
            db.add_all(rows)
            db.commit()
        finally:
            db.close()

    return _seed


@pytest.fixture
def competition_with_submissions(seed):
    seed(
        Competition(id="comp-1", title="Prompt Cup", top_n=2),
        Challenge(id="ch-1", competition_id="comp-1", rubric=RUBRIC, problem_statement="Write a haiku prompt."),
        Submission(id="s-1", competition_id="comp-1", challenge_id="ch-1", participant_id="p-1",
                   prompt_text="first prompt", created_at=datetime(2026, 1, 1, 9, 0)),
        Submission(id="s-2", competition_id="comp-1", challenge_id="ch-1", participant_id="p-2",
                   prompt_text="second prompt", created_at=datetime(2026, 1, 1, 9, 5)),
    )
    return "comp-1"


# =============================================================================
# API FIXTURES
# =============================================================================

@pytest.fixture
def api_db():
    """Reset the tables behind the application's own SessionLocal."""
    from app.db.session import SessionLocal, engine
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield SessionLocal


@pytest.fixture
def client(api_db, monkeypatch):
    """TestClient without startup hooks, with the Redis cache stubbed out."""
    from fastapi.testclient import TestClient
    from app.main import app
    from app.services.leaderboard import leaderboard_service

    cache = MagicMock()
    cache.load.return_value = None
    monkeypatch.setattr(leaderboard_service, "cache", cache)
    return TestClient(app)


@pytest.fixture
def auth_header():
    from app.core.security import issue_token

    def _header(role: str = "superadmin", sub: str = "user-1") -> dict:
        return {"Authorization": f"Bearer {issue_token(sub, role)}"}

    return _header
