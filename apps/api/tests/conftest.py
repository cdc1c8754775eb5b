"""
Pytest configuration and fixtures

Every test gets its own file-backed SQLite database (created from the models
and seeded like the initial migration), so tests are fully isolated and
concurrency tests can open several connections to the same store.
"""
import os
import sys
import tempfile
from uuid import uuid4

import pytest

# Settings are read at import time: configure the environment before any app import.
_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="practice-sync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_BOOTSTRAP_DIR, 'bootstrap.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-sync-tests-0123456789abcdef")
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["IDEMPOTENCY_CLAIM_ENABLED"] = "false"
os.environ["SYNC_BROADCAST_ASYNC"] = "false"
os.environ["LOG_FORMAT"] = "text"

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import insert  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from core.config import settings  # noqa: E402
from core.database import Base, create_db_engine, get_db  # noqa: E402
from core.security import create_access_token  # noqa: E402
from models import SyncSequence  # noqa: E402
from services.entity_store import GLOBAL_SEQUENCE  # noqa: E402


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """Fresh database with the sync schema and the 'global' counter seeded."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'sync.db'}")
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(insert(SyncSequence).values(name=GLOBAL_SEQUENCE, value=0))
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """
    Session on the per-test database.

    Whatever the test leaves uncommitted is rolled back; the database file is
    discarded with tmp_path either way.
    """
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def client(session_factory):
    """TestClient whose requests use the per-test database."""
    from main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def user_id():
    return f"user_{uuid4().hex[:12]}"


@pytest.fixture
def auth_headers(user_id):
    """Bearer token for user_id, as issued by the auth service."""
    token = create_access_token({"sub": user_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def broadcast_settings(monkeypatch):
    """Point the notifier at a fake endpoint; tests patch requests.post."""
    monkeypatch.setattr(settings, "SYNC_BROADCAST_URL", "https://realtime.test/broadcast")
    monkeypatch.setattr(settings, "SYNC_BROADCAST_SECRET", "broadcast-secret")
    monkeypatch.setattr(settings, "SYNC_BROADCAST_TIMEOUT_S", 2.0)
    monkeypatch.setattr(settings, "SYNC_BROADCAST_ASYNC", False)
    return settings
