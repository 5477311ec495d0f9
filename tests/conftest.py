import os
import sys
import tempfile
from pathlib import Path

import pytest

BACKEND_PATH = Path(__file__).resolve().parent.parent / "backend"
if BACKEND_PATH.as_posix() not in sys.path:
    sys.path.insert(0, BACKEND_PATH.as_posix())

# core.config reads DATABASE_URL at import time; point it at a throwaway SQLite file.
_DB_DIR = Path(tempfile.mkdtemp(prefix="caseload-scheduler-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{(_DB_DIR / 'app.db').as_posix()}"
os.environ.setdefault("ENVIRONMENT", "test")

from sqlalchemy.orm import sessionmaker  # noqa: E402

import models  # noqa: E402,F401
from core.database import build_engine  # noqa: E402
from fakes import PROVIDER_ID, SCHOOL, InMemoryRepository  # noqa: E402
from models.base import Base  # noqa: E402
from scheduling.data_manager import SchedulingDataManager  # noqa: E402


@pytest.fixture
def repo():
    """Return an empty in-memory scheduling repository."""
    return InMemoryRepository()


@pytest.fixture
def build_manager(repo):
    """Return a factory for data managers initialized against ``repo``."""

    def _build(config=None, *, sleeps=None, clock=None):
        kwargs = {"sleep": sleeps.append if sleeps is not None else (lambda _seconds: None)}
        if clock is not None:
            kwargs["clock"] = clock
        dm = SchedulingDataManager(repo, config, **kwargs)
        dm.initialize(PROVIDER_ID, SCHOOL.school_site, school_district=SCHOOL.school_district)
        return dm

    return _build


@pytest.fixture
def sqlite_engine(tmp_path):
    """Return an engine for a fresh SQLite database with every table created."""
    engine = build_engine(f"sqlite:///{(tmp_path / 'scheduler.db').as_posix()}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def api_db():
    """Reset the application database and return a session bound to it."""
    from core.database import ENGINE, SessionLocal

    Base.metadata.drop_all(ENGINE)
    Base.metadata.create_all(ENGINE)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(api_db):
    from fastapi.testclient import TestClient

    from main import app

    with TestClient(app) as test_client:
        yield test_client
