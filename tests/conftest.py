import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from taskbridge.config import get_settings
from taskbridge.db import init_db


@pytest.fixture(autouse=True)
def settings_tmp(tmp_path, monkeypatch):
    """Isolate settings per test run."""
    path = tmp_path / "settings.yml"
    path.write_text(
        """
app:
  name: "Taskbridge"
  timezone: "America/Bogota"
security:
  api_token: ""
database:
  path: "{db}"
sweep:
  lock_timeout_seconds: 0.5
logging:
  level: "INFO"
  file_enabled: false
""".format(db=str(tmp_path / "test.db")).lstrip()
    )
    monkeypatch.setenv("TASKBRIDGE_SETTINGS", str(path))
    monkeypatch.delenv("TASKBRIDGE_API_TOKEN", raising=False)
    monkeypatch.delenv("TASKBRIDGE_REMOTE_URL", raising=False)
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


def make_engine(db_path: str):
    engine = create_engine(
        f"sqlite+pysqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(str(tmp_path / "store.db"))
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    s = SessionLocal()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)
