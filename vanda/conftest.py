# vanda/conftest.py
import sys
from pathlib import Path

import pytest

# Add repo root to PYTHONPATH so `vanda.*` imports resolve without install
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


# Fixed instant inside a billing period: 2026-03-15T12:00:00Z
MID_MARCH_MS = 1773576000000


@pytest.fixture(scope="function", autouse=True)
def db(tmp_path, monkeypatch):
    """
    Fresh SQLite database file per test.

    A file (not :memory:) so that worker threads in concurrency tests share it.
    """
    from vanda.core import database
    from vanda.features.metering.external import close_external_meter

    url = f"sqlite:///{tmp_path / 'vanda_test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    engine = database.init_engine(url)
    database.create_all_tables()
    yield engine
    database.drop_all_tables()
    engine.dispose()
    close_external_meter()


@pytest.fixture
def now_ms():
    return MID_MARCH_MS


@pytest.fixture
def settings_override(monkeypatch):
    """Patch attributes on the live settings object for one test."""
    from vanda.core.config import settings

    def _apply(**values):
        for key, value in values.items():
            monkeypatch.setattr(settings, key, value)
        return settings

    return _apply


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from vanda.main import app

    with TestClient(app) as test_client:
        yield test_client
