"""
Shared pytest configuration.

Environment defaults are set before ``aichat`` is imported so the module-level
settings / engine never point at a real Postgres or Gemini endpoint.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_APPLY_DB_MIGRATIONS", "false")
os.environ["GENKIT_API_KEY"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from aichat.routes import create_app  # noqa: E402

from tests.utils import FakeGenerationClient, install_test_db  # noqa: E402


@pytest.fixture()
def fake_generation_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture()
def app_with_test_db(tmp_path, fake_generation_client):
    app = create_app()
    session_factory, engine = install_test_db(app, tmp_path)
    app.state.generation_client = fake_generation_client
    yield app, session_factory
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture()
def client(app_with_test_db):
    app, _ = app_with_test_db
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def db_session(app_with_test_db):
    _, session_factory = app_with_test_db
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
