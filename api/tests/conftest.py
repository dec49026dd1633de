"""Fixtures for API tests: the app runs the real engine on a SQLite file."""

import pytest
import sqlalchemy
from fastapi.testclient import TestClient

from api.src.config import Settings
from api.src.main import create_app
from engine.src.models.db import PipelineRow

@pytest.fixture
def api_settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        redis_url="",
        step_timeout=30,
        build_timeout=0,
        cancel_grace_period=1.0,
        commit_retry_delay=0.01,
    )

@pytest.fixture
def client(api_settings):
    with TestClient(create_app(api_settings)) as client:
        yield client

@pytest.fixture
def add_pipeline(client, tmp_path):
    """Insert a pipeline row once the app has created its tables."""
    engine = sqlalchemy.create_engine(f"sqlite:///{tmp_path / 'api.db'}")

    def _add(config: str, is_active: bool = True) -> int:
        with engine.begin() as connection:
            result = connection.execute(
                sqlalchemy.insert(PipelineRow).values(
                    project_id=1, name="ci", config=config, is_active=is_active
                )
            )
            return result.inserted_primary_key[0]

    yield _add
    engine.dispose()
