"""Shared fixtures for build engine tests."""

import pytest
import pytest_asyncio

from engine.src.config import Settings
from engine.src.db.database import create_engine, create_session_factory, init_db
from engine.src.models.db import PipelineRow
from engine.src.services.executor import StepExecutor
from engine.src.services.log_broadcaster import LogBroadcaster
from engine.src.services.persistence import SqlPersistenceGateway, SqlPipelineSource
from engine.src.services.scheduler import BuildScheduler

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Fast settings on a throwaway SQLite database."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        redis_url="",
        max_active_builds_per_pipeline=1,
        step_timeout=30,
        build_timeout=0,
        cancel_grace_period=1.0,
        commit_retries=2,
        commit_retry_delay=0.01,
        subscriber_buffer=100,
    )

@pytest_asyncio.fixture
async def db_engine(settings):
    engine = create_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)

@pytest.fixture
def gateway(session_factory) -> SqlPersistenceGateway:
    return SqlPersistenceGateway(session_factory)

@pytest.fixture
def add_pipeline(session_factory):
    """Insert a pipeline row and return its id."""

    async def _add(config: str, is_active: bool = True, name: str = "ci") -> int:
        async with session_factory() as session:
            async with session.begin():
                row = PipelineRow(project_id=1, name=name, config=config, is_active=is_active)
                session.add(row)
                await session.flush()
                return row.id

    return _add

@pytest_asyncio.fixture
async def make_scheduler(settings, gateway, session_factory):
    """Build schedulers with optional overrides; all are shut down afterwards."""
    created = []

    def _make(settings=settings, gateway=gateway, status_cache=None) -> BuildScheduler:
        executor = StepExecutor(
            default_timeout=settings.step_timeout,
            grace_period=settings.cancel_grace_period,
            chunk_size=settings.output_chunk_size,
        )
        scheduler = BuildScheduler(
            gateway=gateway,
            pipelines=SqlPipelineSource(session_factory),
            executor=executor,
            broadcaster=LogBroadcaster(gateway, settings.subscriber_buffer),
            settings=settings,
            status_cache=status_cache,
        )
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        await scheduler.shutdown()

@pytest.fixture
def scheduler(make_scheduler) -> BuildScheduler:
    return make_scheduler()
