"""
Vortexia build engine - logging setup and component wiring.
"""

import logging
import sys
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from engine.src.config import Settings, get_settings
from engine.src.db.database import create_engine, create_session_factory, init_db
from engine.src.services.executor import StepExecutor
from engine.src.services.log_broadcaster import LogBroadcaster
from engine.src.services.persistence import SqlPersistenceGateway, SqlPipelineSource
from engine.src.services.scheduler import BuildScheduler
from engine.src.services.status_cache import LiveStatusCache

logger = logging.getLogger(__name__)

def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)]
    )

@dataclass
class EngineRuntime:
    """Everything a front end needs to host the build engine."""
    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker
    scheduler: BuildScheduler
    status_cache: Optional[LiveStatusCache] = None

    async def start(self):
        await init_db(self.db_engine)
        await self.scheduler.recover_orphaned_builds()
        logger.info("Build engine started")

    async def stop(self):
        await self.scheduler.shutdown()
        if self.status_cache is not None:
            await self.status_cache.close()
        await self.db_engine.dispose()
        logger.info("Build engine stopped")

def build_runtime(settings: Optional[Settings] = None) -> EngineRuntime:
    """Create the scheduler and its collaborators from settings."""
    settings = settings or get_settings()

    db_engine = create_engine(settings.database_url)
    session_factory = create_session_factory(db_engine)
    gateway = SqlPersistenceGateway(session_factory)

    status_cache = None
    if settings.redis_url:
        status_cache = LiveStatusCache.from_url(settings.redis_url)
        logger.info(f"Redis URL: {settings.redis_url}")

    executor = StepExecutor(
        shell=settings.step_shell,
        default_timeout=settings.step_timeout,
        grace_period=settings.cancel_grace_period,
        chunk_size=settings.output_chunk_size,
        workdir=settings.workspace_dir,
    )
    scheduler = BuildScheduler(
        gateway=gateway,
        pipelines=SqlPipelineSource(session_factory),
        executor=executor,
        broadcaster=LogBroadcaster(gateway, settings.subscriber_buffer),
        settings=settings,
        status_cache=status_cache,
    )

    return EngineRuntime(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        scheduler=scheduler,
        status_cache=status_cache,
    )
