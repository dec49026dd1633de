from engine.src.services.pipeline_parser import resolve, resolve_pipeline
from engine.src.services.executor import CancellationToken, StepExecutor
from engine.src.services.log_broadcaster import LogBroadcaster, Subscription
from engine.src.services.persistence import (
    PersistenceGateway,
    PipelineSource,
    SqlPersistenceGateway,
    SqlPipelineSource,
)
from engine.src.services.scheduler import BuildScheduler
from engine.src.services.status_cache import LiveStatusCache

__all__ = [
    "resolve",
    "resolve_pipeline",
    "CancellationToken",
    "StepExecutor",
    "LogBroadcaster",
    "Subscription",
    "PersistenceGateway",
    "PipelineSource",
    "SqlPersistenceGateway",
    "SqlPipelineSource",
    "BuildScheduler",
    "LiveStatusCache",
]
