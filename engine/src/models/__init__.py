from engine.src.models.build import (
    BuildStatus,
    StepStatus,
    FailureKind,
    StepDefinition,
    ResolvedPipeline,
    Pipeline,
    Build,
    BuildStep,
    StepOutcome,
    LogChunk,
    BuildDetail,
)

__all__ = [
    "BuildStatus",
    "StepStatus",
    "FailureKind",
    "StepDefinition",
    "ResolvedPipeline",
    "Pipeline",
    "Build",
    "BuildStep",
    "StepOutcome",
    "LogChunk",
    "BuildDetail",
]
