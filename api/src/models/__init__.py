from api.src.models.run import (
    TriggerBuildRequest,
    BuildListResponse,
    BuildStatusResponse,
    StepLogResponse,
    BuildLogsResponse,
)

__all__ = [
    "TriggerBuildRequest",
    "BuildListResponse",
    "BuildStatusResponse",
    "StepLogResponse",
    "BuildLogsResponse",
]
