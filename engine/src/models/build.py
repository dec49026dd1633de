"""
Build execution models.
"""

from pydantic import BaseModel, ConfigDict
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

class BuildStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

class FailureKind(str, Enum):
    COMMAND = "command"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    INFRASTRUCTURE = "infrastructure"

class StepDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    ordinal: int
    env: Dict[str, str] = {}
    timeout: Optional[int] = None

class ResolvedPipeline(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    steps: List[StepDefinition]
    env: Dict[str, str] = {}
    concurrency: Optional[int] = None

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy stored on the build row."""
        return self.model_dump(mode="json")

class Pipeline(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    name: str
    config: str
    is_active: bool = True

class Build(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    pipeline_id: int
    branch: str
    commit: str = ""
    status: BuildStatus = BuildStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: Optional[int] = None
    trigger_by: int
    config: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None

class BuildStep(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    build_id: int
    name: str
    command: str
    status: StepStatus = StepStatus.PENDING
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration: Optional[int] = None
    step_order: int
    exit_code: Optional[int] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

class StepOutcome(BaseModel):
    """Terminal result of one step execution."""
    status: StepStatus
    exit_code: Optional[int] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCESS

    @property
    def canceled(self) -> bool:
        return self.failure == FailureKind.CANCELED

class LogChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    build_id: int
    step_id: int
    offset: int
    content: str

class BuildDetail(BaseModel):
    build: Build
    steps: List[BuildStep] = []
    live_status: Optional[str] = None
