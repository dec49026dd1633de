from pydantic import BaseModel, Field
from typing import Optional, List

from engine.src.models.build import Build, BuildStep

class TriggerBuildRequest(BaseModel):
    pipeline_id: int
    branch: str = Field(min_length=1)
    commit: str = ""
    actor_id: int

class BuildListResponse(BaseModel):
    items: List[Build]
    total: int
    offset: int
    limit: int

class BuildStatusResponse(BaseModel):
    build: Build
    steps: List[BuildStep] = []
    live_status: Optional[str] = None

class StepLogResponse(BaseModel):
    step_id: int
    name: str
    status: str
    output: str

class BuildLogsResponse(BaseModel):
    build_id: int
    status: str
    steps: List[StepLogResponse] = []
