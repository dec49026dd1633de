from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from typing import List

from engine.src.models.build import Build, BuildStep
from engine.src.services.scheduler import BuildScheduler
from api.src.models.run import (
    TriggerBuildRequest,
    BuildListResponse,
    BuildStatusResponse,
    BuildLogsResponse,
    StepLogResponse,
)

router = APIRouter(tags=["builds"])

def get_scheduler(request: Request) -> BuildScheduler:
    return request.app.state.runtime.scheduler

@router.post("/builds", response_model=Build, status_code=201)
async def trigger_build(
    body: TriggerBuildRequest,
    scheduler: BuildScheduler = Depends(get_scheduler),
):
    """Trigger a new build of a pipeline."""
    return await scheduler.trigger(
        pipeline_id=body.pipeline_id,
        branch=body.branch,
        commit=body.commit,
        actor_id=body.actor_id,
    )

@router.get("/builds", response_model=BuildListResponse)
async def list_builds(
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    scheduler: BuildScheduler = Depends(get_scheduler),
):
    """List builds of every pipeline, newest first."""
    builds, total = await scheduler.list_builds(offset=offset, limit=limit)
    return BuildListResponse(items=builds, total=total, offset=offset, limit=limit)

@router.get("/builds/{build_id}", response_model=BuildStatusResponse)
async def get_build(build_id: int, scheduler: BuildScheduler = Depends(get_scheduler)):
    """Get a build with its steps."""
    detail = await scheduler.get_status(build_id)
    return BuildStatusResponse(**detail.model_dump())

@router.post("/builds/{build_id}/cancel", response_model=Build)
async def cancel_build(build_id: int, scheduler: BuildScheduler = Depends(get_scheduler)):
    """Cancel a build. Cancelling a finished build returns it unchanged."""
    return await scheduler.cancel(build_id)

@router.get("/builds/{build_id}/steps", response_model=List[BuildStep])
async def get_build_steps(build_id: int, scheduler: BuildScheduler = Depends(get_scheduler)):
    detail = await scheduler.get_status(build_id)
    return detail.steps

@router.get("/builds/{build_id}/logs", response_model=BuildLogsResponse)
async def get_build_logs(build_id: int, scheduler: BuildScheduler = Depends(get_scheduler)):
    """Get the persisted output of every step of a build."""
    detail = await scheduler.get_status(build_id)
    return BuildLogsResponse(
        build_id=build_id,
        status=detail.build.status.value,
        steps=[
            StepLogResponse(
                step_id=step.id,
                name=step.name,
                status=step.status.value,
                output=step.output,
            )
            for step in detail.steps
        ],
    )

@router.get("/builds/{build_id}/logs/stream")
async def stream_build_logs(build_id: int, scheduler: BuildScheduler = Depends(get_scheduler)):
    """Stream a build's output as plain text until the build finishes."""
    # Resolve the build up front so an unknown id is a 404, not a broken stream
    await scheduler.get_status(build_id)

    async def body():
        async for chunk in scheduler.stream_logs(build_id):
            yield chunk.content

    return StreamingResponse(body(), media_type="text/plain; charset=utf-8")

@router.get("/pipelines/{pipeline_id}/builds", response_model=BuildListResponse)
async def list_pipeline_builds(
    pipeline_id: int,
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    scheduler: BuildScheduler = Depends(get_scheduler),
):
    """List builds of a pipeline, newest first."""
    builds, total = await scheduler.list_pipeline_builds(pipeline_id, offset=offset, limit=limit)
    return BuildListResponse(items=builds, total=total, offset=offset, limit=limit)
