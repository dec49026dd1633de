"""
Build scheduler - admits builds and drives their steps.

Each admitted build runs in its own asyncio task. Within a build, steps run
strictly in ordinal order and every status change goes through the state
machine and is committed to persistence before the in-memory copy is
replaced.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from functools import partial
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from engine.src.config import Settings
from engine.src.exceptions import (
    ConcurrencyLimitError,
    NotFoundError,
    PersistenceError,
)
from engine.src.models.build import (
    Build,
    BuildDetail,
    BuildStatus,
    BuildStep,
    FailureKind,
    LogChunk,
    StepDefinition,
    StepOutcome,
    StepStatus,
)
from engine.src.services import state_machine
from engine.src.services.executor import CancellationToken, StepExecutor
from engine.src.services.log_broadcaster import LogBroadcaster
from engine.src.services.persistence import PersistenceGateway, PipelineSource
from engine.src.services.pipeline_parser import resolve_pipeline
from engine.src.services.status_cache import LiveStatusCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELED_BY_OPERATOR = "Build canceled by operator"
ENGINE_SHUTDOWN = "Build canceled: engine shutting down"

@dataclass
class BuildHandle:
    """In-flight state of one executing build."""
    build: Build
    steps: List[BuildStep]
    definitions: List[StepDefinition]
    token: CancellationToken = field(default_factory=CancellationToken)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: Optional[asyncio.Task] = None

    @property
    def build_id(self) -> int:
        return self.build.id

    def replace_step(self, step: BuildStep):
        self.steps[step.step_order] = step

class BuildScheduler:
    def __init__(
        self,
        gateway: PersistenceGateway,
        pipelines: PipelineSource,
        executor: StepExecutor,
        broadcaster: LogBroadcaster,
        settings: Settings,
        status_cache: Optional[LiveStatusCache] = None,
    ):
        self.gateway = gateway
        self.pipelines = pipelines
        self.executor = executor
        self.broadcaster = broadcaster
        self.settings = settings
        self.status_cache = status_cache

        self._handles: Dict[int, BuildHandle] = {}
        self._admission_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._orphan_locks: Dict[int, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Trigger API
    # ------------------------------------------------------------------

    async def trigger(self, pipeline_id: int, branch: str, commit: str, actor_id: int) -> Build:
        """
        Create a build for a pipeline and start executing it.

        Raises NotFoundError, ConfigError or ConcurrencyLimitError before
        anything is persisted.
        """
        pipeline = await self.pipelines.get_pipeline(pipeline_id)
        if pipeline is None or not pipeline.is_active:
            raise NotFoundError("Pipeline", pipeline_id)

        resolved = resolve_pipeline(pipeline.config)
        limit = resolved.concurrency or self.settings.max_active_builds_per_pipeline

        async with self._admission_locks[pipeline_id]:
            active = await self.gateway.count_active_builds(pipeline_id)
            if active >= limit:
                logger.info(f"Rejected build of pipeline {pipeline_id}: {active}/{limit} active")
                raise ConcurrencyLimitError(pipeline_id, limit)

            build, steps = await self.gateway.create_build(
                Build(
                    pipeline_id=pipeline_id,
                    branch=branch,
                    commit=commit or "",
                    trigger_by=actor_id,
                    config=resolved.snapshot(),
                    created_at=state_machine.utcnow(),
                ),
                resolved.steps,
            )
            handle = BuildHandle(build=build, steps=steps, definitions=list(resolved.steps))
            self._handles[build.id] = handle
            handle.task = asyncio.create_task(self._run_build(handle), name=f"build-{build.id}")

        logger.info(
            f"Triggered build {build.id} of pipeline {pipeline_id} "
            f"({branch}@{commit or 'HEAD'}) with {len(steps)} steps"
        )
        await self._publish(build)
        return build

    async def cancel(self, build_id: int) -> Build:
        """
        Cancel a build and wait until it has settled.
        Cancelling a finished build is a no-op.
        """
        handle = self._handles.get(build_id)
        if handle is not None:
            logger.info(f"Canceling build {build_id}")
            handle.token.cancel(CANCELED_BY_OPERATOR)
            await asyncio.wait({handle.task})
            return handle.build

        build = await self.gateway.get_build(build_id)
        if build is None:
            raise NotFoundError("Build", build_id)
        if state_machine.is_terminal_build(build.status):
            return build

        return await self._cancel_orphan(build)

    async def get_status(self, build_id: int) -> BuildDetail:
        build = await self.gateway.get_build(build_id)
        if build is None:
            raise NotFoundError("Build", build_id)
        steps = await self.gateway.get_steps_by_build(build_id)

        live_status = None
        if self.status_cache is not None:
            live_status = await self.status_cache.get_status(build_id)

        return BuildDetail(build=build, steps=steps, live_status=live_status)

    async def list_builds(self, offset: int = 0, limit: int = 20) -> Tuple[List[Build], int]:
        """Builds of every pipeline, newest first, with the total count."""
        return await self.gateway.list_builds(offset, limit)

    async def list_pipeline_builds(self, pipeline_id: int, offset: int = 0, limit: int = 20) -> Tuple[List[Build], int]:
        return await self.gateway.list_by_pipeline(pipeline_id, offset, limit)

    async def stream_logs(self, build_id: int) -> AsyncIterator[LogChunk]:
        """
        Yield a build's output: what is already persisted, then live chunks
        until the build finishes.
        """
        subscription = self.broadcaster.subscribe(build_id)
        try:
            build = await self.gateway.get_build(build_id)
            if build is None:
                raise NotFoundError("Build", build_id)

            # Chunks appended while reading are in both places; offsets tell them apart
            persisted: Dict[int, int] = {}
            for step in await self.gateway.get_steps_by_build(build_id):
                persisted[step.id] = len(step.output)
                if step.output:
                    yield LogChunk(build_id=build_id, step_id=step.id, offset=0, content=step.output)

            if state_machine.is_terminal_build(build.status):
                return

            async for chunk in subscription:
                seen = persisted.get(chunk.step_id, 0)
                end = chunk.offset + len(chunk.content)
                if end <= seen:
                    continue
                if chunk.offset < seen:
                    chunk = chunk.model_copy(update={
                        "offset": seen,
                        "content": chunk.content[seen - chunk.offset:],
                    })
                yield chunk

            if subscription.overflowed:
                logger.warning(f"Log stream of build {build_id} fell behind and was disconnected")
        finally:
            subscription.close()

    async def wait(self, build_id: int) -> Build:
        """Wait for a build running in this process to finish."""
        handle = self._handles.get(build_id)
        if handle is not None:
            await asyncio.wait({handle.task})
            return handle.build

        build = await self.gateway.get_build(build_id)
        if build is None:
            raise NotFoundError("Build", build_id)
        return build

    def active_build_ids(self) -> List[int]:
        return list(self._handles)

    async def recover_orphaned_builds(self) -> List[Build]:
        """Fail builds a previous process left pending or running."""
        recovered = []
        for build in await self.gateway.list_active_builds():
            if build.id in self._handles:
                continue
            steps = await self.gateway.get_steps_by_build(build.id)
            handle = BuildHandle(build=build, steps=steps, definitions=[])
            await self._fail_infrastructure(handle, "Build interrupted by an engine restart")
            recovered.append(handle.build)

        if recovered:
            logger.warning(f"Marked {len(recovered)} orphaned build(s) as failed")
        return recovered

    async def shutdown(self):
        """Cancel every running build and wait for them to settle."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.token.cancel(ENGINE_SHUTDOWN)
        if handles:
            logger.info(f"Waiting for {len(handles)} build(s) to stop")
            await asyncio.wait({handle.task for handle in handles})

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_build(self, handle: BuildHandle):
        build_id = handle.build_id
        watchdog = None
        if self.settings.build_timeout > 0:
            watchdog = asyncio.get_running_loop().call_later(
                self.settings.build_timeout,
                handle.token.cancel,
                f"Build exceeded the maximum duration of {self.settings.build_timeout}s",
            )

        try:
            await self._drive(handle)
        except PersistenceError as e:
            logger.error(f"Build {build_id} lost its persistence: {e}")
            await self._fail_infrastructure(handle, f"Infrastructure failure: {e}")
        except Exception as e:
            logger.exception(f"Build {build_id} crashed")
            await self._fail_infrastructure(handle, f"Infrastructure failure: {e}")
        finally:
            if watchdog is not None:
                watchdog.cancel()
            self.broadcaster.close_build(build_id, [step.id for step in handle.steps])
            self._handles.pop(build_id, None)

        logger.info(f"Build {build_id} finished with status: {handle.build.status.value}")

    async def _drive(self, handle: BuildHandle):
        """Run the steps of a build in order until it reaches a terminal state."""
        for definition in handle.definitions:
            async with handle.lock:
                if handle.token.cancelled:
                    await self._settle(handle)
                    return

                now = state_machine.utcnow()
                if handle.build.status == BuildStatus.PENDING:
                    await self._save_build(handle, state_machine.start_build(handle.build, now))

                step = handle.steps[definition.ordinal]
                step = state_machine.start_step(handle.build, handle.steps, step, now)
                await self._save_step(handle, step)

            logger.info(f"Executing step {step.step_order} of build {handle.build_id}: {step.name}")
            sink = partial(self._commit, self.broadcaster.append, handle.build_id, step.id)
            outcome = await self.executor.execute(definition, sink, handle.token)
            self._log_outcome(handle, step, outcome)

            async with handle.lock:
                finished = state_machine.finish_step(handle.steps[step.step_order], outcome, state_machine.utcnow())
                await self._save_step(handle, finished)
                if not outcome.succeeded:
                    await self._settle(handle)
                    return

        async with handle.lock:
            await self._settle(handle)

    async def _settle(self, handle: BuildHandle):
        """Skip every pending step and move the build to its terminal status."""
        now = state_machine.utcnow()
        for step in state_machine.skip_remaining(handle.steps, now):
            await self._save_step(handle, step)
        await self._save_build(handle, state_machine.finish_build(handle.build, handle.steps, now))

    async def _fail_infrastructure(self, handle: BuildHandle, error: str):
        """
        Mark a build failed after persistence gave up. Steps are settled on a
        best-effort basis; the build row is always attempted.
        """
        async with handle.lock:
            if state_machine.is_terminal_build(handle.build.status):
                return

            now = state_machine.utcnow()
            for step in list(handle.steps):
                try:
                    if step.status == StepStatus.RUNNING:
                        outcome = StepOutcome(
                            status=StepStatus.FAILED,
                            failure=FailureKind.INFRASTRUCTURE,
                            error=error,
                        )
                        await self._save_step(handle, state_machine.finish_step(step, outcome, now))
                    elif step.status == StepStatus.PENDING:
                        await self._save_step(handle, state_machine.skip_step(step, now))
                except PersistenceError as e:
                    logger.error(f"Could not settle step {step.id} of build {handle.build_id}: {e}")

            failed = state_machine.fail_build(handle.build, now, error)
            try:
                await self._save_build(handle, failed)
            except PersistenceError as e:
                logger.error(f"Could not mark build {handle.build_id} as failed: {e}")
                handle.build = failed

    async def _cancel_orphan(self, build: Build) -> Build:
        """Cancel a build that has no executing task in this process."""
        lock = self._orphan_locks.setdefault(build.id, asyncio.Lock())
        try:
            async with lock:
                build = await self.gateway.get_build(build.id)
                if state_machine.is_terminal_build(build.status):
                    return build

                steps = await self.gateway.get_steps_by_build(build.id)
                handle = BuildHandle(build=build, steps=steps, definitions=[])
                now = state_machine.utcnow()
                outcome = StepOutcome(
                    status=StepStatus.FAILED,
                    failure=FailureKind.CANCELED,
                    error=CANCELED_BY_OPERATOR,
                )
                for step in steps:
                    if step.status == StepStatus.RUNNING:
                        await self._save_step(handle, state_machine.finish_step(step, outcome, now))
                await self._settle(handle)
        finally:
            # Later callers re-read the build and find it terminal
            if self._orphan_locks.get(build.id) is lock:
                del self._orphan_locks[build.id]

        logger.info(f"Canceled orphaned build {build.id}")
        return handle.build

    # ------------------------------------------------------------------
    # Commit helpers
    # ------------------------------------------------------------------

    async def _save_build(self, handle: BuildHandle, build: Build):
        await self._commit(self.gateway.update_build_status, build)
        handle.build = build
        await self._publish(build)

    async def _save_step(self, handle: BuildHandle, step: BuildStep):
        await self._commit(self.gateway.update_step_status, step)
        handle.replace_step(step)

    async def _commit(self, operation: Callable[..., Awaitable[T]], *args) -> T:
        """Run a persistence operation, retrying a bounded number of times."""
        attempts = self.settings.commit_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await operation(*args)
            except PersistenceError as e:
                if attempt == attempts:
                    raise
                logger.warning(f"Commit failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(self.settings.commit_retry_delay)

    async def _publish(self, build: Build):
        if self.status_cache is not None:
            await self.status_cache.publish(build)

    def _log_outcome(self, handle: BuildHandle, step: BuildStep, outcome: StepOutcome):
        if outcome.succeeded:
            logger.info(f"Step {step.step_order} ({step.name}) of build {handle.build_id} succeeded")
        else:
            logger.error(f"Step {step.step_order} ({step.name}) of build {handle.build_id} failed: {outcome.error}")
