"""
Persist builds and steps to the database.

The scheduler and the log broadcaster only talk to the PersistenceGateway
and PipelineSource protocols; SqlPersistenceGateway and SqlPipelineSource
are the SQLAlchemy implementations.
"""

import logging
from typing import List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from engine.src.exceptions import PersistenceError
from engine.src.models.build import (
    Build,
    BuildStatus,
    BuildStep,
    Pipeline,
    StepDefinition,
    StepStatus,
)
from engine.src.models.db import BuildRow, BuildStepRow, PipelineRow

logger = logging.getLogger(__name__)

ACTIVE_BUILD_STATUSES = (BuildStatus.PENDING.value, BuildStatus.RUNNING.value)

class PersistenceGateway(Protocol):
    async def create_build(
        self, build: Build, definitions: Sequence[StepDefinition]
    ) -> Tuple[Build, List[BuildStep]]: ...

    async def get_build(self, build_id: int) -> Optional[Build]: ...

    async def get_steps_by_build(self, build_id: int) -> List[BuildStep]: ...

    async def update_build_status(self, build: Build) -> None: ...

    async def update_step_status(self, step: BuildStep) -> None: ...

    async def append_step_output(self, step_id: int, chunk: str) -> None: ...

    async def list_by_pipeline(
        self, pipeline_id: int, offset: int, limit: int
    ) -> Tuple[List[Build], int]: ...

    async def list_builds(self, offset: int, limit: int) -> Tuple[List[Build], int]: ...

    async def count_active_builds(self, pipeline_id: int) -> int: ...

    async def list_active_builds(self) -> List[Build]: ...

class PipelineSource(Protocol):
    async def get_pipeline(self, pipeline_id: int) -> Optional[Pipeline]: ...

class SqlPersistenceGateway:
    """Build and step storage backed by SQLAlchemy asyncio sessions."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_build(
        self, build: Build, definitions: Sequence[StepDefinition]
    ) -> Tuple[Build, List[BuildStep]]:
        """Insert a build and all of its steps in one transaction."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    build_row = BuildRow(
                        pipeline_id=build.pipeline_id,
                        branch=build.branch,
                        commit=build.commit,
                        status=build.status.value,
                        trigger_by=build.trigger_by,
                        config=build.config,
                        created_at=build.created_at,
                    )
                    session.add(build_row)
                    await session.flush()

                    created = build.model_copy(update={"id": build_row.id})
                    steps = [
                        BuildStep(
                            build_id=created.id,
                            name=definition.name,
                            command=definition.command,
                            step_order=definition.ordinal,
                        )
                        for definition in definitions
                    ]
                    step_rows = [
                        BuildStepRow(
                            build_id=step.build_id,
                            name=step.name,
                            command=step.command,
                            status=step.status.value,
                            output=step.output,
                            step_order=step.step_order,
                        )
                        for step in steps
                    ]
                    session.add_all(step_rows)
                    await session.flush()

                    steps = [
                        step.model_copy(update={"id": row.id})
                        for step, row in zip(steps, step_rows)
                    ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create build: {e}") from e

        logger.info(f"Created build {created.id} with {len(steps)} steps")
        return created, steps

    async def get_build(self, build_id: int) -> Optional[Build]:
        try:
            async with self.session_factory() as session:
                row = await session.get(BuildRow, build_id)
                return Build.model_validate(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get build {build_id}: {e}") from e

    async def get_steps_by_build(self, build_id: int) -> List[BuildStep]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BuildStepRow)
                    .where(BuildStepRow.build_id == build_id)
                    .order_by(BuildStepRow.step_order)
                )
                return [BuildStep.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get steps of build {build_id}: {e}") from e

    async def update_build_status(self, build: Build) -> None:
        values = {
            "status": build.status.value,
            "started_at": build.started_at,
            "finished_at": build.finished_at,
            "duration": build.duration,
            "error": build.error,
        }
        await self._execute(
            update(BuildRow).where(BuildRow.id == build.id).values(**values),
            f"update build {build.id}",
        )
        logger.info(f"Updated build {build.id} status to {build.status.value}")

    async def update_step_status(self, step: BuildStep) -> None:
        """Write status, timestamps and exit info. Output is owned by append_step_output."""
        values = {
            "status": step.status.value,
            "started_at": step.started_at,
            "finished_at": step.finished_at,
            "duration": step.duration,
            "exit_code": step.exit_code,
            "failure": step.failure.value if step.failure else None,
            "error": step.error,
        }
        await self._execute(
            update(BuildStepRow).where(BuildStepRow.id == step.id).values(**values),
            f"update step {step.id}",
        )
        logger.debug(f"Updated step {step.step_order} of build {step.build_id} to {step.status.value}")

    async def append_step_output(self, step_id: int, chunk: str) -> None:
        await self._execute(
            update(BuildStepRow)
            .where(BuildStepRow.id == step_id)
            .values(output=BuildStepRow.output + chunk),
            f"append output to step {step_id}",
        )

    async def list_by_pipeline(
        self, pipeline_id: int, offset: int, limit: int
    ) -> Tuple[List[Build], int]:
        return await self._list(
            BuildRow.pipeline_id == pipeline_id, offset, limit, f"builds of pipeline {pipeline_id}"
        )

    async def list_builds(self, offset: int, limit: int) -> Tuple[List[Build], int]:
        return await self._list(None, offset, limit, "builds")

    async def _list(self, condition, offset: int, limit: int, what: str) -> Tuple[List[Build], int]:
        count_query = select(func.count(BuildRow.id))
        query = select(BuildRow)
        if condition is not None:
            count_query = count_query.where(condition)
            query = query.where(condition)

        try:
            async with self.session_factory() as session:
                total = await session.scalar(count_query)
                result = await session.execute(
                    query
                    .order_by(BuildRow.created_at.desc(), BuildRow.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                builds = [Build.model_validate(row) for row in result.scalars().all()]
                return builds, total or 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list {what}: {e}") from e

    async def count_active_builds(self, pipeline_id: int) -> int:
        try:
            async with self.session_factory() as session:
                count = await session.scalar(
                    select(func.count(BuildRow.id))
                    .where(BuildRow.pipeline_id == pipeline_id)
                    .where(BuildRow.status.in_(ACTIVE_BUILD_STATUSES))
                )
                return count or 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to count active builds: {e}") from e

    async def list_active_builds(self) -> List[Build]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(BuildRow)
                    .where(BuildRow.status.in_(ACTIVE_BUILD_STATUSES))
                    .order_by(BuildRow.id)
                )
                return [Build.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list active builds: {e}") from e

    async def _execute(self, statement, action: str):
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to {action}: {e}") from e

        if result.rowcount == 0:
            raise PersistenceError(f"Failed to {action}: row not found")

class SqlPipelineSource:
    """Read-only pipeline lookup."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_pipeline(self, pipeline_id: int) -> Optional[Pipeline]:
        try:
            async with self.session_factory() as session:
                row = await session.get(PipelineRow, pipeline_id)
                return Pipeline.model_validate(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get pipeline {pipeline_id}: {e}") from e
