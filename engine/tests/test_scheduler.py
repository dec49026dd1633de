"""Integration tests for the build scheduler (SQLite + real shell commands)."""

import asyncio
from datetime import datetime

import pytest
import redis.asyncio as redis
import yaml

from engine.src.exceptions import (
    ConcurrencyLimitError,
    ConfigError,
    NotFoundError,
    PersistenceError,
)
from engine.src.models.build import Build, BuildStatus, FailureKind, StepDefinition, StepStatus
from engine.src.services.scheduler import CANCELED_BY_OPERATOR, ENGINE_SHUTDOWN
from engine.src.services.status_cache import LiveStatusCache

def pipeline_config(*commands, **extra) -> str:
    config = dict(extra)
    config["steps"] = [{"name": f"step-{i}", "command": c} for i, c in enumerate(commands)]
    return yaml.safe_dump(config)

async def wait_for_output(gateway, build_id, needle, step_order=0, timeout=5.0):
    async def _poll():
        while True:
            steps = await gateway.get_steps_by_build(build_id)
            if needle in steps[step_order].output:
                return
            await asyncio.sleep(0.02)
    await asyncio.wait_for(_poll(), timeout)

class FlakyGateway:
    """Wraps the real gateway and fails selected operations."""

    def __init__(self, gateway, failures):
        self._gateway = gateway
        self.failures = dict(failures)

    def __getattr__(self, name):
        operation = getattr(self._gateway, name)

        async def _call(*args, **kwargs):
            remaining = self.failures.get(name, 0)
            if remaining:
                self.failures[name] = remaining - 1
                raise PersistenceError(f"{name} unavailable")
            return await operation(*args, **kwargs)

        return _call

class FakeRedis:
    def __init__(self):
        self.data = {}

    async def hset(self, key, field, value):
        self.data.setdefault(key, {})[field] = value

    async def hget(self, key, field):
        return self.data.get(key, {}).get(field)

class BrokenRedis:
    async def hset(self, key, field, value):
        raise redis.ConnectionError("redis is down")

    async def hget(self, key, field):
        raise redis.ConnectionError("redis is down")

class TestExecution:
    @pytest.mark.asyncio
    async def test_all_steps_succeed(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("echo build", "echo test"))

        build = await scheduler.trigger(pipeline_id, "main", "abc123", actor_id=7)
        assert build.status == BuildStatus.PENDING
        assert build.config["steps"][0]["command"] == "echo build"

        finished = await scheduler.wait(build.id)
        assert finished.status == BuildStatus.SUCCESS

        detail = await scheduler.get_status(build.id)
        assert detail.build.status == BuildStatus.SUCCESS
        assert [s.status for s in detail.steps] == [StepStatus.SUCCESS, StepStatus.SUCCESS]
        assert [s.output for s in detail.steps] == ["build\n", "test\n"]
        assert detail.build.started_at <= detail.steps[0].started_at
        assert detail.steps[0].finished_at <= detail.steps[1].started_at
        assert detail.build.duration == int(
            (detail.build.finished_at - detail.build.started_at).total_seconds()
        )

    @pytest.mark.asyncio
    async def test_failure_skips_remaining_steps(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(
            pipeline_config("echo a", "echo oops; exit 2", "echo c")
        )

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await scheduler.wait(build.id)

        detail = await scheduler.get_status(build.id)
        assert detail.build.status == BuildStatus.FAILED
        a, b, c = detail.steps
        assert a.status == StepStatus.SUCCESS
        assert b.status == StepStatus.FAILED
        assert b.exit_code == 2
        assert b.failure == FailureKind.COMMAND
        assert b.output == "oops\n"
        assert c.status == StepStatus.SKIPPED
        assert c.output == ""
        assert c.duration == 0

    @pytest.mark.asyncio
    async def test_step_timeout_fails_build(self, scheduler, add_pipeline):
        config = yaml.safe_dump({"steps": [{"command": "sleep 30", "timeout": 1}, {"command": "true"}]})
        pipeline_id = await add_pipeline(config)

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await asyncio.wait_for(scheduler.wait(build.id), timeout=10)

        detail = await scheduler.get_status(build.id)
        assert detail.build.status == BuildStatus.FAILED
        assert detail.steps[0].failure == FailureKind.TIMEOUT
        assert detail.steps[1].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_build_timeout_cancels(self, make_scheduler, settings, add_pipeline):
        scheduler = make_scheduler(settings=settings.model_copy(update={"build_timeout": 1}))
        pipeline_id = await add_pipeline(pipeline_config("sleep 30", "echo never"))

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        finished = await asyncio.wait_for(scheduler.wait(build.id), timeout=10)

        assert finished.status == BuildStatus.CANCELED
        steps = (await scheduler.get_status(build.id)).steps
        assert steps[0].failure == FailureKind.CANCELED
        assert "maximum duration" in steps[0].error
        assert steps[1].status == StepStatus.SKIPPED

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_running_build(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(
            pipeline_config("echo started; sleep 30", "echo b", "echo c")
        )
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await wait_for_output(gateway, build.id, "started")

        canceled = await asyncio.wait_for(scheduler.cancel(build.id), timeout=10)
        assert canceled.status == BuildStatus.CANCELED

        detail = await scheduler.get_status(build.id)
        assert detail.build.status == BuildStatus.CANCELED
        a, b, c = detail.steps
        assert a.status == StepStatus.FAILED
        assert a.failure == FailureKind.CANCELED
        assert a.error == CANCELED_BY_OPERATOR
        assert a.output == "started\n"
        assert b.status == c.status == StepStatus.SKIPPED
        assert scheduler.active_build_ids() == []

    @pytest.mark.asyncio
    async def test_cancel_finished_build_is_noop(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("true"))
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        finished = await scheduler.wait(build.id)

        again = await scheduler.cancel(build.id)
        assert again.status == BuildStatus.SUCCESS
        assert again.finished_at == finished.finished_at

    @pytest.mark.asyncio
    async def test_cancel_unknown_build(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.cancel(404)

    @pytest.mark.asyncio
    async def test_cancel_twice_concurrently(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("echo started; sleep 30", "echo b"))
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await wait_for_output(gateway, build.id, "started")

        first, second = await asyncio.wait_for(
            asyncio.gather(scheduler.cancel(build.id), scheduler.cancel(build.id)), timeout=10
        )
        assert first.status == second.status == BuildStatus.CANCELED

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_builds(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("echo started; sleep 30"))
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await wait_for_output(gateway, build.id, "started")

        await asyncio.wait_for(scheduler.shutdown(), timeout=10)

        detail = await scheduler.get_status(build.id)
        assert detail.build.status == BuildStatus.CANCELED
        assert detail.steps[0].error == ENGINE_SHUTDOWN

class TestAdmission:
    @pytest.mark.asyncio
    async def test_missing_or_inactive_pipeline(self, scheduler, add_pipeline):
        with pytest.raises(NotFoundError):
            await scheduler.trigger(999, "main", "", actor_id=7)

        pipeline_id = await add_pipeline(pipeline_config("true"), is_active=False)
        with pytest.raises(NotFoundError):
            await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

    @pytest.mark.asyncio
    async def test_invalid_config_creates_nothing(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline("")

        with pytest.raises(ConfigError):
            await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

        builds, total = await scheduler.list_pipeline_builds(pipeline_id)
        assert (builds, total) == ([], 0)

    @pytest.mark.asyncio
    async def test_empty_step_list_creates_nothing(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline("steps: []\n")

        with pytest.raises(ConfigError, match="at least one step"):
            await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

        assert await scheduler.list_builds() == ([], 0)
        assert await gateway.count_active_builds(pipeline_id) == 0

    @pytest.mark.asyncio
    async def test_list_builds_across_pipelines(self, scheduler, add_pipeline):
        first_pipeline = await add_pipeline(pipeline_config("true"), name="frontend")
        second_pipeline = await add_pipeline(pipeline_config("true"), name="backend")

        first = await scheduler.trigger(first_pipeline, "main", "", actor_id=7)
        second = await scheduler.trigger(second_pipeline, "main", "", actor_id=7)
        await scheduler.wait(first.id)
        await scheduler.wait(second.id)

        builds, total = await scheduler.list_builds()
        assert total == 2
        assert [b.id for b in builds] == [second.id, first.id]

        builds, total = await scheduler.list_builds(offset=1, limit=1)
        assert total == 2
        assert [b.id for b in builds] == [first.id]

    @pytest.mark.asyncio
    async def test_rejected_at_ceiling(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("echo started; sleep 30"))
        first = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

        with pytest.raises(ConcurrencyLimitError):
            await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

        _, total = await scheduler.list_pipeline_builds(pipeline_id)
        assert total == 1

        await scheduler.cancel(first.id)
        second = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_simultaneous_triggers_respect_ceiling(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("sleep 30"))

        results = await asyncio.gather(
            scheduler.trigger(pipeline_id, "main", "", actor_id=7),
            scheduler.trigger(pipeline_id, "main", "", actor_id=8),
            return_exceptions=True,
        )

        admitted = [r for r in results if isinstance(r, Build)]
        rejected = [r for r in results if isinstance(r, ConcurrencyLimitError)]
        assert len(admitted) == 1
        assert len(rejected) == 1

    @pytest.mark.asyncio
    async def test_pipeline_concurrency_override(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("sleep 30", concurrency=2))

        await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        with pytest.raises(ConcurrencyLimitError):
            await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

    @pytest.mark.asyncio
    async def test_pipelines_run_in_parallel(self, scheduler, add_pipeline):
        first_pipeline = await add_pipeline(pipeline_config("sleep 1"), name="frontend")
        second_pipeline = await add_pipeline(pipeline_config("sleep 1"), name="backend")

        first, second = await asyncio.gather(
            scheduler.trigger(first_pipeline, "main", "", actor_id=7),
            scheduler.trigger(second_pipeline, "main", "", actor_id=7),
        )
        first, second = await asyncio.gather(scheduler.wait(first.id), scheduler.wait(second.id))

        assert first.status == second.status == BuildStatus.SUCCESS
        assert second.started_at < first.finished_at
        assert first.started_at < second.finished_at

class TestLogStreaming:
    @pytest.mark.asyncio
    async def test_live_stream_matches_persisted_output(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config(
            "echo one; sleep 0.2; echo two",
            "echo three; sleep 0.2; echo four",
        ))
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)

        chunks = await asyncio.wait_for(_collect(scheduler.stream_logs(build.id)), timeout=10)

        steps = (await scheduler.get_status(build.id)).steps
        assert "".join(c.content for c in chunks) == "one\ntwo\nthree\nfour\n"
        for step in steps:
            assert "".join(c.content for c in chunks if c.step_id == step.id) == step.output

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_full_output(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("echo one; sleep 0.3; echo two; sleep 0.3; echo three"))
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await wait_for_output(gateway, build.id, "one")

        chunks = await asyncio.wait_for(_collect(scheduler.stream_logs(build.id)), timeout=10)

        assert "".join(c.content for c in chunks) == "one\ntwo\nthree\n"
        offsets = [c.offset for c in chunks]
        assert offsets == sorted(offsets)

    @pytest.mark.asyncio
    async def test_stream_of_finished_build(self, scheduler, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("echo done"))
        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await scheduler.wait(build.id)

        chunks = await _collect(scheduler.stream_logs(build.id))
        assert [c.content for c in chunks] == ["done\n"]
        assert scheduler.broadcaster.subscriber_count(build.id) == 0

    @pytest.mark.asyncio
    async def test_stream_of_unknown_build(self, scheduler):
        with pytest.raises(NotFoundError):
            await _collect(scheduler.stream_logs(404))
        assert scheduler.broadcaster.subscriber_count(404) == 0

class TestPersistenceFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_scheduler, gateway, add_pipeline):
        flaky = FlakyGateway(gateway, {"update_step_status": 1, "append_step_output": 2})
        scheduler = make_scheduler(gateway=flaky)
        pipeline_id = await add_pipeline(pipeline_config("echo hi"))

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        finished = await scheduler.wait(build.id)

        assert finished.status == BuildStatus.SUCCESS
        steps = await gateway.get_steps_by_build(build.id)
        assert steps[0].output == "hi\n"

    @pytest.mark.asyncio
    async def test_persistent_failure_fails_build(self, make_scheduler, gateway, add_pipeline):
        flaky = FlakyGateway(gateway, {"append_step_output": 100})
        scheduler = make_scheduler(gateway=flaky)
        pipeline_id = await add_pipeline(pipeline_config("echo hi; sleep 30", "echo next"))

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        finished = await asyncio.wait_for(scheduler.wait(build.id), timeout=10)

        assert finished.status == BuildStatus.FAILED
        assert finished.error.startswith("Infrastructure failure")

        steps = await gateway.get_steps_by_build(build.id)
        assert steps[0].status == StepStatus.FAILED
        assert steps[0].failure == FailureKind.INFRASTRUCTURE
        assert steps[1].status == StepStatus.SKIPPED
        assert (await gateway.get_build(build.id)).status == BuildStatus.FAILED

class TestOrphans:
    async def _orphan(self, gateway, pipeline_id):
        build, steps = await gateway.create_build(
            Build(pipeline_id=pipeline_id, branch="main", trigger_by=7, created_at=datetime(2026, 1, 1)),
            [StepDefinition(name=n, command="true", ordinal=i) for i, n in enumerate(["a", "b"])],
        )
        now = datetime(2026, 1, 1, 0, 0, 5)
        await gateway.update_build_status(build.model_copy(update={"status": BuildStatus.RUNNING, "started_at": now}))
        await gateway.update_step_status(steps[0].model_copy(update={"status": StepStatus.RUNNING, "started_at": now}))
        return build.id

    @pytest.mark.asyncio
    async def test_recover_orphaned_builds(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("true"))
        build_id = await self._orphan(gateway, pipeline_id)

        recovered = await scheduler.recover_orphaned_builds()

        assert [b.id for b in recovered] == [build_id]
        build = await gateway.get_build(build_id)
        assert build.status == BuildStatus.FAILED
        assert "engine restart" in build.error
        steps = await gateway.get_steps_by_build(build_id)
        assert steps[0].failure == FailureKind.INFRASTRUCTURE
        assert steps[1].status == StepStatus.SKIPPED
        assert await gateway.count_active_builds(pipeline_id) == 0

    @pytest.mark.asyncio
    async def test_cancel_orphaned_build(self, scheduler, gateway, add_pipeline):
        pipeline_id = await add_pipeline(pipeline_config("true"))
        build_id = await self._orphan(gateway, pipeline_id)

        canceled = await scheduler.cancel(build_id)

        assert canceled.status == BuildStatus.CANCELED
        assert scheduler._orphan_locks == {}
        steps = await gateway.get_steps_by_build(build_id)
        assert steps[0].failure == FailureKind.CANCELED
        assert steps[1].status == StepStatus.SKIPPED

class TestLiveStatusCache:
    @pytest.mark.asyncio
    async def test_status_is_mirrored(self, make_scheduler, add_pipeline):
        client = FakeRedis()
        scheduler = make_scheduler(status_cache=LiveStatusCache(client))
        pipeline_id = await add_pipeline(pipeline_config("true"))

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        await scheduler.wait(build.id)

        detail = await scheduler.get_status(build.id)
        assert detail.live_status == "success"
        assert client.data["vortexia:status"][str(build.id)] == "success"

    @pytest.mark.asyncio
    async def test_cache_errors_are_ignored(self, make_scheduler, add_pipeline):
        scheduler = make_scheduler(status_cache=LiveStatusCache(BrokenRedis()))
        pipeline_id = await add_pipeline(pipeline_config("true"))

        build = await scheduler.trigger(pipeline_id, "main", "", actor_id=7)
        finished = await scheduler.wait(build.id)

        assert finished.status == BuildStatus.SUCCESS
        assert (await scheduler.get_status(build.id)).live_status is None

async def _collect(stream):
    return [chunk async for chunk in stream]
