"""
Build and step status state machine.

Every status change of a build or a step goes through this module. The
helpers return updated copies and never touch persistence; the scheduler
commits the copy and only then replaces its in-memory state.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from engine.src.exceptions import InvalidTransitionError
from engine.src.models.build import (
    Build,
    BuildStatus,
    BuildStep,
    FailureKind,
    StepOutcome,
    StepStatus,
)

TERMINAL_BUILD_STATUSES = frozenset({
    BuildStatus.SUCCESS,
    BuildStatus.FAILED,
    BuildStatus.CANCELED,
})

TERMINAL_STEP_STATUSES = frozenset({
    StepStatus.SUCCESS,
    StepStatus.FAILED,
    StepStatus.SKIPPED,
})

BUILD_TRANSITIONS = {
    BuildStatus.PENDING: {BuildStatus.RUNNING, BuildStatus.FAILED, BuildStatus.CANCELED},
    BuildStatus.RUNNING: {BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELED},
    BuildStatus.SUCCESS: set(),
    BuildStatus.FAILED: set(),
    BuildStatus.CANCELED: set(),
}

STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.SUCCESS, StepStatus.FAILED},
    StepStatus.SUCCESS: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}

def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def elapsed_seconds(started_at: datetime, finished_at: datetime) -> int:
    return int((finished_at - started_at).total_seconds())

def is_terminal_build(status: BuildStatus) -> bool:
    return status in TERMINAL_BUILD_STATUSES

def is_terminal_step(status: StepStatus) -> bool:
    return status in TERMINAL_STEP_STATUSES

def check_build_transition(current: BuildStatus, target: BuildStatus):
    if target not in BUILD_TRANSITIONS[current]:
        raise InvalidTransitionError("build", current.value, target.value)

def check_step_transition(current: StepStatus, target: StepStatus):
    if target not in STEP_TRANSITIONS[current]:
        raise InvalidTransitionError("step", current.value, target.value)

def derive_build_status(steps: Sequence[BuildStep]) -> BuildStatus:
    """Compute a build's status from the statuses of its steps."""
    statuses = [step.status for step in steps]

    failed = [step for step in steps if step.status == StepStatus.FAILED]
    if any(step.failure == FailureKind.CANCELED for step in failed):
        return BuildStatus.CANCELED
    if failed:
        return BuildStatus.FAILED

    if statuses and all(status == StepStatus.SUCCESS for status in statuses):
        return BuildStatus.SUCCESS

    if all(is_terminal_step(status) for status in statuses):
        # Skips without a failure only come from cancellation
        return BuildStatus.CANCELED

    if all(status == StepStatus.PENDING for status in statuses):
        return BuildStatus.PENDING

    return BuildStatus.RUNNING

def next_runnable_step(build: Build, steps: Sequence[BuildStep]) -> Optional[BuildStep]:
    """Return the step allowed to start next, if any."""
    if is_terminal_build(build.status):
        return None

    for step in sorted(steps, key=lambda s: s.step_order):
        if step.status == StepStatus.RUNNING:
            return None
        if step.status == StepStatus.PENDING:
            return step
    return None

def start_build(build: Build, now: datetime) -> Build:
    check_build_transition(build.status, BuildStatus.RUNNING)
    return build.model_copy(update={
        "status": BuildStatus.RUNNING,
        "started_at": now,
    })

def start_step(build: Build, steps: Sequence[BuildStep], step: BuildStep, now: datetime) -> BuildStep:
    """Move a step to running once every lower-ordinal step is terminal."""
    check_step_transition(step.status, StepStatus.RUNNING)

    runnable = next_runnable_step(build, steps)
    if runnable is None or runnable.step_order != step.step_order:
        raise InvalidTransitionError(
            "step",
            step.status.value,
            f"{StepStatus.RUNNING.value} (ordinal {step.step_order} is not next)",
        )
    if build.status != BuildStatus.RUNNING:
        raise InvalidTransitionError("step", step.status.value, f"running (build is {build.status.value})")

    return step.model_copy(update={
        "status": StepStatus.RUNNING,
        "started_at": now,
    })

def finish_step(step: BuildStep, outcome: StepOutcome, now: datetime) -> BuildStep:
    check_step_transition(step.status, outcome.status)
    return step.model_copy(update={
        "status": outcome.status,
        "exit_code": outcome.exit_code,
        "failure": outcome.failure,
        "error": outcome.error,
        "finished_at": now,
        "duration": elapsed_seconds(step.started_at, now),
    })

def skip_step(step: BuildStep, now: datetime) -> BuildStep:
    """Mark a step that never started as skipped."""
    check_step_transition(step.status, StepStatus.SKIPPED)
    return step.model_copy(update={
        "status": StepStatus.SKIPPED,
        "started_at": now,
        "finished_at": now,
        "duration": 0,
    })

def skip_remaining(steps: Sequence[BuildStep], now: datetime) -> List[BuildStep]:
    """Skipped copies of every pending step."""
    return [
        skip_step(step, now)
        for step in steps
        if step.status == StepStatus.PENDING
    ]

def finish_build(build: Build, steps: Sequence[BuildStep], now: datetime) -> Build:
    """Move a build to the terminal status implied by its steps."""
    status = derive_build_status(steps)
    if not is_terminal_build(status):
        raise InvalidTransitionError("build", build.status.value, f"{status.value} (steps not settled)")
    return _terminate_build(build, status, now)

def fail_build(build: Build, now: datetime, error: str) -> Build:
    """Infrastructure failure: mark the build failed whatever its steps say."""
    failed = _terminate_build(build, BuildStatus.FAILED, now)
    return failed.model_copy(update={"error": error})

def _terminate_build(build: Build, status: BuildStatus, now: datetime) -> Build:
    check_build_transition(build.status, status)
    started_at = build.started_at or now
    return build.model_copy(update={
        "status": status,
        "started_at": started_at,
        "finished_at": now,
        "duration": elapsed_seconds(started_at, now),
    })
