"""
Step executor - runs one pipeline step as a local shell command.
"""

import asyncio
import codecs
import logging
import os
import signal
from typing import Awaitable, Callable, Optional

from engine.src.exceptions import CancellationError, ExecutionError
from engine.src.models.build import FailureKind, StepDefinition, StepOutcome, StepStatus

logger = logging.getLogger(__name__)

OutputSink = Callable[[str], Awaitable[None]]

class CancellationToken:
    """Cancellation signal shared by the scheduler and a running step."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Build canceled"):
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise CancellationError(self.reason)

    async def wait(self):
        await self._event.wait()

class StepExecutor:
    """
    Runs a step's command through a shell in its own process group.

    Output (stdout and stderr merged) is pushed to the sink chunk by chunk
    while the command runs. Cancellation and timeouts terminate the whole
    process group: SIGTERM first, SIGKILL after the grace period.
    """

    def __init__(
        self,
        shell: str = "/bin/sh",
        default_timeout: Optional[int] = 600,
        grace_period: float = 10.0,
        chunk_size: int = 4096,
        workdir: Optional[str] = None,
    ):
        self.shell = shell
        self.default_timeout = default_timeout
        self.grace_period = grace_period
        self.chunk_size = chunk_size
        self.workdir = workdir

    async def execute(
        self,
        step: StepDefinition,
        sink: OutputSink,
        token: CancellationToken,
    ) -> StepOutcome:
        """
        Execute a step and return its terminal outcome.
        Sink errors terminate the command and propagate to the caller.
        """
        try:
            token.raise_if_cancelled()
            process = await self._spawn(step)
        except CancellationError as e:
            return _canceled(e.reason)
        except ExecutionError as e:
            logger.error(f"Step {step.ordinal} ({step.name}) could not start: {e}")
            await sink(f"{e}\n")
            return StepOutcome(
                status=StepStatus.FAILED,
                failure=FailureKind.COMMAND,
                error=str(e),
            )

        timeout = step.timeout or self.default_timeout
        finished = asyncio.create_task(self._run_to_end(process, sink))
        cancelled = asyncio.create_task(token.wait())

        try:
            done, _ = await asyncio.wait(
                {finished, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            finished.cancel()
            raise
        finally:
            cancelled.cancel()

        if finished in done:
            if finished.exception() is not None:
                # The sink failed; stop the command before propagating
                await self._terminate(process)
                raise finished.exception()
            returncode = finished.result()
            if token.cancelled and returncode != 0:
                return _canceled(token.reason, returncode)
            if returncode == 0:
                return StepOutcome(status=StepStatus.SUCCESS, exit_code=0)
            return StepOutcome(
                status=StepStatus.FAILED,
                exit_code=returncode,
                failure=FailureKind.COMMAND,
                error=f"Command exited with status {returncode}",
            )

        await self._terminate(process)
        await self._drain(finished)

        if cancelled in done:
            logger.info(f"Step {step.ordinal} ({step.name}) canceled: {token.reason}")
            return _canceled(token.reason, process.returncode)

        logger.warning(f"Step {step.ordinal} ({step.name}) timed out after {timeout}s")
        return StepOutcome(
            status=StepStatus.FAILED,
            exit_code=process.returncode,
            failure=FailureKind.TIMEOUT,
            error=f"Step timed out after {timeout}s",
        )

    async def _spawn(self, step: StepDefinition) -> asyncio.subprocess.Process:
        env = dict(os.environ)
        env.update(step.env)

        try:
            return await asyncio.create_subprocess_exec(
                self.shell, "-c", step.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.workdir,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start '{step.command}': {e}") from e

    async def _run_to_end(self, process: asyncio.subprocess.Process, sink: OutputSink) -> int:
        await self._pump(process.stdout, sink)
        return await process.wait()

    async def _pump(self, stream: asyncio.StreamReader, sink: OutputSink):
        """Forward output to the sink until EOF."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        while True:
            data = await stream.read(self.chunk_size)
            if not data:
                break
            text = _printable(decoder.decode(data))
            if text:
                await sink(text)

        tail = _printable(decoder.decode(b"", final=True))
        if tail:
            await sink(tail)

    async def _drain(self, finished: asyncio.Task):
        """Let the pump flush what the terminated process left in the pipe."""
        try:
            await asyncio.wait_for(finished, timeout=self.grace_period)
        except asyncio.TimeoutError:
            # A process outside the group still holds the pipe open
            logger.warning("Output pipe still open after termination, dropping the rest")

    async def _terminate(self, process: asyncio.subprocess.Process):
        """SIGTERM the process group, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return

        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            return
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM, killing")

        _signal_group(process, signal.SIGKILL)
        await process.wait()

def _printable(text: str) -> str:
    # PostgreSQL text columns reject NUL
    return text.replace("\x00", "\ufffd")

def _signal_group(process: asyncio.subprocess.Process, signum: int):
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        pass

def _canceled(reason: Optional[str], exit_code: Optional[int] = None) -> StepOutcome:
    return StepOutcome(
        status=StepStatus.FAILED,
        exit_code=exit_code,
        failure=FailureKind.CANCELED,
        error=reason or "Build canceled",
    )
