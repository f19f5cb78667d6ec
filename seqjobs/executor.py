"""
Sequential step execution for one job.

Steps run strictly one after another. Each step's combined output is
appended to the transcript under a header naming the step and its command.
The first step that exits non-zero, times out, or cannot be launched ends
the job: later steps are not started and nothing is retried.
"""

import logging
import time
from pathlib import Path
from typing import Optional, Sequence

from seqjobs.compiler import PlannedCommand
from seqjobs.errors import ExecutionError, StepFailedError, StepTimeoutError
from seqjobs.runners import ToolRunner
from seqjobs.schemas import Tool
from seqjobs.utils import format_duration

logger = logging.getLogger(__name__)


class ExecutionResult:
    """Result of executing a job's commands."""

    def __init__(
        self,
        transcript: str,
        completed: list[str],
        success: bool,
        error: Optional[ExecutionError] = None,
    ):
        self.transcript = transcript
        self.completed = completed
        self.success = success
        self.error = error

    @property
    def failed_step(self) -> Optional[str]:
        return self.error.step_id if self.error else None


def _header(command: PlannedCommand) -> str:
    return f"=== [{command.step_id}] {command.command_line} ===\n"


class Executor:
    """
    Runs a plan through a ToolRunner.

    Usage:
        executor = Executor(runner=SubprocessRunner())
        result = executor.execute(Tool.MAGUS, plan, timeout=3600, cwd=job_dir)
    """

    def __init__(self, runner: ToolRunner):
        self._runner = runner

    @property
    def runner(self) -> ToolRunner:
        return self._runner

    def execute(
        self,
        tool: Tool,
        plan: Sequence[PlannedCommand],
        timeout: float,
        cwd: Optional[Path] = None,
    ) -> ExecutionResult:
        """
        Execute every command in order, stopping at the first failure.

        Args:
            tool: Tool the plan belongs to
            plan: Commands in compiled order
            timeout: Wall-clock budget in seconds for the whole plan
            cwd: Working directory for the processes

        Returns:
            ExecutionResult with the full transcript so far
        """
        parts: list[str] = []
        completed: list[str] = []
        deadline = time.monotonic() + timeout

        for command in plan:
            parts.append(_header(command))
            started = time.monotonic()
            remaining = deadline - started
            if remaining <= 0:
                expired = StepTimeoutError(command.step_id, timeout)
                parts.append(f"{expired.message}\n")
                logger.error(str(expired), extra={"event": "step_timeout", "metadata": {"step": command.step_id}})
                return ExecutionResult("".join(parts), completed, success=False, error=expired)
            try:
                output = self._runner.run(tool, command, remaining, cwd)
            except ExecutionError as e:
                parts.append(f"{e.message}\n")
                logger.error(str(e), extra={"event": "step_failed", "metadata": {"step": command.step_id}})
                return ExecutionResult("".join(parts), completed, success=False, error=e)

            parts.append(output.output)
            if output.output and not output.output.endswith("\n"):
                parts.append("\n")

            error: Optional[ExecutionError] = None
            if output.timed_out:
                error = StepTimeoutError(command.step_id, timeout)
            elif output.exit_code != 0:
                error = StepFailedError(command.step_id, output.exit_code)

            elapsed = format_duration(time.monotonic() - started)
            if error is not None:
                parts.append(f"{error.message}\n")
                logger.error(
                    f"{error} after {elapsed}",
                    extra={"event": "step_failed", "metadata": {"step": command.step_id}},
                )
                return ExecutionResult("".join(parts), completed, success=False, error=error)

            completed.append(command.step_id)
            logger.info(
                f"{command.step_id} finished in {elapsed}",
                extra={"event": "step_completed", "metadata": {"step": command.step_id}},
            )

        return ExecutionResult("".join(parts), completed, success=True)
