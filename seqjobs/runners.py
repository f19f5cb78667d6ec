"""
Tool runners - the only place seqjobs touches real processes.

- SubprocessRunner: runs the argv, captures stdout and stderr together,
  kills the process when its wall-clock budget runs out
- StubRunner: sleeps for a simulated runtime and returns a canned
  transcript without starting anything

The execution mode is resolved once when the worker starts; compiling and
command building are identical in both modes.
"""

import logging
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from seqjobs.compiler import PlannedCommand
from seqjobs.errors import ConfigError, StepLaunchError
from seqjobs.schemas import Tool

logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    REAL = "real"
    STUB = "stub"


@dataclass(frozen=True)
class StepOutput:
    """
    What one process produced.

    Attributes:
        exit_code: Process exit status (None when killed on timeout)
        output: Combined stdout and stderr
        timed_out: True if the process was killed at its deadline
    """
    exit_code: Optional[int]
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class ToolRunner(ABC):
    """Abstract base class for running one planned command."""

    mode: ExecutionMode

    @abstractmethod
    def run(
        self,
        tool: Tool,
        command: PlannedCommand,
        timeout: float,
        cwd: Optional[Path] = None,
    ) -> StepOutput:
        """
        Run one command to completion.

        Args:
            tool: Tool the command belongs to
            command: Step id and argv
            timeout: Wall-clock budget in seconds
            cwd: Working directory (the job directory)

        Returns:
            StepOutput; non-zero exits and timeouts are reported, not raised

        Raises:
            StepLaunchError: If the executable cannot be started
        """
        pass


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


class SubprocessRunner(ToolRunner):
    """Run commands as child processes."""

    mode = ExecutionMode.REAL

    def run(self, tool, command, timeout, cwd=None) -> StepOutput:
        logger.info(
            f"Running {command.step_id}: {command.command_line}",
            extra={"event": "step_started", "metadata": {"tool": tool.value, "step": command.step_id}},
        )
        try:
            result = subprocess.run(
                list(command.argv),
                cwd=str(cwd) if cwd else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run has already killed and reaped the child
            logger.error(
                f"{command.step_id} timed out after {timeout:g}s",
                extra={"event": "step_timeout", "metadata": {"step": command.step_id}},
            )
            return StepOutput(exit_code=None, output=_decode(e.output), timed_out=True)
        except OSError as e:
            raise StepLaunchError(
                command.step_id, f"could not start {command.argv[0]}: {e}", cause=e
            ) from e

        return StepOutput(exit_code=result.returncode, output=result.stdout or "")


# Simulated runtimes, in seconds
STUB_DELAYS: dict[Tool, float] = {
    Tool.MAGUS: 2.0,
    Tool.XTREE: 1.5,
}


class StubRunner(ToolRunner):
    """
    Pretend to run commands.

    Args:
        delay: Fixed simulated runtime; defaults to the per-tool STUB_DELAYS
    """

    mode = ExecutionMode.STUB

    def __init__(self, delay: Optional[float] = None):
        self.delay = delay

    def run(self, tool, command, timeout, cwd=None) -> StepOutput:
        delay = STUB_DELAYS[tool] if self.delay is None else self.delay
        if delay > 0:
            time.sleep(min(delay, timeout))
        lines = [
            f"{tool.display_name} stub execution",
            f"Step: {command.step_id}",
            f"Command: {command.command_line}",
            "",
            "script would be run here instead",
        ]
        return StepOutput(exit_code=0, output="\n".join(lines) + "\n")


def resolve_runner(mode: str, stub_delay: Optional[float] = None) -> ToolRunner:
    """
    Pick the runner for an execution mode.

    Raises:
        ConfigError: On an unknown mode
    """
    try:
        execution_mode = ExecutionMode(mode)
    except ValueError as e:
        raise ConfigError(f"Unknown execution mode: {mode!r} (expected 'real' or 'stub')") from e
    if execution_mode == ExecutionMode.STUB:
        return StubRunner(delay=stub_delay)
    return SubprocessRunner()
