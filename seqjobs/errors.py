"""
Error classes for seqjobs.

Errors fall into three groups that the worker treats differently:
- Compile/validation errors: the job is rejected before it ever runs
- ExecutionError: a step failed, timed out, or could not be launched;
  the job is marked 'error' and the remaining steps are skipped
- JobStoreError: the job directory or queue is missing or malformed;
  the worker logs and skips the job

There is no retry classification. A failed step is never re-run.
"""

from typing import Optional


class SeqJobsError(Exception):
    """Base exception for seqjobs."""
    pass


class ConfigError(SeqJobsError):
    """Configuration validation error."""
    pass


class CompileError(SeqJobsError):
    """Raised when a workflow cannot be compiled into runnable steps."""
    pass


class DependencyCycleError(SeqJobsError):
    """Raised when dependency rules reference unknown stages or form a cycle."""
    pass


class ExecutionError(SeqJobsError):
    """
    A step did not complete successfully.

    Attributes:
        step_id: The step that failed
        message: Human-readable reason, stored as the job's error message
        cause: Underlying exception, if any
    """

    def __init__(self, step_id: str, message: str, cause: Optional[Exception] = None):
        self.step_id = step_id
        self.message = message
        self.cause = cause
        super().__init__(f"Step '{step_id}' failed: {message}")


class StepFailedError(ExecutionError):
    """The step's process exited with a non-zero code."""

    def __init__(self, step_id: str, exit_code: int):
        self.exit_code = exit_code
        super().__init__(step_id, f"exited with code {exit_code}")


class StepLaunchError(ExecutionError):
    """The step's executable could not be started."""
    pass


class StepTimeoutError(ExecutionError):
    """The step exceeded its wall-clock budget and was killed."""

    def __init__(self, step_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(step_id, f"timed out after {timeout:g}s and was killed")


class JobStoreError(SeqJobsError):
    """Base error for job directory and queue problems."""
    pass


class JobNotFoundError(JobStoreError):
    """Raised when a job id has no job directory."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class CorruptJobError(JobStoreError):
    """Raised when a job's metadata files are unreadable or malformed."""
    pass


class InvalidTransitionError(JobStoreError):
    """Raised on a status change outside queued -> running -> done|error."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition: {current} -> {requested}")


class LockHeldError(SeqJobsError):
    """Raised when the execution lock is already held."""
    pass


class NotificationError(SeqJobsError):
    """Raised by notifiers when a message could not be delivered."""
    pass


class SubmissionError(SeqJobsError):
    """Raised when a submission is rejected before a job is created."""
    pass
