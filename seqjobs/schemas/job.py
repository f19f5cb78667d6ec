"""
Job schemas - submitted jobs and their status records.

A Job is written once at submission and never changed. Its JobStatus moves
through queued -> running -> done|error; done and error are terminal.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from seqjobs.errors import CorruptJobError, InvalidTransitionError


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Timestamps without an offset are taken as UTC.

    Raises:
        CorruptJobError: If the value is not a timestamp
    """
    if value is None:
        return None
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # Epoch milliseconds, as written by older job directories
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise CorruptJobError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Tool(str, Enum):
    """External analysis tools the worker knows how to run."""
    MAGUS = "magus"
    XTREE = "xtree"

    @property
    def display_name(self) -> str:
        return "MAGUS" if self is Tool.MAGUS else "XTree"


class Status(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.DONE, Status.ERROR)


# Legal next states for each status
TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.QUEUED: frozenset({Status.RUNNING}),
    Status.RUNNING: frozenset({Status.DONE, Status.ERROR}),
    Status.DONE: frozenset(),
    Status.ERROR: frozenset(),
}


@dataclass(frozen=True)
class Job:
    """
    Job metadata as stored in meta.json.

    Attributes:
        id: Globally unique, time-sortable job id
        tool: Which tool runs the job
        email: Notification recipient
        created_at: Submission time, used by the retention sweep
        mode: Optional tool mode (e.g. XTree ALIGN/BUILD)
    """
    id: str
    tool: Tool
    email: str
    created_at: datetime
    mode: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "id": self.id,
            "tool": self.tool.value,
            "email": self.email,
            "createdAt": self.created_at.isoformat(),
        }
        if self.mode is not None:
            result["mode"] = self.mode
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        try:
            return cls(
                id=data["id"],
                tool=Tool(data["tool"]),
                email=data.get("email", ""),
                created_at=_parse_time(data["createdAt"]),
                mode=data.get("mode"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptJobError(f"Malformed job metadata: {e}") from e


@dataclass(frozen=True)
class JobStatus:
    """
    Persisted status record (status.json).

    Attributes:
        status: Current lifecycle state
        started_at: Set when the worker claims the job
        finished_at: Set on done/error
        error: Failure message, only for error
        claimed_by: "pid@host" of the worker that claimed the job
    """
    status: Status = Status.QUEUED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    claimed_by: Optional[str] = None

    def transition(self, new: "JobStatus") -> "JobStatus":
        """
        Validate a move to `new` and return it.

        Raises:
            InvalidTransitionError: If the move is not queued -> running ->
                done|error
        """
        if new.status not in TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, new.status.value)
        return new

    @classmethod
    def running(cls, claimed_by: Optional[str] = None) -> "JobStatus":
        return cls(status=Status.RUNNING, started_at=_utcnow(), claimed_by=claimed_by)

    def done(self) -> "JobStatus":
        return replace(self, status=Status.DONE, finished_at=_utcnow(), error=None)

    def failed(self, message: str) -> "JobStatus":
        return replace(self, status=Status.ERROR, finished_at=_utcnow(), error=message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value}
        if self.started_at:
            result["startedAt"] = self.started_at.isoformat()
        if self.finished_at:
            result["finishedAt"] = self.finished_at.isoformat()
        if self.error is not None:
            result["error"] = self.error
        if self.claimed_by:
            result["claimedBy"] = self.claimed_by
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobStatus":
        try:
            return cls(
                status=Status(data["status"]),
                started_at=_parse_time(data.get("startedAt")),
                finished_at=_parse_time(data.get("finishedAt")),
                error=data.get("error"),
                claimed_by=data.get("claimedBy"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptJobError(f"Malformed status record: {e}") from e
