"""
JobStore - persistence for jobs, their status, and the FIFO queue.

The JobStore owns:
- Job metadata (meta.json), written once at submission
- Parameters (params.json), written once at submission
- Status records (status.json), moved forward only by the worker
- The queue of job ids (queue.json), FIFO

Storage backends:
- In-memory (for testing)
- File-based (one directory per job under a jobs root)

Queue operations on the file backend hold an exclusive advisory lock on
queue.lock for the whole read-modify-write, and replace queue.json
atomically, so concurrent enqueue/dequeue never lose or duplicate an id.
"""

import fcntl
import json
import logging
import os
import secrets
import shutil
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from seqjobs.errors import CorruptJobError, JobNotFoundError, JobStoreError
from seqjobs.schemas import Job, JobStatus, Status, Tool

logger = logging.getLogger(__name__)


META_FILE = "meta.json"
PARAMS_FILE = "params.json"
STATUS_FILE = "status.json"
TRANSCRIPT_FILE = "stdout.log"
COMMANDS_FILE = "command.txt"
ABANDONED_FILE = "abandoned.txt"
INPUT_DIR = "input"
MAPPING_DIR = "mapping"
QUEUE_FILE = "queue.json"
QUEUE_LOCK_FILE = "queue.lock"

# Crockford's Base32 alphabet (excludes I, L, O, U)
_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    26 characters: 48 bits of millisecond timestamp followed by 80 bits
    from the OS random source, both Crockford Base32 encoded.
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(_ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(secrets.choice(_ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore(ABC):
    """Abstract base class for job storage."""

    @abstractmethod
    def create_job(
        self,
        tool: Tool,
        email: str,
        params: dict[str, Any],
        input_file: Path,
        mode: Optional[str] = None,
        mapping_file: Optional[Path] = None,
    ) -> str:
        """
        Persist a new job with status queued.

        Args:
            tool: Tool that will run the job
            email: Notification recipient
            params: Parsed parameters, stored verbatim
            input_file: Already validated input sequence file
            mode: Optional tool mode recorded in metadata
            mapping_file: Optional secondary input (XTree BUILD mapping)

        Returns:
            The new job id
        """
        pass

    @abstractmethod
    def enqueue(self, job_id: str) -> None:
        """Append a job id to the tail of the queue."""
        pass

    @abstractmethod
    def dequeue(self) -> Optional[str]:
        """Remove and return the head of the queue, or None when empty."""
        pass

    @abstractmethod
    def queue_snapshot(self) -> list[str]:
        """Current queue contents, head first."""
        pass

    @abstractmethod
    def list_jobs(self) -> list[str]:
        """All stored job ids, oldest first."""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Job:
        pass

    @abstractmethod
    def get_params(self, job_id: str) -> dict[str, Any]:
        pass

    @abstractmethod
    def get_status(self, job_id: str) -> JobStatus:
        pass

    @abstractmethod
    def _write_status(self, job_id: str, status: JobStatus) -> None:
        pass

    @abstractmethod
    def input_path(self, job_id: str) -> Path:
        """Location of the job's input sequence file."""
        pass

    @abstractmethod
    def mapping_path(self, job_id: str) -> Optional[Path]:
        pass

    @abstractmethod
    def write_transcript(self, job_id: str, transcript: str) -> None:
        pass

    @abstractmethod
    def read_transcript(self, job_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def write_commands(self, job_id: str, commands: list[str]) -> None:
        """Record the exact command lines used, one per line."""
        pass

    @abstractmethod
    def read_commands(self, job_id: str) -> Optional[list[str]]:
        pass

    @abstractmethod
    def mark_abandoned(self, job_id: str, reason: str) -> None:
        """
        Record that the worker gave up on a queued job without running it.

        The status stays queued; the marker is what tells an operator the
        job will never run.
        """
        pass

    @abstractmethod
    def abandoned_reason(self, job_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def purge(self, job_id: str) -> None:
        """Delete everything stored for a job. Missing jobs are ignored."""
        pass

    def set_status(self, job_id: str, status: JobStatus) -> JobStatus:
        """
        Move a job to a new status.

        Only running, done and error may be written, and only along
        queued -> running -> done|error.

        Raises:
            InvalidTransitionError: On any other transition
            JobNotFoundError: If the job does not exist
        """
        current = self.get_status(job_id)
        current.transition(status)
        self._write_status(job_id, status)
        logger.info(
            f"Job {job_id}: {current.status.value} -> {status.status.value}",
            extra={"job_id": job_id, "event": f"status_{status.status.value}"},
        )
        return status

    def work_dir(self, job_id: str) -> Optional[Path]:
        """Directory tool processes run in, or None for the current directory."""
        return None

    def _created_at(self, job_id: str) -> datetime:
        return self.get_job(job_id).created_at

    def list_expired(self, retention: timedelta, now: Optional[datetime] = None) -> list[str]:
        """
        Jobs created more than `retention` ago, regardless of status.

        Jobs whose age cannot be determined are logged and skipped.
        """
        now = now or _utcnow()
        expired = []
        for job_id in self.list_jobs():
            try:
                created_at = self._created_at(job_id)
            except JobStoreError as e:
                logger.warning(
                    f"Skipping job {job_id} in retention sweep: {e}",
                    extra={"job_id": job_id, "event": "sweep_skip"},
                )
                continue
            if now - created_at > retention:
                expired.append(job_id)
        return expired

    def list_stale_running(self, max_age: timedelta, now: Optional[datetime] = None) -> list[str]:
        """Jobs still marked running whose claim is older than `max_age`."""
        now = now or _utcnow()
        stale = []
        for job_id in self.list_jobs():
            try:
                status = self.get_status(job_id)
            except JobStoreError:
                continue
            if status.status != Status.RUNNING:
                continue
            started = status.started_at
            if started is None or now - started > max_age:
                stale.append(job_id)
        return stale


class InMemoryJobStore(JobStore):
    """In-memory job store for testing."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._params: dict[str, dict[str, Any]] = {}
        self._status: dict[str, JobStatus] = {}
        self._inputs: dict[str, Path] = {}
        self._mappings: dict[str, Path] = {}
        self._transcripts: dict[str, str] = {}
        self._commands: dict[str, list[str]] = {}
        self._abandoned: dict[str, str] = {}
        self._queue: deque[str] = deque()
        self._lock = threading.Lock()

    def add_job(self, job: Job, params: dict[str, Any], input_file: Path) -> None:
        """Insert a pre-built job (tests that need a fixed id or created_at)."""
        self._jobs[job.id] = job
        self._params[job.id] = json.loads(json.dumps(params))
        self._status[job.id] = JobStatus()
        self._inputs[job.id] = Path(input_file)

    def create_job(self, tool, email, params, input_file, mode=None, mapping_file=None) -> str:
        with self._lock:
            job_id = generate_ulid()
            while job_id in self._jobs:
                job_id = generate_ulid()
            job = Job(id=job_id, tool=Tool(tool), email=email, created_at=_utcnow(), mode=mode)
            self.add_job(job, params, input_file)
            if mapping_file is not None:
                self._mappings[job_id] = Path(mapping_file)
        return job_id

    def enqueue(self, job_id: str) -> None:
        with self._lock:
            self._queue.append(job_id)

    def dequeue(self) -> Optional[str]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def queue_snapshot(self) -> list[str]:
        with self._lock:
            return list(self._queue)

    def list_jobs(self) -> list[str]:
        return sorted(self._jobs)

    def _require(self, job_id: str) -> None:
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)

    def get_job(self, job_id: str) -> Job:
        self._require(job_id)
        return self._jobs[job_id]

    def get_params(self, job_id: str) -> dict[str, Any]:
        self._require(job_id)
        return json.loads(json.dumps(self._params[job_id]))

    def get_status(self, job_id: str) -> JobStatus:
        self._require(job_id)
        return self._status[job_id]

    def _write_status(self, job_id: str, status: JobStatus) -> None:
        self._status[job_id] = status

    def input_path(self, job_id: str) -> Path:
        self._require(job_id)
        return self._inputs[job_id]

    def mapping_path(self, job_id: str) -> Optional[Path]:
        self._require(job_id)
        return self._mappings.get(job_id)

    def write_transcript(self, job_id: str, transcript: str) -> None:
        self._require(job_id)
        self._transcripts[job_id] = transcript

    def read_transcript(self, job_id: str) -> Optional[str]:
        return self._transcripts.get(job_id)

    def write_commands(self, job_id: str, commands: list[str]) -> None:
        self._require(job_id)
        self._commands[job_id] = list(commands)

    def read_commands(self, job_id: str) -> Optional[list[str]]:
        return self._commands.get(job_id)

    def mark_abandoned(self, job_id: str, reason: str) -> None:
        self._require(job_id)
        self._abandoned[job_id] = reason

    def abandoned_reason(self, job_id: str) -> Optional[str]:
        return self._abandoned.get(job_id)

    def purge(self, job_id: str) -> None:
        for table in (
            self._jobs, self._params, self._status, self._inputs,
            self._mappings, self._transcripts, self._commands, self._abandoned,
        ):
            table.pop(job_id, None)


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over `path`."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class FileJobStore(JobStore):
    """
    File-based job store.

    Directory structure:
        {root}/
            queue.json
            queue.lock
            {job_id}/
                meta.json
                params.json
                status.json
                stdout.log
                command.txt
                abandoned.txt      (only when the worker gave up on the job)
                input/
                    {input file}
                    mapping/{mapping file}
    """

    MAX_ID_ATTEMPTS = 5

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.queue_path = self.root / QUEUE_FILE
        self.queue_lock_path = self.root / QUEUE_LOCK_FILE

    def _job_dir(self, job_id: str) -> Path:
        # Ids never contain path separators; reject anything that does
        if not job_id or "/" in job_id or job_id.startswith("."):
            raise JobNotFoundError(job_id)
        return self.root / job_id

    def _existing_dir(self, job_id: str) -> Path:
        job_dir = self._job_dir(job_id)
        if not job_dir.is_dir():
            raise JobNotFoundError(job_id)
        return job_dir

    def _read_json(self, path: Path) -> Any:
        try:
            with open(path) as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise CorruptJobError(f"Missing {path.name} in {path.parent}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptJobError(f"Malformed {path.name} in {path.parent}: {e}") from e

    # -- job records ---------------------------------------------------------

    def _allocate_dir(self) -> tuple[str, Path]:
        for _ in range(self.MAX_ID_ATTEMPTS):
            job_id = generate_ulid()
            job_dir = self.root / job_id
            try:
                job_dir.mkdir(exist_ok=False)
            except FileExistsError:
                continue
            return job_id, job_dir
        raise JobStoreError(f"Could not allocate a unique job id after {self.MAX_ID_ATTEMPTS} attempts")

    def create_job(self, tool, email, params, input_file, mode=None, mapping_file=None) -> str:
        input_file = Path(input_file)
        if not input_file.is_file():
            raise JobStoreError(f"Input file does not exist: {input_file}")

        job_id, job_dir = self._allocate_dir()
        try:
            input_dir = job_dir / INPUT_DIR
            input_dir.mkdir()
            shutil.copy2(input_file, input_dir / input_file.name)
            if mapping_file is not None:
                mapping_file = Path(mapping_file)
                (input_dir / MAPPING_DIR).mkdir()
                shutil.copy2(mapping_file, input_dir / MAPPING_DIR / mapping_file.name)

            job = Job(id=job_id, tool=Tool(tool), email=email, created_at=_utcnow(), mode=mode)
            _write_json_atomic(job_dir / PARAMS_FILE, params)
            _write_json_atomic(job_dir / META_FILE, job.to_dict())
            _write_json_atomic(job_dir / STATUS_FILE, JobStatus().to_dict())
        except Exception:
            # A half-written directory would show up in list_jobs as corrupt
            shutil.rmtree(job_dir, ignore_errors=True)
            raise

        logger.info(
            f"Created {job.tool.value} job {job_id}",
            extra={"job_id": job_id, "event": "job_created"},
        )
        return job_id

    def work_dir(self, job_id: str) -> Optional[Path]:
        return self._existing_dir(job_id)

    def list_jobs(self) -> list[str]:
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def get_job(self, job_id: str) -> Job:
        job_dir = self._existing_dir(job_id)
        data = self._read_json(job_dir / META_FILE)
        if not isinstance(data, dict):
            raise CorruptJobError(f"meta.json for {job_id} is not an object")
        return Job.from_dict(data)

    def get_params(self, job_id: str) -> dict[str, Any]:
        data = self._read_json(self._existing_dir(job_id) / PARAMS_FILE)
        if not isinstance(data, dict):
            raise CorruptJobError(f"params.json for {job_id} is not an object")
        return data

    def get_status(self, job_id: str) -> JobStatus:
        data = self._read_json(self._existing_dir(job_id) / STATUS_FILE)
        if not isinstance(data, dict):
            raise CorruptJobError(f"status.json for {job_id} is not an object")
        return JobStatus.from_dict(data)

    def _write_status(self, job_id: str, status: JobStatus) -> None:
        _write_json_atomic(self._existing_dir(job_id) / STATUS_FILE, status.to_dict())

    def input_path(self, job_id: str) -> Path:
        input_dir = self._existing_dir(job_id) / INPUT_DIR
        files = sorted(p for p in input_dir.glob("*") if p.is_file()) if input_dir.is_dir() else []
        if not files:
            raise CorruptJobError(f"Input file not found for job {job_id}")
        return files[0]

    def mapping_path(self, job_id: str) -> Optional[Path]:
        mapping_dir = self._existing_dir(job_id) / INPUT_DIR / MAPPING_DIR
        if not mapping_dir.is_dir():
            return None
        files = sorted(p for p in mapping_dir.iterdir() if p.is_file())
        return files[0] if files else None

    def write_transcript(self, job_id: str, transcript: str) -> None:
        (self._existing_dir(job_id) / TRANSCRIPT_FILE).write_text(transcript)

    def read_transcript(self, job_id: str) -> Optional[str]:
        path = self._existing_dir(job_id) / TRANSCRIPT_FILE
        return path.read_text() if path.exists() else None

    def write_commands(self, job_id: str, commands: list[str]) -> None:
        text = "".join(f"{line}\n" for line in commands)
        (self._existing_dir(job_id) / COMMANDS_FILE).write_text(text)

    def read_commands(self, job_id: str) -> Optional[list[str]]:
        path = self._existing_dir(job_id) / COMMANDS_FILE
        return path.read_text().splitlines() if path.exists() else None

    def mark_abandoned(self, job_id: str, reason: str) -> None:
        (self._existing_dir(job_id) / ABANDONED_FILE).write_text(f"{reason}\n")

    def abandoned_reason(self, job_id: str) -> Optional[str]:
        path = self._existing_dir(job_id) / ABANDONED_FILE
        return path.read_text().strip() if path.exists() else None

    def purge(self, job_id: str) -> None:
        job_dir = self._job_dir(job_id)
        if job_dir.is_dir():
            shutil.rmtree(job_dir)
            logger.info(f"Purged job {job_id}", extra={"job_id": job_id, "event": "job_purged"})

    def _created_at(self, job_id: str) -> datetime:
        try:
            return super()._created_at(job_id)
        except CorruptJobError:
            # Fall back to the directory's age so broken jobs still expire
            mtime = self._existing_dir(job_id).stat().st_mtime
            return datetime.fromtimestamp(mtime, tz=timezone.utc)

    # -- queue ---------------------------------------------------------------

    @contextmanager
    def _queue_locked(self) -> Iterator[None]:
        with open(self.queue_lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read_queue(self) -> list[str]:
        if not self.queue_path.exists():
            return []
        try:
            data = json.loads(self.queue_path.read_text() or "[]")
        except json.JSONDecodeError as e:
            raise JobStoreError(f"Malformed queue file {self.queue_path}: {e}") from e
        if not isinstance(data, list) or not all(isinstance(x, str) for x in data):
            raise JobStoreError(f"Queue file {self.queue_path} is not a list of job ids")
        return data

    def enqueue(self, job_id: str) -> None:
        with self._queue_locked():
            queue = self._read_queue()
            queue.append(job_id)
            _write_json_atomic(self.queue_path, queue)
        logger.debug(f"Enqueued {job_id}", extra={"job_id": job_id, "event": "enqueued"})

    def dequeue(self) -> Optional[str]:
        with self._queue_locked():
            queue = self._read_queue()
            if not queue:
                return None
            job_id = queue.pop(0)
            _write_json_atomic(self.queue_path, queue)
        return job_id

    def queue_snapshot(self) -> list[str]:
        with self._queue_locked():
            return self._read_queue()
