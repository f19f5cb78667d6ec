"""
Execution lock - at most one job body runs at a time.

The lock is a token file created with O_CREAT | O_EXCL, so creation is
atomic and a second acquire fails immediately instead of waiting. The token
records the holder's pid, host and acquisition time, which lets a restarted
worker clear a token left behind by a crashed process.
"""

import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import Any, Optional

from seqjobs.errors import LockHeldError

logger = logging.getLogger(__name__)


def worker_identity() -> str:
    """pid@host of the current process."""
    return f"{os.getpid()}@{socket.gethostname()}"


def holder_alive(identity: Optional[str]) -> Optional[bool]:
    """
    Whether the process named by a pid@host identity is still running.

    Returns None when the answer is unknown (other host or unparseable).
    """
    if not identity or "@" not in identity:
        return None
    pid_text, host = identity.split("@", 1)
    if host != socket.gethostname() or not pid_text.isdigit():
        return None
    try:
        os.kill(int(pid_text), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ExecutionLock:
    """
    Non-blocking, file-backed mutual exclusion token.

    Usage:
        lock = ExecutionLock(path)
        with lock:
            run_job()
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._owned = False

    def acquire(self) -> None:
        """
        Create the lock token.

        Raises:
            LockHeldError: If the token already exists
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as e:
            holder = self.holder()
            who = f" (held by {holder.get('holder')})" if holder else ""
            raise LockHeldError(f"Another job is currently running{who}") from e

        with os.fdopen(fd, "w") as f:
            json.dump({"holder": worker_identity(), "acquired_at": time.time()}, f)
        self._owned = True
        logger.debug(f"Acquired execution lock {self.path}", extra={"event": "lock_acquired"})

    def release(self) -> None:
        """Remove the token. Removing an absent token is a no-op."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        if self._owned:
            logger.debug(f"Released execution lock {self.path}", extra={"event": "lock_released"})
        self._owned = False

    def held(self) -> bool:
        return self.path.exists()

    def holder(self) -> Optional[dict[str, Any]]:
        """Token contents, or None if absent or unreadable."""
        try:
            data = json.loads(self.path.read_text())
        except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def age(self) -> Optional[float]:
        """Seconds since the token was written, or None if absent."""
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def break_if_stale(self, max_age: float) -> bool:
        """
        Remove a token left behind by a dead holder.

        A token is stale when it is older than `max_age` seconds (no live job
        outlasts its timeout) or when its holder ran on this host and that
        process no longer exists.

        Returns:
            True if a stale token was removed
        """
        age = self.age()
        if age is None:
            return False
        holder = self.holder() or {}
        if age <= max_age and holder_alive(holder.get("holder")) is not False:
            return False
        logger.warning(
            f"Removing stale execution lock {self.path} ({age:.0f}s old, holder {self.holder()})",
            extra={"event": "lock_broken"},
        )
        self.release()
        return True

    def __enter__(self) -> "ExecutionLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
