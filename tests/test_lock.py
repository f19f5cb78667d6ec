"""Tests for seqjobs.lock."""

import json
import os
import time

import pytest

from seqjobs.errors import LockHeldError
from seqjobs.lock import ExecutionLock, holder_alive, worker_identity


@pytest.fixture
def lock(tmp_path) -> ExecutionLock:
    return ExecutionLock(tmp_path / "tmp" / "jobs" / "job.lock")


class TestExecutionLock:

    def test_acquire_creates_token(self, lock):
        lock.acquire()
        assert lock.held()
        assert lock.holder()["holder"] == worker_identity()

    def test_second_acquire_fails_fast(self, lock):
        lock.acquire()
        other = ExecutionLock(lock.path)
        with pytest.raises(LockHeldError, match="Another job is currently running"):
            other.acquire()

    def test_release_idempotent(self, lock):
        lock.release()
        lock.acquire()
        lock.release()
        lock.release()
        assert not lock.held()

    def test_context_manager_releases_on_error(self, lock):
        with pytest.raises(RuntimeError):
            with lock:
                assert lock.held()
                raise RuntimeError("step crashed")
        assert not lock.held()

    def test_reacquire_after_release(self, lock):
        with lock:
            pass
        with lock:
            assert lock.held()


class TestStaleLock:

    def test_fresh_live_lock_kept(self, lock):
        lock.acquire()
        assert lock.break_if_stale(max_age=3600) is False
        assert lock.held()

    def test_old_lock_removed(self, lock):
        lock.acquire()
        old = time.time() - 7200
        os.utime(lock.path, (old, old))
        assert lock.break_if_stale(max_age=3600) is True
        assert not lock.held()

    def test_dead_local_holder_removed(self, lock):
        lock.path.parent.mkdir(parents=True)
        hostname = worker_identity().split("@", 1)[1]
        # Above any real pid_max
        lock.path.write_text(json.dumps({"holder": f"999999999@{hostname}", "acquired_at": time.time()}))
        assert lock.break_if_stale(max_age=3600) is True

    def test_absent_lock(self, lock):
        assert lock.break_if_stale(max_age=0) is False


class TestHolderAlive:

    def test_self_alive(self):
        assert holder_alive(worker_identity()) is True

    def test_other_host_unknown(self):
        assert holder_alive("123@some-other-host.invalid") is None

    def test_garbage_unknown(self):
        assert holder_alive("not-an-identity") is None
        assert holder_alive(None) is None
