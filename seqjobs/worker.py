"""
Worker loop - the only component that moves jobs past queued.

One iteration:
    maybe sweep -> dequeue -> (empty: sleep) -> load job -> compile plan
    -> running -> execute under the execution lock -> done|error -> notify

Error handling at the loop boundary:
- Missing or malformed job directories are logged and skipped
- A job whose plan cannot be compiled is abandoned: logged, marked in the
  store, and never moved to running
- Step failures, launch failures and timeouts end the job as error
- Notification failures are logged; the job's status is already final
- Only failures while constructing the worker are fatal
"""

import logging
import signal
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from seqjobs.compiler import PlannedCommand, compile_plan
from seqjobs.config import WorkerConfig
from seqjobs.errors import CompileError, ExecutionError, JobStoreError, LockHeldError
from seqjobs.executor import ExecutionResult, Executor
from seqjobs.lock import ExecutionLock, holder_alive, worker_identity
from seqjobs.notify import Notification, Notifier, build_notifier
from seqjobs.runners import resolve_runner
from seqjobs.schemas import Job, JobStatus, Status
from seqjobs.store import FileJobStore, JobStore

logger = logging.getLogger(__name__)


STALE_MESSAGE = "stale: worker lost while running"


class Worker:
    """
    Polls the job store and runs one job at a time.

    Usage:
        worker = build_worker(load_config())
        worker.install_signal_handlers()
        worker.run_forever()
    """

    def __init__(
        self,
        store: JobStore,
        lock: ExecutionLock,
        executor: Executor,
        notifier: Notifier,
        config: WorkerConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            store: Job store holding jobs and the queue
            lock: System-wide execution lock
            executor: Runs a job's plan through the configured runner
            notifier: Delivers completion messages
            config: Worker settings
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock used for the sweep interval
        """
        self.store = store
        self.lock = lock
        self.executor = executor
        self.notifier = notifier
        self.config = config
        self.identity = worker_identity()
        self.running = True
        self._sleep = sleep
        self._clock = clock
        self._last_sweep: Optional[float] = None

    # -- lifecycle -----------------------------------------------------------

    def install_signal_handlers(self) -> None:
        """Stop after the current job on SIGINT or SIGTERM."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down after the current job")
        self.running = False

    def stop(self) -> None:
        self.running = False

    def startup(self) -> None:
        """Clear leftovers from a crashed worker before taking new jobs."""
        max_runtime = max(self.config.timeouts.values())
        self.lock.break_if_stale(max_runtime)
        self.sweep_stale()

    def run_forever(self) -> None:
        """Run the poll loop until stopped."""
        logger.info(
            f"Worker {self.identity} started ({self.executor.runner.mode.value} execution, "
            f"jobs in {self.config.jobs_dir})",
            extra={"event": "worker_started"},
        )
        try:
            self.startup()
        except Exception:
            logger.exception("Startup recovery failed; continuing", extra={"event": "startup_error"})

        while self.running:
            try:
                if not self.run_once():
                    self._sleep(self.config.poll_interval)
            except JobStoreError as e:
                logger.error(f"Job store error: {e}", extra={"event": "store_error"})
                self._sleep(self.config.poll_interval)
            except Exception:
                logger.exception("Unexpected error in worker loop", extra={"event": "loop_error"})
                self._sleep(self.config.poll_interval)

        logger.info("Worker stopped", extra={"event": "worker_stopped"})

    def run_once(self) -> bool:
        """
        One loop iteration.

        Returns:
            True if a job id was dequeued, False if the queue was empty
        """
        self.maybe_sweep()
        job_id = self.store.dequeue()
        if job_id is None:
            return False
        self.process(job_id)
        return True

    # -- one job -------------------------------------------------------------

    def _load(self, job_id: str) -> Optional[tuple[Job, list[PlannedCommand]]]:
        """Load and compile a dequeued job, or None if it must be skipped."""
        try:
            job = self.store.get_job(job_id)
            status = self.store.get_status(job_id)
            if status.status != Status.QUEUED:
                logger.warning(
                    f"Skipping job {job_id}: status is {status.status.value}, not queued",
                    extra={"job_id": job_id, "event": "job_skipped"},
                )
                return None
            plan = compile_plan(
                job,
                self.store.get_params(job_id),
                self.store.input_path(job_id),
                magus_path=self.config.magus_path,
                xtree_path=self.config.xtree_path,
                mapping_path=self.store.mapping_path(job_id),
            )
        except JobStoreError as e:
            logger.error(
                f"Skipping job {job_id}: {e}",
                extra={"job_id": job_id, "event": "job_skipped"},
            )
            return None
        except CompileError as e:
            self._abandon(job_id, str(e))
            return None
        return job, plan

    def _abandon(self, job_id: str, reason: str) -> None:
        """Drop a job whose plan cannot be built. Its status stays queued."""
        logger.error(
            f"Abandoned job {job_id}: {reason}",
            extra={"job_id": job_id, "event": "job_abandoned"},
        )
        try:
            self.store.mark_abandoned(job_id, reason)
        except (JobStoreError, OSError) as e:
            logger.error(f"Could not mark job {job_id} abandoned: {e}", extra={"job_id": job_id})

    def process(self, job_id: str) -> Optional[JobStatus]:
        """
        Run one dequeued job to a terminal status.

        Returns:
            The terminal status, or None if the job was skipped
        """
        loaded = self._load(job_id)
        if loaded is None:
            return None
        job, plan = loaded
        commands = [command.command_line for command in plan]

        try:
            self.store.write_commands(job_id, commands)
            running = self.store.set_status(job_id, JobStatus.running(claimed_by=self.identity))
        except JobStoreError as e:
            logger.error(f"Could not claim job {job_id}: {e}", extra={"job_id": job_id, "event": "claim_failed"})
            return None

        logger.info(
            f"Running {job.tool.value} job {job_id} ({len(plan)} step(s))",
            extra={"job_id": job_id, "event": "job_started"},
        )
        result = self._execute(job, plan)

        try:
            self.store.write_transcript(job_id, result.transcript)
        except (JobStoreError, OSError) as e:
            logger.error(f"Could not write transcript for {job_id}: {e}", extra={"job_id": job_id})

        if result.success:
            final = running.done()
        else:
            final = running.failed(result.error.message if result.error else "execution failed")

        try:
            self.store.set_status(job_id, final)
        except JobStoreError as e:
            logger.error(f"Could not persist final status for {job_id}: {e}", extra={"job_id": job_id})
            return None

        if result.success:
            logger.info(f"Job {job_id} completed successfully", extra={"job_id": job_id, "event": "job_done"})
        else:
            logger.error(f"Job {job_id} failed: {final.error}", extra={"job_id": job_id, "event": "job_error"})

        self._notify(job, final, result.transcript, commands)
        return final

    def _execute(self, job: Job, plan: list[PlannedCommand]) -> ExecutionResult:
        try:
            with self.lock:
                return self.executor.execute(
                    job.tool,
                    plan,
                    timeout=self.config.timeout_for(job.tool),
                    cwd=self.store.work_dir(job.id),
                )
        except LockHeldError as e:
            return ExecutionResult(transcript="", completed=[], success=False, error=_infra_error(plan, str(e)))
        except Exception as e:
            logger.exception(f"Unexpected error running job {job.id}", extra={"job_id": job.id})
            return ExecutionResult(transcript="", completed=[], success=False, error=_infra_error(plan, str(e)))

    def _notify(self, job: Job, status: JobStatus, transcript: str, commands: list[str]) -> None:
        notification = Notification(
            recipient=job.email,
            job_id=job.id,
            tool=job.tool,
            outcome=status.status,
            transcript=transcript,
            commands=tuple(commands),
            error=status.error,
        )
        try:
            self.notifier.send(notification)
        except Exception as e:
            logger.error(
                f"Notification for job {job.id} failed: {e}",
                extra={"job_id": job.id, "event": "notification_failed"},
            )

    # -- sweeps --------------------------------------------------------------

    def maybe_sweep(self) -> None:
        """Run the sweeps if cleanup_interval has passed since the last one."""
        now = self._clock()
        if self._last_sweep is not None and now - self._last_sweep < self.config.cleanup_interval:
            return
        self._last_sweep = now
        self.sweep_stale()
        self.sweep_expired()

    def sweep_stale(self, now: Optional[datetime] = None) -> list[str]:
        """
        Flag orphaned running jobs as error.

        A running job is orphaned when its claim is older than
        stale_after_hours, or when the worker that claimed it ran on this
        host and is gone. Orphans are never requeued.
        """
        now = now or datetime.now(timezone.utc)
        max_age = timedelta(hours=self.config.stale_after_hours)
        candidates = set(self.store.list_stale_running(max_age, now))

        for job_id in self.store.list_jobs():
            if job_id in candidates:
                continue
            try:
                status = self.store.get_status(job_id)
            except JobStoreError:
                continue
            if (
                status.status == Status.RUNNING
                and status.claimed_by != self.identity
                and holder_alive(status.claimed_by) is False
            ):
                candidates.add(job_id)

        flagged = []
        for job_id in sorted(candidates):
            try:
                current = self.store.get_status(job_id)
                final = self.store.set_status(job_id, current.failed(STALE_MESSAGE))
                job = self.store.get_job(job_id)
            except JobStoreError as e:
                logger.warning(f"Could not flag stale job {job_id}: {e}", extra={"job_id": job_id})
                continue
            logger.warning(f"Flagged job {job_id} as stale", extra={"job_id": job_id, "event": "job_stale"})
            self._notify(job, final, self.store.read_transcript(job_id) or "", [])
            flagged.append(job_id)
        return flagged

    def sweep_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Purge job directories older than the retention window."""
        retention = timedelta(hours=self.config.retention_hours)
        purged = []
        for job_id in self.store.list_expired(retention, now):
            try:
                self.store.purge(job_id)
            except OSError as e:
                logger.warning(f"Could not purge job {job_id}: {e}", extra={"job_id": job_id})
                continue
            purged.append(job_id)
        if purged:
            logger.info(f"Purged {len(purged)} expired job(s)", extra={"event": "retention_sweep"})
        return purged


def _infra_error(plan: list[PlannedCommand], message: str) -> ExecutionError:
    """Failure that happened around the steps rather than inside one."""
    step_id = plan[0].step_id if plan else "unknown"
    return ExecutionError(step_id, message)


def build_worker(config: WorkerConfig) -> Worker:
    """
    Construct a worker from configuration.

    Raises:
        OSError: If the jobs directory cannot be created
        ConfigError: On an unknown execution mode
        NotificationError: If SMTP is selected without credentials
    """
    store = FileJobStore(config.jobs_dir)
    lock = ExecutionLock(config.lock_path)
    executor = Executor(resolve_runner(config.execution_mode, config.stub_delay))
    notifier = build_notifier(config.notifier, config.smtp)
    return Worker(store, lock, executor, notifier, config)
