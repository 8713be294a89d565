from __future__ import annotations

import threading
import time
from typing import List, Optional, Set

import structlog

from ..core.errors import ExecutionError, InvalidTransitionError, JobNotFoundError
from ..core.models import FailureKind, JobOutcome
from ..runner.sandbox_runner import SandboxRunner
from .job_store import Job, JobQueue

log = structlog.get_logger(__name__)


class WorkerPool:
    """N worker threads, each running one job at a time from dequeue to terminal write.

    The pool size is the only admission control: at most ``concurrency`` jobs
    are active from this pool, however deep the queue gets.

    While a job runs, a heartbeat thread refreshes its lease so the janitor
    in any process can tell a slow job from one whose worker died.
    """

    def __init__(
        self,
        queue: JobQueue,
        runner: SandboxRunner,
        concurrency: int = 5,
        *,
        poll_interval_s: float = 0.2,
        max_poll_interval_s: float = 2.0,
        heartbeat_interval_s: float = 10.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.runner = runner
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.max_poll_interval_s = max(max_poll_interval_s, poll_interval_s)
        self.heartbeat_interval_s = heartbeat_interval_s
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._held: Set[str] = set()
        self._held_lock = threading.Lock()
        self._hb_stop = threading.Event()
        self._hb_thread: Optional[threading.Thread] = None

    # ------------ lifecycle ------------

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.concurrency):
            t = threading.Thread(target=self._loop, name=f"worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        self._hb_stop.clear()
        self._hb_thread = threading.Thread(target=self._heartbeat_loop, name="heartbeat", daemon=True)
        self._hb_thread.start()
        log.info("worker_pool_started", concurrency=self.concurrency)

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Ask workers to exit after their current job and wait for them."""
        self._stop.set()
        self.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
        # workers that outlived the timeout still hold leases
        if not self._threads and self._hb_thread is not None:
            self._hb_stop.set()
            self._hb_thread.join(1.0)
            self._hb_thread = None
        log.info("worker_pool_stopped", still_running=len(self._threads))

    def join(self, timeout: Optional[float] = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in self._threads:
            t.join(None if deadline is None else max(0.0, deadline - time.monotonic()))

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def run_forever(self, *, janitor_interval_s: float = 60.0, retention_s: float = 86400.0, stale_after_s: float = 0.0) -> None:
        """Start the workers and do housekeeping on this thread until stop()."""
        self.start()
        while not self._stop.wait(janitor_interval_s):
            self.housekeeping(retention_s=retention_s, stale_after_s=stale_after_s)
        self.stop()

    def housekeeping(self, *, retention_s: float, stale_after_s: float = 0.0) -> None:
        try:
            if stale_after_s > 0:
                self.queue.fail_stale(stale_after_s)
            if retention_s > 0:
                self.queue.purge_finished(retention_s)
        except Exception:
            log.exception("housekeeping_failed")

    # ------------ worker ------------

    def _loop(self) -> None:
        idle = self.poll_interval_s
        while not self._stop.is_set():
            try:
                job = self.queue.dequeue_next()
            except Exception:
                log.exception("dequeue_failed")
                job = None
            if job is None:
                self._stop.wait(idle)
                idle = min(idle * 2, self.max_poll_interval_s)
                continue
            idle = self.poll_interval_s
            self.process(job)

    def _heartbeat_loop(self) -> None:
        while not self._hb_stop.wait(self.heartbeat_interval_s):
            with self._held_lock:
                held = list(self._held)
            try:
                self.queue.heartbeat(held)
            except Exception:
                log.exception("heartbeat_failed", jobs=len(held))

    def process(self, job: Job) -> Optional[Job]:
        """Run one claimed job and record its terminal state. Never raises."""
        with self._held_lock:
            self._held.add(job.id)
        try:
            outcome = self.run_job(job)
        finally:
            with self._held_lock:
                self._held.discard(job.id)
        try:
            return self.queue.update(job.id, outcome)
        except (InvalidTransitionError, JobNotFoundError) as e:
            log.error("result_dropped", job_id=job.id, error=str(e))
        except Exception:
            log.exception("result_write_failed", job_id=job.id)
        return None

    def run_job(self, job: Job) -> JobOutcome:
        try:
            res = self.runner.execute(job.id, job.language, job.source)
            res.raise_for_status()
            return JobOutcome.completed(res)
        except ExecutionError as e:
            log.info("job_failed", job_id=job.id, failure_kind=e.kind.value, error=str(e).splitlines()[0] if str(e) else "")
            return JobOutcome.failed(e.kind, str(e), e.exit_code)
        except Exception as e:
            log.exception("job_crashed", job_id=job.id)
            return JobOutcome.failed(FailureKind.INTERNAL, f"internal error: {type(e).__name__}")
