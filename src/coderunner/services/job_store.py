from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

import structlog
from sqlalchemy import Column, DateTime, TypeDecorator, delete, func, update
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..core.errors import InvalidTransitionError, JobNotFoundError
from ..core.models import FailureKind, JobOutcome, JobState
from ..core.utils import new_job_id, utcnow

log = structlog.get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in, aware UTC datetimes out, whatever the backend stores."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime, pass an aware UTC value")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        # SQLite drops the offset; everything written here is UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Job(SQLModel, table=True):
    # seq gives FIFO order; id is what callers see
    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True, unique=True)
    language: str
    source: str
    state: JobState = Field(default=JobState.WAITING, index=True)
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    exit_code: Optional[int] = None
    failure_kind: Optional[FailureKind] = None
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime, nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime))
    # refreshed by the owning worker while the job runs
    heartbeat_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime))
    finished_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime))


class JobQueue:
    """Durable FIFO of jobs backed by SQL.

    The two state changes that matter, dequeue and terminal update, are
    conditional UPDATEs on the current state, so a record can only be claimed
    once and finished once even with several processes on the same database.
    The lock only keeps threads of one process from racing on the same row.
    """

    def __init__(self, url: str = "sqlite:///./coderunner.db"):
        connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        # Session factory with expire_on_commit=False so returned rows stay readable
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)
        self._lock = threading.Lock()

    def close(self) -> None:
        self.engine.dispose()

    # ------------ producer side ------------

    def enqueue(self, language: str, source: str) -> str:
        job = Job(id=new_job_id(), language=language, source=source)
        with self.SessionLocal() as s:
            s.add(job)
            s.commit()
        log.info("job_enqueued", job_id=job.id, language=language)
        return job.id

    def get_state(self, job_id: str) -> Job:
        with self.SessionLocal() as s:
            job = s.exec(select(Job).where(Job.id == job_id)).first()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def counts(self) -> Dict[str, int]:
        out = {st.value: 0 for st in JobState}
        with self.SessionLocal() as s:
            for state, n in s.exec(select(Job.state, func.count()).group_by(Job.state)).all():
                out[JobState(state).value] = n
        return out

    # ------------ worker side ------------

    def dequeue_next(self) -> Optional[Job]:
        """Claim the oldest waiting job, or return None right away if there is none."""
        with self._lock:
            while True:
                with self.SessionLocal() as s:
                    seq = s.exec(
                        select(Job.seq).where(Job.state == JobState.WAITING).order_by(Job.seq).limit(1)
                    ).first()
                if seq is None:
                    return None
                now = utcnow()
                with self.engine.begin() as conn:
                    res = conn.execute(
                        update(Job)
                        .where(Job.seq == seq, Job.state == JobState.WAITING)
                        .values(state=JobState.ACTIVE, started_at=now, heartbeat_at=now)
                    )
                if res.rowcount == 1:
                    with self.SessionLocal() as s:
                        job = s.get(Job, seq)
                    log.info("job_dequeued", job_id=job.id, language=job.language)
                    return job
                # another process claimed it first, try the next one

    def update(self, job_id: str, outcome: JobOutcome) -> Job:
        if not outcome.state.terminal:
            raise ValueError(f"update needs a terminal state, got {outcome.state.value}")
        completed = outcome.state is JobState.COMPLETED
        values = {
            "state": outcome.state,
            "stdout": outcome.stdout if completed else None,
            "stderr": outcome.stderr if completed else None,
            "exit_code": outcome.exit_code,
            "failure_kind": None if completed else (outcome.failure_kind or FailureKind.INTERNAL),
            "failure_reason": None if completed else (outcome.failure_reason or "failed"),
            "finished_at": utcnow(),
        }
        with self._lock:
            with self.engine.begin() as conn:
                res = conn.execute(
                    update(Job).where(Job.id == job_id, Job.state == JobState.ACTIVE).values(**values)
                )
        if res.rowcount != 1:
            current = self.get_state(job_id)
            raise InvalidTransitionError(job_id, current.state.value, outcome.state.value)
        log.info(
            "job_finished", job_id=job_id, state=outcome.state.value,
            exit_code=outcome.exit_code,
            failure_kind=outcome.failure_kind.value if outcome.failure_kind else None,
        )
        return self.get_state(job_id)

    def heartbeat(self, job_ids: Iterable[str]) -> int:
        """Refresh the lease on jobs this process is still running."""
        ids = list(job_ids)
        if not ids:
            return 0
        with self.engine.begin() as conn:
            res = conn.execute(
                update(Job)
                .where(Job.id.in_(ids), Job.state == JobState.ACTIVE)
                .values(heartbeat_at=utcnow())
            )
        return res.rowcount

    def complete(self, job_id: str, stdout: str, stderr: str, exit_code: int = 0) -> Job:
        return self.update(
            job_id, JobOutcome(JobState.COMPLETED, stdout=stdout, stderr=stderr, exit_code=exit_code)
        )

    def fail(self, job_id: str, kind: FailureKind, reason: str, exit_code: Optional[int] = None) -> Job:
        return self.update(job_id, JobOutcome.failed(kind, reason, exit_code))

    # ------------ housekeeping ------------

    def purge_finished(self, older_than_s: float) -> int:
        cutoff = utcnow() - timedelta(seconds=older_than_s)
        with self.engine.begin() as conn:
            res = conn.execute(
                delete(Job).where(
                    Job.state.in_([JobState.COMPLETED, JobState.FAILED]),
                    Job.finished_at < cutoff,
                )
            )
        if res.rowcount:
            log.info("jobs_purged", count=res.rowcount)
        return res.rowcount

    def fail_stale(self, older_than_s: float) -> int:
        """Fail active jobs whose owner stopped heartbeating ``older_than_s`` ago."""
        cutoff = utcnow() - timedelta(seconds=older_than_s)
        with self._lock:
            with self.engine.begin() as conn:
                res = conn.execute(
                    update(Job)
                    .where(Job.state == JobState.ACTIVE, Job.heartbeat_at < cutoff)
                    .values(
                        state=JobState.FAILED,
                        failure_kind=FailureKind.INTERNAL,
                        failure_reason=f"worker lost: no heartbeat for {older_than_s:g}s",
                        finished_at=utcnow(),
                    )
                )
        if res.rowcount:
            log.warning("stale_jobs_failed", count=res.rowcount)
        return res.rowcount
