from __future__ import annotations
from typing import Any, Dict, List, Optional

from ..core.errors import ValidationError
from ..core.models import JobState
from .job_store import Job, JobQueue


class JobService:
    """
    What the HTTP gateway needs from the queue: validated submission and
    status views. Reads only; it never changes a job after enqueue.
    """

    def __init__(self, queue: JobQueue, languages: Optional[List[str]] = None):
        self.queue = queue
        self.languages = sorted(languages or [])

    def submit(self, language: Optional[str], code: Optional[str]) -> str:
        # only presence is checked here, the language itself is judged at dispatch
        if not isinstance(code, str) or not code.strip() or not isinstance(language, str) or not language.strip():
            raise ValidationError("Code and language are required.")
        return self.queue.enqueue(language.strip(), code)

    def get_result(self, job_id: str) -> Dict[str, Any]:
        job = self.queue.get_state(job_id)
        if job.state is JobState.COMPLETED:
            return {"status": "completed", "output": {"stdout": job.stdout or "", "stderr": job.stderr or ""}}
        if job.state is JobState.FAILED:
            return {"status": "failed", "error": job.failure_reason}
        # waiting and active look the same from outside
        return {"status": "pending"}

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = self.queue.get_state(job_id)
        return _describe(job)

    def health(self) -> Dict[str, Any]:
        return {"ok": True, "queue": self.queue.counts()}


def _describe(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "language": job.language,
        "state": job.state.value,
        "exit_code": job.exit_code,
        "failure_kind": job.failure_kind.value if job.failure_kind else None,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }
