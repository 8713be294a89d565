from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .core.errors import JobNotFoundError, ValidationError
from .runner.sandbox_runner import SandboxRunner
from .services.job_service import JobService
from .services.job_store import JobQueue
from .services.worker_pool import WorkerPool
from .settings import Settings, load_settings

log = structlog.get_logger(__name__)


# --------- Schemas ---------
class SubmitReq(BaseModel):
    # optional on purpose: a missing field is a 400 from the service, not a 422
    code: Optional[str] = None
    language: Optional[str] = None


class SubmitRes(BaseModel):
    message: str
    jobId: str


class JobStatusRes(BaseModel):
    id: str
    language: str
    state: str
    exit_code: Optional[int] = None
    failure_kind: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    *,
    queue: Optional[JobQueue] = None,
    pool: Optional[WorkerPool] = None,
) -> FastAPI:
    """Build the gateway. Handles passed in are used as-is and not closed on shutdown."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        q = queue or JobQueue(settings.db_url)
        workers = pool
        if workers is None and settings.embedded_workers:
            workers = WorkerPool(
                q,
                SandboxRunner.from_settings(settings),
                settings.concurrency,
                poll_interval_s=settings.poll_interval_s,
                max_poll_interval_s=settings.max_poll_interval_s,
                heartbeat_interval_s=settings.heartbeat_interval_s,
            )
        app.state.service = JobService(q, list(settings.language_table()))
        if workers is not None:
            workers.start()
        log.info("gateway_started", embedded_workers=workers is not None)
        try:
            yield
        finally:
            if workers is not None:
                workers.stop(timeout=settings.execution_limits().wall_timeout_seconds + 10)
            if queue is None:
                q.close()

    app = FastAPI(title="coderunner", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_service(request: Request) -> JobService:
        return request.app.state.service

    # --------- Endpoints ---------

    @app.get("/health")
    def health(svc: JobService = Depends(get_service)) -> Dict[str, Any]:
        return svc.health()

    @app.get("/languages")
    def languages(svc: JobService = Depends(get_service)) -> List[str]:
        return svc.languages

    @app.post("/submit", response_model=SubmitRes)
    def submit(req: SubmitReq, svc: JobService = Depends(get_service)):
        try:
            job_id = svc.submit(req.language, req.code)
        except ValidationError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        return SubmitRes(message="Job submitted successfully!", jobId=job_id)

    @app.get("/results/{job_id}")
    def results(job_id: str, svc: JobService = Depends(get_service)):
        try:
            return svc.get_result(job_id)
        except JobNotFoundError:
            return JSONResponse(status_code=404, content={"status": "error", "error": "Job not found"})

    @app.get("/jobs/{job_id}", response_model=JobStatusRes)
    def job_status(job_id: str, svc: JobService = Depends(get_service)):
        try:
            return JobStatusRes(**svc.get_status(job_id))
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="job_not_found")

    return app
