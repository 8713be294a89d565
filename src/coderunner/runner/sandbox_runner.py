from __future__ import annotations
import time
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..core.errors import (
    BackendError,
    ExecutionError,
    ProvisioningError,
    UnsupportedLanguageError,
)
from ..core.models import ContainerSpec, ExecutionResult, LanguageSpec, Limits
from ..core.utils import decode_output
from ..executor.base import JOB_LABEL, Executor
from ..executor.docker_cli import DockerCliExecutor
from ..services.storage import LocalFSStorage
from ..settings import Settings

log = structlog.get_logger(__name__)

# json-file wraps every line with stream and timestamp fields
LOG_CAP_FACTOR = 4


class SandboxRunner:
    def __init__(
        self,
        executor: Executor,
        storage: LocalFSStorage,
        languages: Dict[str, LanguageSpec],
        limits: Limits,
        *,
        user: Optional[str] = None,
        workdir: str = "/app",
        tmpfs: Optional[str] = None,
        max_output_bytes: int = 64 * 1024,
    ):
        self.executor = executor
        self.storage = storage
        self.languages = languages
        self.limits = limits
        self.user = user
        self.workdir = workdir
        self.tmpfs = tmpfs
        self.max_output_bytes = max_output_bytes

    @classmethod
    def from_settings(cls, settings: Settings, executor: Optional[Executor] = None) -> "SandboxRunner":
        if executor is None:
            executor = DockerCliExecutor(settings.docker_bin, cmd_timeout_s=settings.docker_cmd_timeout_s)
        return cls(
            executor,
            LocalFSStorage(settings.jobs_dir),
            settings.language_table(),
            settings.execution_limits(),
            user=settings.container_user,
            workdir=settings.container_workdir,
            tmpfs=settings.tmpfs,
            max_output_bytes=settings.max_output_bytes,
        )

    def build_spec(self, job_id: str, lang: LanguageSpec, code_dir: Path) -> ContainerSpec:
        return ContainerSpec(
            name=f"coderunner-{job_id}",
            image=lang.image,
            command=list(lang.command),
            code_dir=str(code_dir),
            workdir=self.workdir,
            limits=self.limits,
            user=self.user,
            tmpfs=self.tmpfs,
            env=dict(lang.env),
            labels={JOB_LABEL: job_id, "coderunner.language": lang.name},
            log_max_bytes=LOG_CAP_FACTOR * self.max_output_bytes if self.max_output_bytes else None,
        )

    def execute(self, job_id: str, language: str, source: str) -> ExecutionResult:
        """
        Run one job's source in a fresh container and return what it printed.

        Raises UnsupportedLanguageError before touching the filesystem or the
        runtime, ProvisioningError if the container cannot be set up, and
        SandboxTimeoutError once the wall-clock limit kills it. The staging
        directory and the container are removed on every path out.
        """
        lang = self.languages.get(language)
        if lang is None:
            raise UnsupportedLanguageError(language)

        start = time.time()
        container: Optional[str] = None
        try:
            try:
                code_dir = self.storage.create_workspace(job_id, lang.entry, source)
                self.executor.ensure_image(lang.image)
                container = self.executor.create(self.build_spec(job_id, lang, code_dir))
                self.executor.start(container)
            except (BackendError, OSError, ValueError) as e:
                raise ProvisioningError(f"sandbox provisioning failed: {e}") from e
            log.info("sandbox_started", job_id=job_id, language=language, container=container)

            try:
                exit_code = self.executor.wait(container, self.limits.wall_timeout_seconds)
                raw_out, raw_err = self.executor.logs(container)
            except BackendError as e:
                raise ExecutionError(f"sandbox error: {e}") from e

            res = ExecutionResult(
                stdout=decode_output(raw_out, self.max_output_bytes),
                stderr=decode_output(raw_err, self.max_output_bytes),
                exit_code=exit_code,
                duration_s=time.time() - start,
            )
            log.info(
                "sandbox_exited", job_id=job_id, container=container,
                exit_code=exit_code, duration_s=round(res.duration_s, 3),
            )
            return res
        finally:
            self._teardown(job_id, container)

    def _teardown(self, job_id: str, container: Optional[str]) -> None:
        if container is not None:
            try:
                self.executor.remove(container, force=True)
            except Exception:
                log.error("teardown_failed", job_id=job_id, container=container, exc_info=True)
        try:
            self.storage.remove_workspace(job_id)
        except (OSError, ValueError):
            log.error("teardown_failed", job_id=job_id, staging=True, exc_info=True)

    def reap_orphans(self) -> int:
        """Remove containers left behind by a previous process that died mid-job."""
        removed = 0
        for container in self.executor.list_by_label(JOB_LABEL):
            try:
                self.executor.remove(container, force=True)
                removed += 1
            except BackendError as e:
                log.error("orphan_not_removed", container=container, error=str(e))
        if removed:
            log.warning("orphans_reaped", count=removed)
        return removed
