from __future__ import annotations
from pathlib import Path
import shutil


class LocalFSStorage:
    """
    Per-job staging directories on the host filesystem:
      jobs/<job_id>/
        └─ <entry>   (the submitted source, mounted read-only into the container)

    A directory is created fresh for each execution and never reused; a
    leftover directory with the same name is treated as an error.
    """

    def __init__(self, jobs_dir: Path):
        # docker bind mounts need absolute paths
        self.jobs_dir = jobs_dir if jobs_dir.is_absolute() else jobs_dir.resolve()
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id in (".", ".."):
            raise ValueError(f"bad job id for staging: {job_id!r}")
        return self.jobs_dir / job_id

    def create_workspace(self, job_id: str, entry: str, source: str) -> Path:
        p = self._path(job_id)
        p.mkdir(mode=0o755)
        script = p / entry
        script.write_text(source, encoding="utf-8")
        # the container runs as an unprivileged user, it only needs to read
        p.chmod(0o755)
        script.chmod(0o644)
        return p

    def remove_workspace(self, job_id: str) -> None:
        p = self._path(job_id)
        if p.exists():
            shutil.rmtree(p)

    def exists(self, job_id: str) -> bool:
        return self._path(job_id).exists()
