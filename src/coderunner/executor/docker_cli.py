# src/coderunner/executor/docker_cli.py
from __future__ import annotations
import subprocess
from typing import List, Tuple

import structlog

from .base import Executor
from ..core.errors import BackendError, SandboxTimeoutError
from ..core.models import ContainerSpec

log = structlog.get_logger(__name__)


class DockerCliExecutor(Executor):
    """
    Drives containers through the docker CLI, one subprocess per call.

    `docker logs` writes the container's stdout to its own stdout and the
    container's stderr to its own stderr, so the two channels come back
    already demultiplexed.
    """

    def __init__(self, docker_bin: str = "docker", *, cmd_timeout_s: float = 120.0, pull_timeout_s: float = 600.0):
        self.docker_bin = docker_bin
        self.cmd_timeout_s = cmd_timeout_s
        self.pull_timeout_s = pull_timeout_s

    def _docker(self, *args: str, timeout: float | None = None, check: bool = True) -> subprocess.CompletedProcess:
        argv = [self.docker_bin, *args]
        try:
            proc = subprocess.run(argv, capture_output=True, timeout=timeout or self.cmd_timeout_s)
        except FileNotFoundError as e:
            raise BackendError(f"docker CLI not found: {self.docker_bin}") from e
        except subprocess.TimeoutExpired as e:
            raise BackendError(f"docker {args[0]} did not return within {e.timeout}s") from e
        if check and proc.returncode != 0:
            raise BackendError(
                f"docker {args[0]} failed (rc={proc.returncode})",
                proc.stderr.decode("utf-8", errors="replace"),
            )
        return proc

    # ---------- command builders ----------

    @staticmethod
    def create_args(spec: ContainerSpec) -> List[str]:
        lim = spec.limits
        args = [
            "create",
            "--name", spec.name,
            "--network", "none",
            "--read-only",
            "--memory", str(lim.memory_bytes),
            "--memory-swap", str(lim.memory_bytes),
            "--cpu-period", str(lim.cpu_period),
            "--cpu-quota", str(lim.cpu_quota),
            "--pids-limit", str(lim.pids),
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--workdir", spec.workdir,
            "-v", f"{spec.code_dir}:{spec.workdir}:ro",
        ]
        if spec.user:
            args += ["--user", spec.user]
        if spec.tmpfs:
            args += ["--tmpfs", spec.tmpfs]
        if spec.log_max_bytes:
            # one file that never grows past the cap; `docker logs` reads back at most that much
            args += [
                "--log-driver", "json-file",
                "--log-opt", f"max-size={spec.log_max_bytes}",
                "--log-opt", "max-file=1",
            ]
        for k, v in spec.labels.items():
            args += ["--label", f"{k}={v}"]
        for k, v in spec.env.items():
            args += ["-e", f"{k}={v}"]
        return args + [spec.image, *spec.command]

    # ------------ lifecycle ------------

    def ping(self) -> bool:
        try:
            self._docker("version", "--format", "{{.Server.Version}}", timeout=10)
        except BackendError:
            return False
        return True

    def ensure_image(self, image: str) -> None:
        if self._docker("image", "inspect", image, check=False).returncode == 0:
            return
        log.info("image_pull", image=image)
        self._docker("pull", image, timeout=self.pull_timeout_s)
        log.info("image_pulled", image=image)

    def create(self, spec: ContainerSpec) -> str:
        proc = self._docker(*self.create_args(spec))
        return proc.stdout.decode().strip()

    def start(self, container: str) -> None:
        self._docker("start", container)

    def wait(self, container: str, timeout_s: float) -> int:
        try:
            proc = subprocess.run(
                [self.docker_bin, "wait", container], capture_output=True, timeout=timeout_s
            )
        except FileNotFoundError as e:
            raise BackendError(f"docker CLI not found: {self.docker_bin}") from e
        except subprocess.TimeoutExpired:
            self.kill(container)
            raise SandboxTimeoutError(timeout_s)
        if proc.returncode != 0:
            raise BackendError("docker wait failed", proc.stderr.decode("utf-8", errors="replace"))
        try:
            return int(proc.stdout.decode().strip().splitlines()[-1])
        except (ValueError, IndexError) as e:
            raise BackendError(f"docker wait returned no exit code: {proc.stdout!r}") from e

    def logs(self, container: str) -> Tuple[bytes, bytes]:
        proc = self._docker("logs", container)
        return proc.stdout, proc.stderr

    def kill(self, container: str) -> None:
        proc = self._docker("kill", container, check=False)
        if proc.returncode != 0:
            # already exited between the timeout and the kill
            log.debug("kill_noop", container=container, stderr=proc.stderr.decode(errors="replace").strip())

    def remove(self, container: str, force: bool = True) -> None:
        args = ["rm", "-f", container] if force else ["rm", container]
        proc = self._docker(*args, check=False)
        if proc.returncode != 0:
            err = proc.stderr.decode("utf-8", errors="replace")
            if "No such container" in err:
                return
            raise BackendError(f"docker rm failed (rc={proc.returncode})", err)

    def list_by_label(self, label: str) -> List[str]:
        proc = self._docker("ps", "-aq", "--filter", f"label={label}")
        return [line for line in proc.stdout.decode().split() if line]
