"""Error taxonomy shared by the gateway, the queue and the execution path.

Only ``ValidationError`` ever reaches a caller synchronously. Everything that
derives from ``ExecutionError`` is caught at the worker's per-job boundary and
turned into a ``failed`` job carrying ``kind`` and the message.
"""
from __future__ import annotations
from typing import Optional, TYPE_CHECKING

from .models import FailureKind

if TYPE_CHECKING:
    from .models import ExecutionResult


class ValidationError(ValueError):
    """Submission rejected before it is enqueued."""


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        super().__init__(f"job_not_found:{job_id}")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    def __init__(self, job_id: str, current: str, wanted: str):
        super().__init__(f"invalid transition for {job_id}: {current} -> {wanted}")
        self.job_id = job_id
        self.current = current
        self.wanted = wanted


class BackendError(RuntimeError):
    """A call into the container runtime failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(f"{message}: {stderr.strip()}" if stderr.strip() else message)
        self.stderr = stderr


class ExecutionError(Exception):
    kind: FailureKind = FailureKind.INTERNAL
    exit_code: Optional[int] = None


class UnsupportedLanguageError(ExecutionError):
    kind = FailureKind.UNSUPPORTED_LANGUAGE

    def __init__(self, language: str):
        super().__init__(f"unsupported language: {language!r}")
        self.language = language


class ProvisioningError(ExecutionError):
    kind = FailureKind.PROVISIONING


class SandboxTimeoutError(ExecutionError):
    kind = FailureKind.TIMEOUT

    def __init__(self, timeout_s: float):
        super().__init__(f"execution timed out after {timeout_s:g}s")
        self.timeout_s = timeout_s


class RuntimeExitError(ExecutionError):
    kind = FailureKind.NONZERO_EXIT

    def __init__(self, exit_code: int, output: str = ""):
        msg = f"non-zero exit: process exited with code {exit_code}"
        if output:
            msg = f"{msg}\n{output}"
        super().__init__(msg)
        self.exit_code = exit_code
        self.output = output

    @classmethod
    def from_result(cls, result: "ExecutionResult") -> "RuntimeExitError":
        # stderr is the diagnostic; fall back to stdout for programs that print errors there
        return cls(result.exit_code, result.stderr or result.stdout)
