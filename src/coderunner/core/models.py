from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class FailureKind(str, Enum):
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    PROVISIONING = "provisioning"
    TIMEOUT = "timeout"
    NONZERO_EXIT = "nonzero_exit"
    INTERNAL = "internal"


@dataclass
class Limits:
    memory_bytes: int
    cpu_quota: int
    cpu_period: int
    pids: int
    wall_timeout_seconds: float


@dataclass
class LanguageSpec:
    name: str
    image: str
    entry: str          # file name the source is written to, e.g. main.py
    command: List[str]  # run inside the container's workdir
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerSpec:
    """Everything needed to create one throwaway container for one job."""
    name: str
    image: str
    command: List[str]
    code_dir: str       # host staging dir, bind-mounted read-only
    workdir: str
    limits: Limits
    user: Optional[str] = None
    tmpfs: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    log_max_bytes: Optional[int] = None  # cap on the runtime's stored log, both streams


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_s: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def raise_for_status(self) -> None:
        if self.exit_code != 0:
            from .errors import RuntimeExitError
            raise RuntimeExitError.from_result(self)


@dataclass
class JobOutcome:
    """Terminal write for a job: either a result or a failure, never both."""
    state: JobState
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    exit_code: Optional[int] = None
    failure_kind: Optional[FailureKind] = None
    failure_reason: Optional[str] = None

    @classmethod
    def completed(cls, result: ExecutionResult) -> "JobOutcome":
        return cls(
            state=JobState.COMPLETED,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
        )

    @classmethod
    def failed(cls, kind: FailureKind, reason: str, exit_code: Optional[int] = None) -> "JobOutcome":
        return cls(
            state=JobState.FAILED,
            exit_code=exit_code,
            failure_kind=kind,
            failure_reason=reason or kind.value,
        )
