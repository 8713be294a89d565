from typing import List, Tuple

from ..core.models import ContainerSpec

JOB_LABEL = "coderunner.job"


class Executor:
    """Container runtime as seen by the sandbox runner.

    ``wait`` raises SandboxTimeoutError when the timeout elapses; every other
    failure surfaces as BackendError.
    """

    def ping(self) -> bool: ...
    def ensure_image(self, image: str) -> None: ...
    def create(self, spec: ContainerSpec) -> str: ...
    def start(self, container: str) -> None: ...
    def wait(self, container: str, timeout_s: float) -> int: ...
    def logs(self, container: str) -> Tuple[bytes, bytes]: ...
    def kill(self, container: str) -> None: ...
    def remove(self, container: str, force: bool = True) -> None: ...
    def list_by_label(self, label: str) -> List[str]: ...
