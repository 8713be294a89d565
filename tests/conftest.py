import threading
import time
from pathlib import Path

import pytest

from coderunner.core.errors import BackendError, SandboxTimeoutError
from coderunner.executor.base import Executor
from coderunner.runner.sandbox_runner import SandboxRunner
from coderunner.services.job_store import JobQueue
from coderunner.settings import DEFAULT_LANGUAGES, Settings

BLOCK = "# block"


class FakeExecutor(Executor):
    """In-memory stand-in for the docker CLI.

    ``outputs`` maps a submitted source to (exit_code, stdout, stderr). A source
    containing BLOCK parks in wait() until ``release`` is set or the timeout
    fires, which is how tests hold a worker busy.
    """

    def __init__(self):
        self.calls = []
        self.specs = {}
        self.sources = {}
        self.removed = []
        self.killed = []
        self.outputs = {}
        self.fail_on = set()
        self.release = threading.Event()
        self.running = set()
        self.max_running = 0
        self.image_delay = 0.0
        self._n = 0
        self._lock = threading.Lock()

    def _call(self, name, *args):
        with self._lock:
            self.calls.append((name, *args))
        if name in self.fail_on:
            raise BackendError(f"docker {name} failed", "simulated")

    def ping(self):
        return "ping" not in self.fail_on

    def ensure_image(self, image):
        self._call("ensure_image", image)
        if self.image_delay:
            time.sleep(self.image_delay)

    def create(self, spec):
        self._call("create", spec.name)
        with self._lock:
            self._n += 1
            cid = f"c{self._n}"
        self.specs[cid] = spec
        self.sources[cid] = next(Path(spec.code_dir).iterdir()).read_text(encoding="utf-8")
        return cid

    def start(self, container):
        self._call("start", container)
        with self._lock:
            self.running.add(container)
            self.max_running = max(self.max_running, len(self.running))

    def wait(self, container, timeout_s):
        self._call("wait", container)
        try:
            if BLOCK in self.sources[container] and not self.release.wait(timeout_s):
                self.kill(container)
                raise SandboxTimeoutError(timeout_s)
            return self.outputs.get(self.sources[container], (0, b"", b""))[0]
        finally:
            with self._lock:
                self.running.discard(container)

    def logs(self, container):
        self._call("logs", container)
        _, out, err = self.outputs.get(self.sources[container], (0, b"", b""))
        return out, err

    def kill(self, container):
        self.killed.append(container)

    def remove(self, container, force=True):
        self._call("remove", container)
        self.removed.append(container)

    def list_by_label(self, label):
        return [c for c in self.specs if c not in self.removed]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_url=f"sqlite:///{tmp_path / 'jobs.db'}",
        jobs_dir=tmp_path / "jobs",
        concurrency=2,
        poll_interval_s=0.01,
        max_poll_interval_s=0.05,
        max_output_bytes=1024,
        languages=dict(DEFAULT_LANGUAGES),
        limits={
            "memory": {"max": 64 * 1024 * 1024},
            "cpu": {"max": "50000 100000"},
            "pids": {"max": 32},
            "timeout_s": 1,
        },
    )


@pytest.fixture
def queue(settings):
    q = JobQueue(settings.db_url)
    yield q
    q.close()


@pytest.fixture
def executor():
    fake = FakeExecutor()
    fake.outputs.update({
        "print('ok')": (0, b"ok\n", b""),
        "throw new Error('boom')": (1, b"", b"Error: boom\n    at index.js:1:7\n"),
        "import warnings; warnings.warn('careful')": (0, b"", b"UserWarning: careful\n"),
    })
    yield fake
    fake.release.set()


@pytest.fixture
def runner(settings, executor):
    return SandboxRunner.from_settings(settings, executor=executor)
