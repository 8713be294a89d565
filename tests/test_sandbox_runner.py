import pytest
from structlog.testing import capture_logs

from coderunner.core.errors import (
    ProvisioningError,
    RuntimeExitError,
    SandboxTimeoutError,
    UnsupportedLanguageError,
)
from coderunner.executor.base import JOB_LABEL
from conftest import BLOCK


def _names(executor):
    return [c[0] for c in executor.calls]


def test_success_captures_separate_streams(runner, executor, settings):
    res = runner.execute("job1", "python", "print('ok')")
    assert (res.stdout, res.stderr, res.exit_code) == ("ok\n", "", 0)
    assert res.ok
    assert _names(executor) == ["ensure_image", "create", "start", "wait", "logs", "remove"]
    assert executor.removed == ["c1"]
    assert not (settings.jobs_dir / "job1").exists()


def test_stderr_is_kept_on_success(runner):
    res = runner.execute("job1", "python", "import warnings; warnings.warn('careful')")
    assert res.exit_code == 0
    assert res.stdout == ""
    assert "careful" in res.stderr
    res.raise_for_status()


def test_nonzero_exit_is_reported_not_raised(runner, executor):
    res = runner.execute("job1", "javascript", "throw new Error('boom')")
    assert res.exit_code == 1
    assert "boom" in res.stderr
    with pytest.raises(RuntimeExitError) as exc:
        res.raise_for_status()
    assert str(exc.value).startswith("non-zero exit")
    assert "boom" in str(exc.value)
    assert executor.removed == ["c1"]


def test_nonzero_exit_without_stderr_uses_stdout(runner, executor):
    executor.outputs["x"] = (2, b"usage: something\n", b"")
    res = runner.execute("job1", "python", "x")
    with pytest.raises(RuntimeExitError) as exc:
        res.raise_for_status()
    assert exc.value.exit_code == 2
    assert "usage: something" in str(exc.value)


def test_unsupported_language_provisions_nothing(runner, executor, settings):
    with pytest.raises(UnsupportedLanguageError):
        runner.execute("job1", "cobol", "DISPLAY 'HI'.")
    assert executor.calls == []
    assert not (settings.jobs_dir / "job1").exists()


def test_timeout_kills_and_removes_container(runner, executor, settings):
    with pytest.raises(SandboxTimeoutError) as exc:
        runner.execute("job1", "python", f"while True: pass  {BLOCK}")
    assert "timed out after 1s" in str(exc.value)
    assert executor.killed == ["c1"]
    assert executor.removed == ["c1"]
    assert not (settings.jobs_dir / "job1").exists()


def test_create_failure_is_provisioning_error(runner, executor, settings):
    executor.fail_on.add("create")
    with pytest.raises(ProvisioningError) as exc:
        runner.execute("job1", "python", "print('ok')")
    assert "provisioning" in str(exc.value)
    assert executor.removed == []
    assert not (settings.jobs_dir / "job1").exists()


def test_image_pull_failure_is_provisioning_error(runner, executor):
    executor.fail_on.add("ensure_image")
    with pytest.raises(ProvisioningError):
        runner.execute("job1", "python", "print('ok')")
    assert "create" not in _names(executor)


def test_start_failure_still_removes_container(runner, executor, settings):
    executor.fail_on.add("start")
    with pytest.raises(ProvisioningError):
        runner.execute("job1", "python", "print('ok')")
    assert executor.removed == ["c1"]
    assert not (settings.jobs_dir / "job1").exists()


def test_reused_staging_dir_is_rejected(runner, executor, settings):
    (settings.jobs_dir / "job1").mkdir(parents=True)
    with pytest.raises(ProvisioningError):
        runner.execute("job1", "python", "print('ok')")
    assert "create" not in _names(executor)


def test_teardown_failure_does_not_change_result(runner, executor):
    executor.fail_on.add("remove")
    with capture_logs() as logs:
        res = runner.execute("job1", "python", "print('ok')")
    assert res.stdout == "ok\n"
    failed = [e for e in logs if e["event"] == "teardown_failed"]
    assert len(failed) == 1
    assert failed[0]["container"] == "c1"
    assert failed[0]["log_level"] == "error"
    assert failed[0]["exc_info"] is True


def test_output_is_truncated(runner, executor):
    executor.outputs["spam"] = (0, b"x" * 5000, b"")
    res = runner.execute("job1", "python", "spam")
    assert res.stdout.startswith("x" * 1024)
    assert "3976 bytes omitted" in res.stdout


def test_container_spec_carries_limits(runner, executor, settings):
    runner.execute("job1", "python", "print('ok')")
    spec = executor.specs["c1"]
    assert spec.image == "python:3.12-alpine"
    assert spec.command == ["python", "main.py"]
    assert spec.workdir == "/app"
    assert spec.code_dir == str(settings.jobs_dir / "job1")
    assert spec.limits.memory_bytes == 64 * 1024 * 1024
    assert (spec.limits.cpu_quota, spec.limits.cpu_period) == (50000, 100000)
    assert spec.limits.pids == 32
    assert spec.labels[JOB_LABEL] == "job1"
    assert spec.user == "65534:65534"
    assert spec.log_max_bytes == 4 * settings.max_output_bytes
    assert executor.sources["c1"] == "print('ok')"


def test_concurrent_jobs_get_their_own_staging(runner, executor):
    runner.execute("a", "python", "print('ok')")
    runner.execute("b", "javascript", "throw new Error('boom')")
    assert executor.specs["c1"].code_dir != executor.specs["c2"].code_dir
    assert executor.specs["c2"].command == ["node", "index.js"]


def test_reap_orphans(runner, executor):
    executor.specs["stale1"] = None
    executor.specs["stale2"] = None
    assert runner.reap_orphans() == 2
    assert set(executor.removed) == {"stale1", "stale2"}
