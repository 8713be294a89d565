from pathlib import Path

import pytest

from coderunner.settings import load_settings


@pytest.fixture
def conf_dir(tmp_path, monkeypatch):
    for var in ("SBX_CONCURRENCY", "SBX_DB_URL", "SBX_JOBS_DIR"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("SANDBOX_CONF", str(tmp_path / "sandbox.yaml"))
    return tmp_path


def test_defaults_without_files(conf_dir):
    s = load_settings(limits_file=conf_dir / "missing.yaml")
    assert s.concurrency == 5
    assert set(s.language_table()) == {"python", "javascript"}
    lim = s.execution_limits()
    assert lim.memory_bytes == 256 * 1024 * 1024
    assert (lim.cpu_quota, lim.cpu_period) == (50000, 100000)
    assert lim.wall_timeout_seconds == 5


def test_yaml_overrides_defaults(conf_dir):
    (conf_dir / "limits.yaml").write_text(
        "memory: {max: 134217728}\ncpu: {max: '25000 50000'}\npids: {max: 16}\ntimeout_s: 3\n"
    )
    (conf_dir / "sandbox.yaml").write_text(
        f"concurrency: 3\njobs_dir: {conf_dir / 'work'}\nlimits_file: {conf_dir / 'limits.yaml'}\n"
        "languages:\n"
        "  ruby: {image: 'ruby:3-alpine', entry: main.rb, command: [ruby, main.rb]}\n"
        "  broken: {entry: x}\n"
    )
    s = load_settings()
    assert s.concurrency == 3
    assert s.jobs_dir == Path(conf_dir / "work")
    table = s.language_table()
    assert list(table) == ["ruby"]
    assert table["ruby"].command == ["ruby", "main.rb"]
    lim = s.execution_limits()
    assert (lim.memory_bytes, lim.cpu_quota, lim.cpu_period, lim.pids, lim.wall_timeout_seconds) == (
        134217728, 25000, 50000, 16, 3)


def test_env_beats_yaml(conf_dir, monkeypatch):
    (conf_dir / "sandbox.yaml").write_text("concurrency: 3\n")
    monkeypatch.setenv("SBX_CONCURRENCY", "9")
    assert load_settings().concurrency == 9


def test_malformed_yaml_root_is_ignored(conf_dir):
    (conf_dir / "sandbox.yaml").write_text("- just\n- a list\n")
    assert load_settings().concurrency == 5


def test_cpu_max_keyword_caps_at_one_core(conf_dir):
    s = load_settings(limits={"cpu": {"max": "max 100000"}})
    lim = s.execution_limits()
    assert lim.cpu_quota == lim.cpu_period == 100000


def test_fractional_timeout_is_kept(conf_dir):
    s = load_settings(limits={"timeout_s": 0.5})
    assert s.execution_limits().wall_timeout_seconds == 0.5


@pytest.mark.parametrize("timeout", [0, -1])
def test_non_positive_timeout_is_rejected(conf_dir, timeout):
    s = load_settings(limits={"timeout_s": timeout})
    with pytest.raises(ValueError):
        s.execution_limits()


def test_heartbeat_knobs_from_yaml(conf_dir):
    (conf_dir / "sandbox.yaml").write_text("heartbeat_interval_s: 2\nstale_after_s: 15\n")
    s = load_settings()
    assert (s.heartbeat_interval_s, s.stale_after_s) == (2.0, 15.0)
