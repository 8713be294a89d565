from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import LanguageSpec, Limits

DEFAULT_LANGUAGES: Dict[str, Dict[str, Any]] = {
    "python": {
        "image": "python:3.12-alpine",
        "entry": "main.py",
        "command": ["python", "main.py"],
        "env": {"PYTHONUNBUFFERED": "1", "PYTHONDONTWRITEBYTECODE": "1"},
    },
    "javascript": {
        "image": "node:20-alpine",
        "entry": "index.js",
        "command": ["node", "index.js"],
    },
}

DEFAULT_LIMITS: Dict[str, Any] = {
    "memory": {"max": 256 * 1024 * 1024},
    "cpu": {"max": "50000 100000"},  # half of one core
    "pids": {"max": 64},
    "timeout_s": 5,
}


class Settings(BaseSettings):
    # ---- storage ----
    db_url: str = "sqlite:///./coderunner.db"
    jobs_dir: Path = Path("jobs")

    # ---- workers ----
    concurrency: int = 5
    poll_interval_s: float = 0.2
    max_poll_interval_s: float = 2.0
    janitor_interval_s: float = 60.0
    retention_s: int = 24 * 3600
    heartbeat_interval_s: float = 10.0
    stale_after_s: float = 60.0  # no heartbeat for this long means the worker is gone
    embedded_workers: bool = False

    # ---- container runtime ----
    docker_bin: str = "docker"
    docker_cmd_timeout_s: float = 120.0
    container_user: Optional[str] = "65534:65534"
    container_workdir: str = "/app"
    tmpfs: Optional[str] = None
    max_output_bytes: int = 64 * 1024

    # ---- gateway ----
    cors_origins: List[str] = ["http://localhost:5173"]

    # ---- config files ----
    limits_file: Path = Path("conf/limits.yaml")

    # ---- merged from YAML ----
    limits: Dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_LIMITS))
    languages: Dict[str, Dict[str, Any]] = Field(default_factory=lambda: dict(DEFAULT_LANGUAGES))

    # env prefix SBX_*
    model_config = SettingsConfigDict(env_prefix="SBX_", extra="ignore")

    def execution_limits(self) -> Limits:
        """Flatten the cgroup-style limits block into the values a container needs."""
        mem = (self.limits.get("memory") or {}).get("max", DEFAULT_LIMITS["memory"]["max"])
        cpu = str((self.limits.get("cpu") or {}).get("max", DEFAULT_LIMITS["cpu"]["max"])).split()
        pids = (self.limits.get("pids") or {}).get("max", DEFAULT_LIMITS["pids"]["max"])
        timeout = float(self.limits.get("timeout_s", DEFAULT_LIMITS["timeout_s"]))
        if timeout <= 0:
            raise ValueError(f"timeout_s must be positive, got {timeout:g}")
        period = int(cpu[1]) if len(cpu) > 1 else 100000
        # "max" is not allowed to lift the ceiling, it caps at one full core
        quota = period if cpu[0] == "max" else int(cpu[0])
        return Limits(
            memory_bytes=int(mem),
            cpu_quota=quota,
            cpu_period=period,
            pids=int(pids),
            wall_timeout_seconds=timeout,
        )

    def language_table(self) -> Dict[str, LanguageSpec]:
        table: Dict[str, LanguageSpec] = {}
        for name, cfg in self.languages.items():
            if not isinstance(cfg, dict) or not cfg.get("image"):
                continue
            table[name] = LanguageSpec(
                name=name,
                image=str(cfg["image"]),
                entry=str(cfg.get("entry", "main")),
                command=[str(c) for c in cfg.get("command") or []],
                env={str(k): str(v) for k, v in (cfg.get("env") or {}).items()},
            )
        return table


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(**overrides: Any) -> Settings:
    # 0) base from SBX_* env
    s = Settings(**overrides)

    # 1) conf/sandbox.yaml (or SANDBOX_CONF)
    data = _read_yaml(Path(os.environ.get("SANDBOX_CONF", "conf/sandbox.yaml")))

    update: Dict[str, Any] = {}
    for key in ("db_url", "docker_bin", "container_user", "container_workdir", "tmpfs"):
        if key in data and key not in overrides:
            update[key] = data[key]
    for key in ("concurrency", "retention_s", "max_output_bytes"):
        if key in data and key not in overrides:
            update[key] = int(data[key])
    for key in (
        "poll_interval_s", "max_poll_interval_s", "janitor_interval_s",
        "heartbeat_interval_s", "stale_after_s", "docker_cmd_timeout_s",
    ):
        if key in data and key not in overrides:
            update[key] = float(data[key])
    for key in ("jobs_dir", "limits_file"):
        if key in data and key not in overrides:
            update[key] = Path(str(data[key]))
    if "embedded_workers" in data and "embedded_workers" not in overrides:
        update["embedded_workers"] = bool(data["embedded_workers"])
    if isinstance(data.get("cors_origins"), list) and "cors_origins" not in overrides:
        update["cors_origins"] = [str(o) for o in data["cors_origins"]]

    # languages from YAML replace the defaults wholesale; the table is closed
    langs = data.get("languages")
    if isinstance(langs, dict) and langs and "languages" not in overrides:
        update["languages"] = {str(k): v for k, v in langs.items() if isinstance(v, dict)}

    # env wins over YAML for anything set explicitly through SBX_*
    update = {k: v for k, v in update.items() if f"SBX_{k.upper()}" not in os.environ}
    s = s.model_copy(update=update)

    # 2) conf/limits.yaml (optional), merged over the defaults
    if "limits" not in overrides:
        limits = dict(DEFAULT_LIMITS)
        limits.update(_read_yaml(s.limits_file))
        s = s.model_copy(update={"limits": limits})
    return s
