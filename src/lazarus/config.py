from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml

from lazarus.defaults import (
    ENV_STATE_DIR,
    OPS_LOG_NAME,
    STATE_DIR_NAME,
    domain_dir,
    resolve_config_path,
    resolve_path,
    validate_domain,
)
from lazarus.errors import ConfigError

LivenessName = Literal["pid", "tmux"]

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_RESUME_FLAG = "--resume"


@dataclass(frozen=True)
class SupervisorConfig:
    crash_threshold: int = 5
    retry_backoff_sec: float = 30.0
    retry_backoff_max_sec: float = 300.0
    stable_after_sec: float = 600.0
    startup_grace_sec: float = 120.0


@dataclass(frozen=True)
class MonitorConfig:
    interval_sec: float = 900.0
    liveness: LivenessName = "pid"


@dataclass(frozen=True)
class ReconcileConfig:
    interval_sec: float = 86_400.0


@dataclass(frozen=True)
class HooksConfig:
    heartbeat_timeout_sec: float = 0.3


@dataclass(frozen=True)
class DomainConfig:
    name: str
    command: tuple[str, ...]
    resume_flag: str
    liveness: LivenessName
    session: str


@dataclass(frozen=True)
class RecoveryConfig:
    config_path: Optional[Path]
    state_dir: Path
    command: tuple[str, ...] = (DEFAULT_AGENT_COMMAND,)
    resume_flag: str = DEFAULT_RESUME_FLAG
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    domains: Dict[str, DomainConfig] = field(default_factory=dict)

    @property
    def ops_log_path(self) -> Path:
        return self.state_dir / OPS_LOG_NAME

    def domain_dir(self, domain: str) -> Path:
        return domain_dir(self.state_dir, domain)

    def domain(self, name: str) -> DomainConfig:
        """Config for one domain; unlisted domains inherit the top-level agent settings."""
        validate_domain(name)
        if name in self.domains:
            return self.domains[name]
        return DomainConfig(
            name=name,
            command=self.command,
            resume_flag=self.resume_flag,
            liveness=self.monitor.liveness,
            session=name,
        )

    def ensure_runtime_dirs(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)


def _split_command(raw: Any, where: str) -> tuple[str, ...]:
    if isinstance(raw, list):
        parts = tuple(str(p) for p in raw)
    else:
        parts = tuple(shlex.split(str(raw)))
    if not parts:
        raise ConfigError(f"{where}: command must not be empty")
    return parts


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a YAML mapping")
    return value


def _liveness(value: Any, where: str) -> LivenessName:
    name = str(value).strip().lower()
    if name not in {"pid", "tmux"}:
        raise ConfigError(f"{where}: invalid liveness '{name}'. Expected one of: pid, tmux.")
    return name  # type: ignore[return-value]


def load_config(config_path: str | Path | None = None) -> RecoveryConfig:
    """Load config from YAML. A missing file yields defaults rooted at cwd."""
    cfg_path = resolve_config_path(config_path)
    if cfg_path.exists():
        try:
            raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{cfg_path}: invalid YAML: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError("Top-level config must be a YAML mapping")
        base = cfg_path.resolve().parent
        source: Optional[Path] = cfg_path.resolve()
    elif config_path:
        raise FileNotFoundError(f"Config not found: {cfg_path}")
    else:
        raw = {}
        base = Path.cwd()
        source = None

    # LAZARUS_STATE_DIR wins over YAML so hooks and timers agree on one root.
    state_dir = resolve_path(
        str(os.environ.get(ENV_STATE_DIR) or raw.get("state_dir", STATE_DIR_NAME)),
        base,
    )

    agent_raw = _section(raw, "agent")
    command = _split_command(agent_raw.get("command", DEFAULT_AGENT_COMMAND), "agent")
    resume_flag = str(agent_raw.get("resume_flag", DEFAULT_RESUME_FLAG))

    sup_raw = _section(raw, "supervisor")
    supervisor = SupervisorConfig(
        crash_threshold=int(sup_raw.get("crash_threshold", 5)),
        retry_backoff_sec=float(sup_raw.get("retry_backoff_sec", 30)),
        retry_backoff_max_sec=float(sup_raw.get("retry_backoff_max_sec", 300)),
        stable_after_sec=float(sup_raw.get("stable_after_sec", 600)),
        startup_grace_sec=float(sup_raw.get("startup_grace_sec", 120)),
    )
    if supervisor.crash_threshold < 1:
        raise ConfigError("supervisor.crash_threshold must be >= 1")

    mon_raw = _section(raw, "monitor")
    monitor = MonitorConfig(
        interval_sec=float(mon_raw.get("interval_sec", 900)),
        liveness=_liveness(mon_raw.get("liveness", "pid"), "monitor"),
    )

    rec_raw = _section(raw, "reconcile")
    reconcile = ReconcileConfig(interval_sec=float(rec_raw.get("interval_sec", 86_400)))

    hooks_raw = _section(raw, "hooks")
    hooks = HooksConfig(heartbeat_timeout_sec=float(hooks_raw.get("heartbeat_timeout_sec", 0.3)))

    domains_raw = _section(raw, "domains")
    domains: Dict[str, DomainConfig] = {}
    for name, item in domains_raw.items():
        name = str(name)
        try:
            validate_domain(name)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        item = item or {}
        if not isinstance(item, dict):
            raise ConfigError(f"Domain '{name}' config must be a mapping")
        domains[name] = DomainConfig(
            name=name,
            command=_split_command(item["command"], name) if "command" in item else command,
            resume_flag=str(item.get("resume_flag", resume_flag)),
            liveness=_liveness(item.get("liveness", monitor.liveness), name),
            session=str(item.get("session", name)),
        )

    return RecoveryConfig(
        config_path=source,
        state_dir=state_dir,
        command=command,
        resume_flag=resume_flag,
        supervisor=supervisor,
        monitor=monitor,
        reconcile=reconcile,
        hooks=hooks,
        domains=domains,
    )
