from __future__ import annotations

import dataclasses
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

LOGGER = logging.getLogger("gridbench.config")

MODES: tuple[str, ...] = ("failure", "startup", "latency")

DEFAULT_STRESS_LEVELS: tuple[int, ...] = (10, 50, 100, 200, 500)


class ConfigError(Exception):
    """Raised when the harness configuration is inconsistent."""


@dataclass(frozen=True)
class HarnessConfig:
    """Endpoints, paths and timeouts shared by every benchmark mode."""

    registry_url: str = "http://localhost:8500"
    services_root: Path = Path("services")
    output_dir: Path = Path("results")
    health_url_template: str = "http://{name}.localhost/health"
    compose_command: tuple[str, ...] = ("docker", "compose")
    registry_timeout: float = 5.0
    probe_timeout: float = 0.9
    poll_interval: float = 1.0
    readiness_timeout: float = 120.0
    lifecycle_timeout: float = 300.0
    settle_seconds: float = 5.0
    load_timeout: float = 10.0
    log_level: str = "INFO"
    log_path: Path | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "HarnessConfig":
        env = os.environ if environ is None else environ
        defaults = cls()

        log_path = env.get("GRIDBENCH_LOG_PATH")
        compose = env.get("GRIDBENCH_COMPOSE_COMMAND")

        return cls(
            registry_url=env.get("GRIDBENCH_REGISTRY_URL", defaults.registry_url).rstrip("/"),
            services_root=Path(env.get("GRIDBENCH_SERVICES_ROOT", str(defaults.services_root))),
            output_dir=Path(env.get("GRIDBENCH_OUTPUT_DIR", str(defaults.output_dir))),
            health_url_template=env.get(
                "GRIDBENCH_HEALTH_URL_TEMPLATE", defaults.health_url_template
            ),
            compose_command=tuple(shlex.split(compose)) if compose else defaults.compose_command,
            registry_timeout=_env_float(env, "GRIDBENCH_REGISTRY_TIMEOUT", defaults.registry_timeout),
            probe_timeout=_env_float(env, "GRIDBENCH_PROBE_TIMEOUT", defaults.probe_timeout),
            poll_interval=_env_float(env, "GRIDBENCH_POLL_INTERVAL", defaults.poll_interval),
            readiness_timeout=_env_float(
                env, "GRIDBENCH_READINESS_TIMEOUT", defaults.readiness_timeout
            ),
            lifecycle_timeout=_env_float(
                env, "GRIDBENCH_LIFECYCLE_TIMEOUT", defaults.lifecycle_timeout
            ),
            settle_seconds=_env_float(env, "GRIDBENCH_SETTLE_SECONDS", defaults.settle_seconds),
            load_timeout=_env_float(env, "GRIDBENCH_LOAD_TIMEOUT", defaults.load_timeout),
            log_level=env.get("GRIDBENCH_LOG_LEVEL", defaults.log_level),
            log_path=Path(log_path) if log_path else None,
        )

    def validate(self) -> "HarnessConfig":
        if not self.compose_command:
            raise ConfigError("compose command must not be empty")
        if "{name}" not in self.health_url_template:
            raise ConfigError("health URL template must contain a {name} placeholder")
        for attr in (
            "registry_timeout",
            "probe_timeout",
            "poll_interval",
            "readiness_timeout",
            "lifecycle_timeout",
            "load_timeout",
        ):
            if getattr(self, attr) <= 0:
                raise ConfigError(f"{attr} must be > 0")
        if self.settle_seconds < 0:
            raise ConfigError("settle_seconds must be >= 0")
        # A probe that can outlive the tick would stretch the polling cadence.
        if self.probe_timeout >= self.poll_interval:
            raise ConfigError(
                f"probe_timeout ({self.probe_timeout}) must be shorter than "
                f"poll_interval ({self.poll_interval})"
            )
        if self.readiness_timeout < self.poll_interval:
            raise ConfigError("readiness_timeout must cover at least one poll interval")
        return self


@dataclass(frozen=True)
class TrialPlan:
    """How many times a mode is repeated and what load it applies."""

    mode: str
    trials: int
    cooldown_seconds: float
    stress_levels: Sequence[int] = field(default_factory=lambda: DEFAULT_STRESS_LEVELS)

    def validate(self) -> "TrialPlan":
        if self.mode not in MODES:
            raise ConfigError(f"Unknown mode {self.mode!r}; expected one of {', '.join(MODES)}")
        if self.trials <= 0:
            raise ConfigError("trials must be > 0")
        if self.cooldown_seconds < 0:
            raise ConfigError("cooldown_seconds must be >= 0")
        if not self.stress_levels or any(level <= 0 for level in self.stress_levels):
            raise ConfigError("stress levels must be positive")
        return self


def default_plan(mode: str, environ: Mapping[str, str] | None = None) -> TrialPlan:
    """Return the default trial plan for ``mode``, with environment overrides."""

    env = os.environ if environ is None else environ
    base = {
        "failure": TrialPlan(mode="failure", trials=5, cooldown_seconds=15.0),
        "startup": TrialPlan(mode="startup", trials=5, cooldown_seconds=30.0),
        "latency": TrialPlan(mode="latency", trials=1, cooldown_seconds=0.0),
    }.get(mode)
    if base is None:
        raise ConfigError(f"Unknown mode {mode!r}; expected one of {', '.join(MODES)}")

    levels = env.get("GRIDBENCH_STRESS_LEVELS")
    return dataclasses.replace(
        base,
        trials=_env_int(env, "GRIDBENCH_TRIALS", base.trials),
        cooldown_seconds=_env_float(env, "GRIDBENCH_COOLDOWN_SECONDS", base.cooldown_seconds),
        stress_levels=_parse_levels(levels) if levels else base.stress_levels,
    )


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("invalid %s value %r; defaulting to %s", key, raw, default)
        return default


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("invalid %s value %r; defaulting to %s", key, raw, default)
        return default


def _parse_levels(raw: str) -> tuple[int, ...]:
    try:
        return tuple(int(item) for item in raw.split(",") if item.strip())
    except ValueError as exc:
        raise ConfigError(f"invalid GRIDBENCH_STRESS_LEVELS value {raw!r}") from exc
