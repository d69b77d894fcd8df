"""TOML-based trainyard configuration.

Loads ~/.trainyard/defaults.toml (global) and trainyard.toml (project),
merges them, applies environment overrides and builds frozen settings.

Example trainyard.toml::

    db_path = "/var/lib/trainyard/trainyard.db"

    [vast]
    default_gpu = "RTX 4090"
    default_max_hourly_cost = 1.5

    [policy]
    pause_ratio = 2.5

    [log]
    level = "DEBUG"
"""

from __future__ import annotations

import os
import tomllib
from contextlib import suppress
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, TypeAlias, TypeVar

from trainyard.errors import ConfigError
from trainyard.observability.logging import LogConfig

RawConfig: TypeAlias = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".trainyard" / "defaults.toml"
PROJECT_CONFIG_NAME = "trainyard.toml"
VAST_API_BASE = "https://console.vast.ai"


@dataclass(frozen=True, slots=True)
class VastSettings:
    """Marketplace connection and provisioning defaults.

    Args:
        api_key: Vast.ai API key. Falls back to VAST_API_KEY / vastai config file.
        base_url: API root.
        request_timeout: Per-request timeout in seconds.
        disk_gb: Disk allocated to each created instance.
        verified_only: Only consider verified hosts.
        default_gpu: GPU searched for when a job does not name one.
        default_max_hourly_cost: Price ceiling when a job does not set one.
    """

    api_key: str | None = None
    base_url: str = VAST_API_BASE
    request_timeout: float = 30.0
    disk_gb: int = 50
    verified_only: bool = True
    default_gpu: str = "RTX 3090"
    default_max_hourly_cost: float = 2.0


@dataclass(frozen=True, slots=True)
class SSHSettings:
    user: str = "root"
    key_path: str = "~/.ssh/id_ed25519"
    connect_timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class PolicySettings:
    """Timing and budget policy.

    Intervals and timeouts are seconds; ``low_balance_floor`` is tokens.
    """

    startup_poll_interval: float = 30.0
    startup_timeout: float = 900.0
    startup_monitor_attempts: int = 30
    startup_monitor_delay: float = 10.0
    monitor_period: float = 30.0
    cost_period: float = 60.0
    health_timeout: float = 5.0
    max_idle_minutes: int = 30
    warn_ratio: float = 1.5
    pause_ratio: float = 2.0
    low_balance_floor: int = 100
    platform_fee_rate: float = 0.5
    tokens_per_usd: int = 100
    process_attempts: int = 3
    process_backoff: float = 2.0
    monitor_attempts: int = 10
    cost_attempts: int = 5
    provider_attempts: int = 3
    provider_backoff: float = 1.0
    job_log_lines: int = 1000


@dataclass(frozen=True, slots=True)
class Settings:
    db_path: str = "trainyard.db"
    api_base_url: str = "http://host.docker.internal:8000"
    vast: VastSettings = field(default_factory=VastSettings)
    ssh: SSHSettings = field(default_factory=SSHSettings)
    policy: PolicySettings = field(default_factory=PolicySettings)
    log: LogConfig = field(default_factory=LogConfig)


# =============================================================================
# Loading
# =============================================================================


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def _env_overrides() -> RawConfig:
    overrides: RawConfig = {}
    if db_path := os.environ.get("TRAINYARD_DB_PATH"):
        overrides["db_path"] = db_path
    if api_url := os.environ.get("API_BASE_URL"):
        overrides["api_base_url"] = api_url
    if api_key := os.environ.get("VAST_API_KEY"):
        overrides.setdefault("vast", {})["api_key"] = api_key
    if key_path := os.environ.get("TRAINYARD_SSH_KEY"):
        overrides.setdefault("ssh", {})["key_path"] = key_path
    if level := os.environ.get("TRAINYARD_LOG_LEVEL"):
        overrides.setdefault("log", {})["level"] = level.upper()
    return overrides


T = TypeVar("T")


def _build(cls: type[T], section: str, raw: RawConfig) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(
            f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    return cls(**raw)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    return _deep_merge(_deep_merge(global_cfg, project_cfg), _env_overrides())


def load_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Settings:
    raw = load_config(project_dir=project_dir, global_path=global_path)
    sections = {
        "vast": VastSettings,
        "ssh": SSHSettings,
        "policy": PolicySettings,
        "log": LogConfig,
    }
    built = {
        name: _build(cls, name, raw.pop(name, {}))
        for name, cls in sections.items()
    }
    return _build(Settings, "root", {**raw, **built})


def get_api_key(settings: VastSettings | None = None) -> str:
    """Get Vast.ai API key from settings, environment or the vastai config file."""
    if settings is not None and settings.api_key:
        return settings.api_key
    if env_key := os.environ.get("VAST_API_KEY"):
        return env_key

    config_path = os.path.expanduser("~/.config/vastai/vast_api_key")
    if os.path.exists(config_path):
        with suppress(OSError), open(config_path) as f:
            if file_key := f.read().strip():
                return file_key

    raise ConfigError("Vast.ai API key not found. Set VAST_API_KEY or run: vastai set api-key")


__all__ = [
    "PolicySettings",
    "SSHSettings",
    "Settings",
    "VastSettings",
    "get_api_key",
    "load_config",
    "load_settings",
]
