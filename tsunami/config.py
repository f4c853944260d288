"""TOML-based run configuration.

Loads ~/.tsunami/defaults.toml (global) and tsunami.toml (project),
merges them, and resolves them into typed settings, provider config
and group definitions.

Example tsunami.toml::

    max_duration_hours = 2

    [settings]
    poll_interval = 5
    key_dir = "~/.ssh"

    [aws]
    region = "us-east-1"

    [groups.server]
    count = 1
    instance_type = "t2.medium"
    ami = "ami-0440d3b780d96b29d"
    key_name = "key1"
    setup = ["cat /etc/hostname"]
"""

from __future__ import annotations

import dataclasses
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tsunami.exceptions import ConfigurationError
from tsunami.providers.aws.config import AWS

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".tsunami" / "defaults.toml"
PROJECT_CONFIG_NAME = "tsunami.toml"


@dataclass(frozen=True, slots=True)
class Settings:
    """Orchestrator and transport tuning.

    Args:
        poll_interval: Seconds between readiness polls of one instance.
        readiness_timeout: Max seconds to wait for one instance to be ready.
            None waits forever.
        max_degraded_polls: Consecutive "running but incomplete" polls
            tolerated before failing.
        poll_concurrency: Instances polled at once.
        setup_concurrency: Machines configured at once. 1 is sequential.
        request_timeout: Timeout for each describe or terminate call. Create
            calls are bounded by the provider client instead.
        ssh_user: Login user on the instances.
        ssh_port: SSH port on the instances.
        key_dir: Directory holding ``<key_name>.pem`` files.
        connect_timeout: Timeout for a single SSH connect attempt.
        connect_retries: Extra connect attempts after a TCP failure.
        connect_retry_delay: Seconds between connect attempts.
        command_timeout: Timeout for each remote command. None for unbounded.
    """

    poll_interval: float = 5.0
    readiness_timeout: float | None = 600.0
    max_degraded_polls: int = 60
    poll_concurrency: int = 32
    setup_concurrency: int = 8
    request_timeout: float | None = 30.0
    ssh_user: str = "ec2-user"
    ssh_port: int = 22
    key_dir: Path = field(default_factory=Path)
    connect_timeout: float = 30.0
    connect_retries: int = 1
    connect_retry_delay: float = 10.0
    command_timeout: float | None = None

    def __post_init__(self) -> None:
        at_least_one = ("max_degraded_polls", "poll_concurrency", "setup_concurrency")
        for name in at_least_one:
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1, got {getattr(self, name)}")

        for name in ("poll_interval", "connect_retries", "connect_retry_delay"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative, got {getattr(self, name)}")

        positive = (
            "readiness_timeout", "request_timeout", "connect_timeout", "command_timeout",
        )
        for name in positive:
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        if not 0 < self.ssh_port < 65536:
            raise ConfigurationError(f"ssh_port out of range: {self.ssh_port}")

    def key_path(self, key_name: str) -> Path:
        return self.key_dir.expanduser() / f"{key_name}.pem"


@dataclass(frozen=True, slots=True)
class GroupConfig:
    """A group as written in TOML: shell commands instead of callables."""

    name: str
    count: int
    instance_type: str
    ami: str
    key_name: str
    setup: tuple[str, ...] = ()
    workload: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RunConfig:
    settings: Settings
    provider: AWS
    groups: tuple[GroupConfig, ...]
    max_duration_hours: float | None = None


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
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    config_path: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    """Read and merge global and project config.

    ``config_path`` points at an explicit project file and wins over
    ``project_dir``.
    """
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = config_path or (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    if config_path is not None and not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("settings", {})
    merged.setdefault("aws", {})
    merged.setdefault("groups", {})
    return merged


def _build[T](cls: type[T], section: str, raw: RawConfig) -> T:
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [{section}]: {e}") from e


def build_settings(raw: RawConfig) -> Settings:
    raw = dict(raw)
    if "key_dir" in raw:
        raw["key_dir"] = Path(raw["key_dir"])
    return _build(Settings, "settings", raw)


def build_group(name: str, raw: RawConfig) -> GroupConfig:
    raw = dict(raw)
    for key in ("setup", "workload"):
        value = raw.get(key, ())
        if isinstance(value, str):
            value = (value,)
        raw[key] = tuple(value)
    group = _build(GroupConfig, f"groups.{name}", {"name": name, **raw})
    if group.count < 1:
        raise ConfigurationError(f"Group '{name}' count must be positive, got {group.count}")
    return group


def resolve_run(
    *,
    project_dir: Path | None = None,
    config_path: Path | None = None,
    global_path: Path | None = None,
) -> RunConfig:
    config = load_config(project_dir=project_dir, config_path=config_path, global_path=global_path)

    groups = config["groups"]
    if not groups:
        raise ConfigurationError("No groups configured. Add a [groups.<name>] section.")

    max_duration = config.get("max_duration_hours")
    if max_duration is not None and max_duration <= 0:
        raise ConfigurationError(f"max_duration_hours must be positive, got {max_duration}")

    return RunConfig(
        settings=build_settings(config["settings"]),
        provider=_build(AWS, "aws", config["aws"]),
        groups=tuple(build_group(name, raw) for name, raw in groups.items()),
        max_duration_hours=max_duration,
    )
