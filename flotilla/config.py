"""TOML-based engine and provider configuration.

Loads ~/.flotilla/defaults.toml (global) and flotilla.toml (project),
merges them, and builds the typed configuration objects the launchers use.

Example flotilla.toml:

    [engine]
    poll_interval = 1.0
    terminate_attempts = 10

    [aws]
    username = "ubuntu"
    max_instance_duration_hours = 2

    [azure]
    public_key_path = "~/.ssh/id_ed25519.pub"
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from flotilla.errors import ConfigurationError

if TYPE_CHECKING:
    from flotilla.providers.base import Launcher

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".flotilla" / "defaults.toml"
PROJECT_CONFIG_NAME = "flotilla.toml"


# =============================================================================
# Typed sections
# =============================================================================


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Knobs shared by every provisioning engine.

    Args:
        poll_interval: Seconds between provider status queries.
        cancel_settle_delay: Pause after cancelling spot requests on timeout,
            so requests fulfilled at the last moment show up in the final
            diagnostic query. Capped at half of ``poll_interval``, so a
            timeout is reported within one poll interval of the deadline.
        ssh_port: Port used to reach provisioned machines.
        connect_wait: SSH connect budget when the launch has no deadline.
        terminate_attempts: Upper bound on instance-termination attempts
            when the failure looks like a dropped connection.
        terminate_wait: Seconds between termination attempts.
    """

    poll_interval: float = 1.0
    cancel_settle_delay: float = 1.0
    ssh_port: int = 22
    connect_wait: float = 120.0
    terminate_attempts: int = 10
    terminate_wait: float = 1.0


@dataclass(frozen=True, slots=True)
class AWSConfig:
    username: str = "ubuntu"
    max_instance_duration_hours: int = 6
    profile: str | None = None


@dataclass(frozen=True, slots=True)
class AzureConfig:
    username: str = "ubuntu"
    public_key_path: str = "~/.ssh/id_rsa.pub"
    image: str = "UbuntuLTS"
    validate_sizes: bool = True


@dataclass(frozen=True, slots=True)
class Config:
    engine: EngineConfig = EngineConfig()
    aws: AWSConfig = AWSConfig()
    azure: AzureConfig = AzureConfig()


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
    with path.open("rb") as f:
        return tomllib.load(f)


def _build_section[T](cls: type[T], name: str, raw: RawConfig) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{name}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    return cls(**raw)


def load_raw_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)
    return _deep_merge(global_cfg, project_cfg)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Config:
    """Load and validate configuration from the global and project files."""
    raw = load_raw_config(project_dir=project_dir, global_path=global_path)
    return Config(
        engine=_build_section(EngineConfig, "engine", raw.get("engine", {})),
        aws=_build_section(AWSConfig, "aws", raw.get("aws", {})),
        azure=_build_section(AzureConfig, "azure", raw.get("azure", {})),
    )


def create_launcher(
    provider: str,
    config: Config | None = None,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Launcher:
    """Build a launcher for ``provider`` ("aws", "azure" or "baremetal")."""
    config = config or load_config(project_dir=project_dir, global_path=global_path)

    match provider:
        case "aws":
            from flotilla.providers.aws import AWSLauncher

            return AWSLauncher(config=config.aws, engine=config.engine)
        case "azure":
            from flotilla.providers.azure import AzureLauncher

            return AzureLauncher(config=config.azure, engine=config.engine)
        case "baremetal":
            from flotilla.providers.baremetal import BareMetalLauncher

            return BareMetalLauncher(engine=config.engine)
        case _:
            raise ConfigurationError(
                f"Unknown provider '{provider}'. Valid: aws, azure, baremetal"
            )


__all__ = [
    "EngineConfig",
    "AWSConfig",
    "AzureConfig",
    "Config",
    "load_config",
    "load_raw_config",
    "create_launcher",
]
