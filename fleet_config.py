"""
fleet_config.py — process-wide configuration, loaded once at startup.

The config lives in fleet.yaml (see fleet.example.yaml). Everything has a
default, so a missing file is not an error; a malformed one is. A handful
of env vars override the file for one-off runs.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from fleet_errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).parent / "fleet.yaml"

_FIREBASE_DIR = Path.home() / ".config" / "firebase"


@dataclass(frozen=True)
class StoreProject:
    name: str
    database_url: str
    credentials_path: Path


def _default_store_projects() -> Mapping[str, StoreProject]:
    return MappingProxyType({
        "dev": StoreProject(
            name="dev",
            database_url="https://gymnastics-graphics-dev-default-rtdb.firebaseio.com",
            credentials_path=_FIREBASE_DIR / "gymnastics-graphics-dev-sa.json",
        ),
        "prod": StoreProject(
            name="prod",
            database_url="https://gymnastics-graphics-default-rtdb.firebaseio.com",
            credentials_path=_FIREBASE_DIR / "gymnastics-graphics-prod-sa.json",
        ),
    })


@dataclass(frozen=True)
class FleetConfig:
    aws_region: str = "us-east-1"
    project_tag: str = "gymnastics-graphics"
    image_name_patterns: tuple[str, ...] = ("gymnastics-*", "*gymnastics*")
    ssh_key_path: Path = Path.home() / ".ssh" / "gymnastics-graphics-key-pair.pem"
    ssh_username: str = "ubuntu"
    connect_timeout: int = 30   # seconds to establish the SSH session
    command_timeout: int = 60   # seconds for the remote command itself
    target_aliases: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({"coordinator": "44.193.31.120"})
    )
    service_port: int = 3003
    pool_project: str = "prod"
    store_projects: Mapping[str, StoreProject] = field(default_factory=_default_store_projects)

    def resolve_target(self, target: str) -> str:
        """Map a symbolic alias to its address; anything else is already an address."""
        return self.target_aliases.get(target, target)


def _positive_int(raw: Any, key: str, source: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid '{key}' in {source}: expected an integer, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"Invalid '{key}' in {source}: must be positive, got {value}")
    return value


def _load_store_projects(raw: Any, source: str) -> Mapping[str, StoreProject]:
    if not isinstance(raw, dict) or not raw:
        raise ConfigurationError(f"Invalid 'store_projects' in {source}: expected a non-empty mapping")
    projects: dict[str, StoreProject] = {}
    for name, cfg in raw.items():
        if not isinstance(cfg, dict) or "database_url" not in cfg or "credentials_path" not in cfg:
            raise ConfigurationError(
                f"Invalid store project '{name}' in {source}: "
                "'database_url' and 'credentials_path' are required"
            )
        projects[str(name)] = StoreProject(
            name=str(name),
            database_url=cfg["database_url"],
            credentials_path=Path(cfg["credentials_path"]).expanduser(),
        )
    return MappingProxyType(projects)


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FleetConfig:
    """Build the FleetConfig from fleet.yaml (if present) plus env overrides."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(env.get("FLEET_CONFIG", DEFAULT_CONFIG_PATH))

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {config_path}: {e}")
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"Invalid {config_path}: expected a mapping at the top level")
        raw = loaded or {}

    source = str(config_path)
    kwargs: dict[str, Any] = {}

    aws = raw.get("aws", {}) or {}
    if "region" in aws:
        kwargs["aws_region"] = str(aws["region"])
    if "project_tag" in aws:
        kwargs["project_tag"] = str(aws["project_tag"])
    if "image_name_patterns" in aws:
        patterns = aws["image_name_patterns"]
        if not isinstance(patterns, list) or not patterns:
            raise ConfigurationError(f"Invalid 'image_name_patterns' in {source}: expected a non-empty list")
        kwargs["image_name_patterns"] = tuple(str(p) for p in patterns)

    ssh = raw.get("ssh", {}) or {}
    if "key_path" in ssh:
        kwargs["ssh_key_path"] = Path(ssh["key_path"]).expanduser()
    if "username" in ssh:
        kwargs["ssh_username"] = str(ssh["username"])
    if "connect_timeout" in ssh:
        kwargs["connect_timeout"] = _positive_int(ssh["connect_timeout"], "connect_timeout", source)
    if "command_timeout" in ssh:
        kwargs["command_timeout"] = _positive_int(ssh["command_timeout"], "command_timeout", source)

    if "targets" in raw:
        targets = raw["targets"]
        if not isinstance(targets, dict):
            raise ConfigurationError(f"Invalid 'targets' in {source}: expected alias -> address mapping")
        kwargs["target_aliases"] = MappingProxyType({str(k): str(v) for k, v in targets.items()})

    pool = raw.get("pool", {}) or {}
    if "service_port" in pool:
        kwargs["service_port"] = _positive_int(pool["service_port"], "service_port", source)
    if "project" in pool:
        kwargs["pool_project"] = str(pool["project"])

    if "store_projects" in raw:
        kwargs["store_projects"] = _load_store_projects(raw["store_projects"], source)

    # env overrides
    if env.get("FLEET_AWS_REGION"):
        kwargs["aws_region"] = env["FLEET_AWS_REGION"]
    if env.get("FLEET_SSH_KEY"):
        kwargs["ssh_key_path"] = Path(env["FLEET_SSH_KEY"]).expanduser()
    if env.get("FLEET_SSH_USER"):
        kwargs["ssh_username"] = env["FLEET_SSH_USER"]
    if env.get("SSH_CONNECT_TIMEOUT"):
        kwargs["connect_timeout"] = _positive_int(env["SSH_CONNECT_TIMEOUT"], "SSH_CONNECT_TIMEOUT", "environment")
    if env.get("SSH_TIMEOUT"):
        kwargs["command_timeout"] = _positive_int(env["SSH_TIMEOUT"], "SSH_TIMEOUT", "environment")

    config = FleetConfig(**kwargs)
    if config.pool_project not in config.store_projects:
        valid = ", ".join(sorted(config.store_projects))
        raise ConfigurationError(
            f"Invalid pool project '{config.pool_project}' in {source}. Valid options: {valid}"
        )
    return config
