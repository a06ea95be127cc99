"""TOML-based fleet configuration.

Loads ~/.fleetboot/defaults.toml (global) and fleetboot.toml (project),
merges them, and resolves the result into a FleetConfig: API endpoint,
SSH settings, component versions, network settings and the desired
instance specs expanded from ``[[nodes]]`` groups.

The API key is read from the ``TALIS_KEY`` environment variable only.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from fleetboot.api.spec import InstanceSpec, NodeGroup, NodeRole, VolumeSpec
from fleetboot.core.exceptions import ConfigurationError
from fleetboot.infra.ssh import SSHConfig
from fleetboot.network.bootstrap import NetworkSettings
from fleetboot.network.keys import DEFAULT_SEED
from fleetboot.state import DEFAULT_STATE_PATH

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".fleetboot" / "defaults.toml"
PROJECT_CONFIG_NAME = "fleetboot.toml"
API_KEY_ENV = "TALIS_KEY"

DEFAULT_NODES: tuple[NodeGroup, ...] = (
    NodeGroup(NodeRole.VALIDATOR, count=4, region="nyc1", size="s-2vcpu-4gb", volume_gb=30),
)


def expand_path(path: str) -> str:
    return os.path.expanduser(os.path.expandvars(path))


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


def load_raw(
    *,
    project_path: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml(project_path or Path.cwd() / PROJECT_CONFIG_NAME)
    return _deep_merge(global_cfg, project_cfg)


def _section(raw: RawConfig, name: str) -> RawConfig:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigurationError(f"[{name}] must be a table")
    return value


def _build[T](cls: type[T], name: str, raw: RawConfig, /, **overrides: Any) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in [{name}]: {', '.join(sorted(unknown))}. Valid: {', '.join(sorted(known))}"
        )
    try:
        return cls(**{**raw, **overrides})
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid [{name}] section: {e}") from e


# =============================================================================
# Sections
# =============================================================================


@dataclass(frozen=True, slots=True)
class ApiConfig:
    base_url: str = "http://localhost:8000/talis"
    api_key: str = field(default="", repr=False)
    username: str = "fleetboot"
    project: str = "fleetboot"
    project_description: str = "fleetboot test network"
    timeout: float = 30.0


@dataclass(frozen=True, slots=True)
class VersionsConfig:
    go: str = "1.23.0"
    app: str = "v3.4.2-mammoth-v0.7.0"
    node: str = "v0.21.9-mammoth-v0.0.16"

    def get(self, key: str | None) -> str:
        return getattr(self, key) if key else ""


@dataclass(frozen=True, slots=True)
class FleetConfig:
    """Fully resolved configuration."""

    api: ApiConfig = field(default_factory=ApiConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    versions: VersionsConfig = field(default_factory=VersionsConfig)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    seed: int = DEFAULT_SEED
    state_path: Path = DEFAULT_STATE_PATH
    ready_timeout: float = 300.0
    poll_interval: float = 5.0
    specs: tuple[InstanceSpec, ...] = ()

    def require_api_key(self) -> str:
        if not self.api.api_key:
            raise ConfigurationError(f"{API_KEY_ENV} is not set")
        return self.api.api_key


def _build_template(raw: RawConfig) -> InstanceSpec:
    raw = dict(raw)
    default_volume = VolumeSpec()
    volume = VolumeSpec(
        name=raw.pop("volume_name", default_volume.name),
        size_gb=int(raw.pop("volume_size_gb", default_volume.size_gb)),
        mount_point=raw.pop("mount_point", default_volume.mount_point),
    )
    if "tags" in raw:
        raw["tags"] = tuple(raw["tags"])
    if "ssh_key_path" in raw:
        raw["ssh_key_path"] = expand_path(raw["ssh_key_path"])
    return _build(InstanceSpec, "instance", raw, name="template", volume=volume)


def _build_group(raw: RawConfig) -> NodeGroup:
    raw = dict(raw)
    role = raw.pop("role", None)
    try:
        node_role = NodeRole(role)
    except ValueError:
        raise ConfigurationError(
            f"Unknown node role '{role}'. Valid: {', '.join(r.value for r in NodeRole)}"
        ) from None
    group = _build(NodeGroup, "nodes", raw, role=node_role)
    if group.count < 0:
        raise ConfigurationError(f"Node group {role} has negative count {group.count}")
    return group


def build_specs(raw: RawConfig) -> tuple[InstanceSpec, ...]:
    """Expand ``[[nodes]]`` groups over the ``[instance]`` template."""
    template = _build_template(_section(raw, "instance"))
    raw_nodes = raw.get("nodes")
    groups = tuple(_build_group(g) for g in raw_nodes) if raw_nodes is not None else DEFAULT_NODES

    specs = tuple(spec for group in groups for spec in group.expand(template))
    names = [s.name for s in specs]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Node groups produce duplicate names: {names}")
    return specs


def resolve(raw: RawConfig, env: Mapping[str, str] | None = None) -> FleetConfig:
    env = os.environ if env is None else env

    api = _build(ApiConfig, "api", _section(raw, "api"), api_key=env.get(API_KEY_ENV, ""))

    ssh_raw = dict(_section(raw, "ssh"))
    for key in ("key_path", "known_hosts"):
        if key in ssh_raw:
            ssh_raw[key] = expand_path(ssh_raw[key])
    ssh = _build(SSHConfig, "ssh", ssh_raw)
    if ssh.host_key_policy not in ("tofu", "pinned", "insecure"):
        raise ConfigurationError(f"Unknown host key policy: {ssh.host_key_policy}")

    versions = _build(VersionsConfig, "versions", _section(raw, "versions"))

    network_raw = dict(_section(raw, "network"))
    seed = int(network_raw.pop("seed", DEFAULT_SEED))
    network = _build(NetworkSettings, "network", network_raw)

    state_raw = _section(raw, "state")
    state_path = Path(expand_path(str(state_raw.get("path", DEFAULT_STATE_PATH))))

    fleet_raw = _section(raw, "fleet")
    return FleetConfig(
        api=api,
        ssh=ssh,
        versions=versions,
        network=network,
        seed=seed,
        state_path=state_path,
        ready_timeout=float(fleet_raw.get("ready_timeout", 300.0)),
        poll_interval=float(fleet_raw.get("poll_interval", 5.0)),
        specs=build_specs(raw),
    )


def load_config(
    *,
    project_path: Path | None = None,
    global_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> FleetConfig:
    """Load, merge and resolve configuration files into a FleetConfig."""
    raw = load_raw(project_path=project_path, global_path=global_path)
    return resolve(raw, env)
