"""Specification dataclasses for the desired fleet.

These are the immutable objects that describe what the operator wants.
They are built from configuration before reconciliation and never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum


class NodeRole(Enum):
    """Role of a node in the network. Decides which components it receives."""

    VALIDATOR = "validator"
    BRIDGE = "bridge"
    LIGHT = "light"
    FULL = "full"

    @property
    def install_app(self) -> bool:
        return self in (NodeRole.VALIDATOR, NodeRole.FULL)

    @property
    def install_node(self) -> bool:
        return self in (NodeRole.BRIDGE, NodeRole.LIGHT, NodeRole.FULL)


@dataclass(frozen=True, slots=True)
class VolumeSpec:
    """Block volume attached to an instance."""

    name: str = "fleetboot-volume"
    size_gb: int = 15
    mount_point: str = "/mnt/data"


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """Desired instance.

    Args:
        name: Logical name, unique within the project. Reconciliation matches on it.
        provider: Provider identifier understood by the fleet API (e.g. "do").
        region: Provider region slug.
        size: Provider size slug.
        image: OS image slug.
        tags: Tags attached to the instance.
        ssh_key_name: Name of the SSH key registered at the provider.
        ssh_key_path: Local path of that key, forwarded to the provider.
        volume: Volume to create and mount.
        install_app: Whether the consensus application is installed here.
        install_node: Whether the data-availability node is installed here.
    """

    name: str
    provider: str = "do"
    region: str = "nyc1"
    size: str = "s-1vcpu-1gb"
    image: str = "ubuntu-24-04-x64"
    tags: tuple[str, ...] = ("fleetboot", "dev", "testing")
    ssh_key_name: str = ""
    ssh_key_path: str = ""
    volume: VolumeSpec = field(default_factory=VolumeSpec)
    install_app: bool = False
    install_node: bool = False


@dataclass(frozen=True, slots=True)
class NodeGroup:
    """A homogeneous group of nodes, expanded into one InstanceSpec per node."""

    role: NodeRole
    count: int
    region: str | None = None
    size: str | None = None
    volume_gb: int | None = None

    def expand(self, template: InstanceSpec) -> tuple[InstanceSpec, ...]:
        """Build ``count`` specs named ``<role>-<i>`` from a template spec."""
        specs = []
        for i in range(1, self.count + 1):
            volume = template.volume
            if self.volume_gb is not None:
                volume = replace(volume, size_gb=self.volume_gb)
            specs.append(replace(
                template,
                name=f"{self.role.value}-{i}",
                region=self.region or template.region,
                size=self.size or template.size,
                volume=volume,
                install_app=self.role.install_app,
                install_node=self.role.install_node,
            ))
        return tuple(specs)
