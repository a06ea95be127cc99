"""fleetboot - fleet provisioning and consensus-network bootstrap over SSH."""

from fleetboot.api import InstanceRecord, InstanceSpec, NodeGroup, NodeRole, PersistedState, VolumeSpec
from fleetboot.config import FleetConfig, load_config
from fleetboot.core.exceptions import FleetbootError
from fleetboot.manager import FleetManager
from fleetboot.observability import LogConfig, setup_logging, teardown_logging
from fleetboot.state import StateRepository

__version__ = "0.1.0"

__all__ = [
    "FleetConfig",
    "FleetManager",
    "FleetbootError",
    "InstanceRecord",
    "InstanceSpec",
    "LogConfig",
    "NodeGroup",
    "NodeRole",
    "PersistedState",
    "StateRepository",
    "VolumeSpec",
    "load_config",
    "setup_logging",
    "teardown_logging",
]
