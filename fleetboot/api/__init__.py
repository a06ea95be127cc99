from .model import InstanceInfo, InstanceRecord, InstanceStatus, PersistedState
from .spec import InstanceSpec, NodeGroup, NodeRole, VolumeSpec

__all__ = [
    "InstanceInfo",
    "InstanceRecord",
    "InstanceSpec",
    "InstanceStatus",
    "NodeGroup",
    "NodeRole",
    "PersistedState",
    "VolumeSpec",
]
