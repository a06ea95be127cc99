from .installer import COMPONENTS, ConcurrentInstaller, HostResult, InstallAction, InstallReport
from .reconciler import FleetReconciler, InstanceStatusReport

__all__ = [
    "COMPONENTS",
    "ConcurrentInstaller",
    "FleetReconciler",
    "HostResult",
    "InstallAction",
    "InstallReport",
    "InstanceStatusReport",
]
