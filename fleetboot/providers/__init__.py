from .base import FleetProvider

__all__ = ["FleetProvider"]
