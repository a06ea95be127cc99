"""Fleet API provider."""

from .client import TalisClient, build_instance_request

__all__ = ["TalisClient", "build_instance_request"]
