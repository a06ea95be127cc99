"""Fleet provider protocol.

The reconciler only talks to the provider through this interface, so tests
can drive it with an in-memory fake and other providers can be plugged in.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from fleetboot.api.model import InstanceInfo
from fleetboot.api.spec import InstanceSpec


@runtime_checkable
class FleetProvider(Protocol):
    """Provider operations consumed by the reconciler.

    Lookups raise ProviderNotFoundError when the entity is absent and
    ProviderError for any other failure.
    """

    async def get_user(self, username: str) -> int: ...

    async def create_user(self, username: str) -> int: ...

    async def get_project(self, name: str, owner_id: int) -> int: ...

    async def create_project(self, name: str, description: str, owner_id: int) -> int: ...

    async def create_instance(
        self,
        spec: InstanceSpec,
        *,
        request_name: str,
        owner_id: int,
        project: str,
        idempotency_key: str,
    ) -> None: ...

    async def list_instances(
        self, project: str, owner_id: int, statuses: frozenset[str] | None = None,
    ) -> Sequence[InstanceInfo]: ...

    async def get_instance(self, instance_id: int) -> InstanceInfo: ...

    async def delete_instances(self, project: str, owner_id: int, instance_ids: Sequence[int]) -> None: ...
