"""Fleet reconciliation: make provider reality match the desired InstanceSpecs.

Reconciliation is idempotent. Entities already recorded in state are never
created again; only missing instances are requested, readiness is awaited
and discovered addresses are filled in. Partial progress is persisted after
every mutation so a crash mid-fleet never loses track of created instances.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from fleetboot.api.model import PENDING_STATUSES, InstanceInfo, InstanceRecord
from fleetboot.api.spec import InstanceSpec
from fleetboot.core.exceptions import (
    ConfigurationError,
    FleetTimeoutError,
    ProviderError,
    ProviderNotFoundError,
)
from fleetboot.providers.base import FleetProvider
from fleetboot.state import StateRepository

READY_STATUS = "ready"
TERMINAL_STATUSES: frozenset[str] = frozenset({"terminated", "failed", "error", "deleted"})
POLL_INTERVAL = 5.0
DEFAULT_READY_TIMEOUT = 300.0


@dataclass(frozen=True, slots=True)
class InstanceStatusReport:
    record: InstanceRecord
    status: str


class FleetReconciler:
    """Owns the InstanceRecord lifecycle. The only writer of PersistedState."""

    def __init__(
        self,
        provider: FleetProvider,
        repository: StateRepository,
        *,
        username: str,
        project: str,
        project_description: str = "",
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._provider = provider
        self._repo = repository
        self._username = username
        self._project = project
        self._description = project_description
        self._poll_interval = poll_interval
        self._log = logger.bind(component="reconciler", project=project)

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def ensure_user(self) -> int:
        """Return the owner id, looking it up or creating it when unknown."""
        state = self._repo.load()
        if state.user_id:
            return state.user_id

        try:
            user_id = await self._provider.get_user(self._username)
            self._log.info("Found user {name} ({id})", name=self._username, id=user_id)
        except ProviderNotFoundError:
            user_id = await self._provider.create_user(self._username)
            self._log.info("Created user {name} ({id})", name=self._username, id=user_id)

        self._repo.set_user_id(user_id)
        return user_id

    async def ensure_project(self, user_id: int) -> int:
        """Return the project id, looking it up or creating it when unknown."""
        state = self._repo.load()
        if project_id := state.project_id(self._project):
            return project_id

        try:
            project_id = await self._provider.get_project(self._project, user_id)
            self._log.info("Found project {name} ({id})", name=self._project, id=project_id)
        except ProviderNotFoundError:
            project_id = await self._provider.create_project(
                self._project, self._description, user_id,
            )
            self._log.info("Created project {name} ({id})", name=self._project, id=project_id)

        self._repo.set_project_id(self._project, project_id)
        return project_id

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def _request_name(self, spec: InstanceSpec, index: int) -> str:
        return f"{self._project}-{spec.name}-{index}"

    async def _match_created(
        self, request_name: str, idempotency_key: str, user_id: int,
    ) -> InstanceInfo:
        """Find the instance created by the request just issued.

        Prefers an instance echoing the idempotency token, then one carrying
        the request name, and only then the most recently created pending
        instance not already recorded.
        """
        pending = await self._provider.list_instances(self._project, user_id, PENDING_STATUSES)
        known = {r.id for r in self._repo.load().records(self._project)}
        candidates = [i for i in pending if i.id not in known]
        if not candidates:
            raise ProviderError(f"No pending instance found after creating {request_name}")

        if by_key := [i for i in candidates if i.idempotency_key == idempotency_key]:
            return by_key[0]
        if by_name := [i for i in candidates if i.name == request_name]:
            return max(by_name, key=lambda i: (i.created_at, i.id))
        self._log.warning(
            "Provider did not echo {name}; matching most recent pending instance",
            name=request_name,
        )
        return max(candidates, key=lambda i: (i.created_at, i.id))

    async def _find_committed(self, idempotency_key: str, user_id: int) -> InstanceInfo | None:
        """The unrecorded instance echoing ``idempotency_key``, if the provider has one."""
        instances = await self._provider.list_instances(self._project, user_id)
        known = {r.id for r in self._repo.load().records(self._project)}
        return next(
            (i for i in instances if i.id not in known and i.idempotency_key == idempotency_key),
            None,
        )

    async def create_missing(
        self, specs: Sequence[InstanceSpec], user_id: int,
    ) -> tuple[InstanceRecord, ...]:
        """Create every spec not yet recorded. Returns the records created now."""
        created: list[InstanceRecord] = []
        for index, spec in enumerate(specs):
            if self._repo.load().find(self._project, spec.name) is not None:
                self._log.debug("Instance {name} already recorded", name=spec.name)
                continue

            request_name = self._request_name(spec, index)
            key = uuid.uuid4().hex
            self._log.info("Creating instance {i}: {name}...", i=index, name=spec.name)
            try:
                await self._provider.create_instance(
                    spec,
                    request_name=request_name,
                    owner_id=user_id,
                    project=self._project,
                    idempotency_key=key,
                )
            except ProviderError as e:
                # a 5xx may follow a committed create
                if e.status < 500:
                    raise
                self._log.warning(
                    "Create of {name} answered {status}; checking whether it was committed",
                    name=spec.name, status=e.status,
                )
                committed = await self._find_committed(key, user_id)
                if committed is None:
                    raise
                info = committed
            else:
                info = await self._match_created(request_name, key, user_id)
            record = InstanceRecord(id=info.id, name=spec.name)
            self._repo.append_instance(self._project, record)
            created.append(record)
        return tuple(created)

    async def wait_until_ready(
        self, records: Sequence[InstanceRecord], timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> dict[int, InstanceInfo]:
        """Poll until every record is ready with an address, or the deadline passes.

        Raises:
            FleetTimeoutError: If any instance is still not ready after ``timeout``.
            ProviderError: If an instance reaches a terminal state.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()

        while True:
            infos: dict[int, InstanceInfo] = {}
            pending: list[str] = []
            for record in records:
                info = await self._provider.get_instance(record.id)
                self._log.debug("Instance {name} status: {status}", name=record.name, status=info.status)
                if info.status in TERMINAL_STATUSES:
                    raise ProviderError(f"Instance {record.name} ({record.id}) is {info.status}")
                if info.status != READY_STATUS or not info.public_ip:
                    pending.append(record.name)
                infos[record.id] = info

            if not pending:
                self._log.info("All {n} instances are ready", n=len(records))
                return infos

            if loop.time() - start >= timeout:
                raise FleetTimeoutError(timeout, pending)

            await asyncio.sleep(self._poll_interval)

    async def prepare(
        self, specs: Sequence[InstanceSpec], timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> tuple[InstanceRecord, ...]:
        """Reconcile the fleet: entities, instances, readiness, addresses.

        Returns:
            Records for ``specs``, in spec order, with addresses populated.
        """
        names = [s.name for s in specs]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate instance names in {names}")

        user_id = await self.ensure_user()
        await self.ensure_project(user_id)
        await self.create_missing(specs, user_id)

        state = self._repo.load()
        wanted = set(names)
        orphans = [r.name for r in state.records(self._project) if r.name not in wanted]
        if orphans:
            self._log.warning("Recorded instances not in configuration: {names}", names=orphans)

        records = tuple(r for name in names if (r := state.find(self._project, name)) is not None)
        infos = await self.wait_until_ready(records, timeout)

        for record in records:
            address = infos[record.id].public_ip
            self._log.info("Instance {name} IP: {ip}", name=record.name, ip=address)
            if record.public_ip != address:
                self._repo.update_address(self._project, record.id, address)

        state = self._repo.load()
        return tuple(r for name in names if (r := state.find(self._project, name)) is not None)

    async def delete_all(self) -> int:
        """Delete every recorded instance of the project. Returns how many."""
        state = self._repo.load()
        project_id = state.project_id(self._project)
        if not project_id:
            raise ConfigurationError(f"Project {self._project} not found in state")

        user_id = await self.ensure_user()
        records = state.records(self._project)
        if not records:
            self._log.info("No instances found for project {name}", name=self._project)
            return 0

        self._log.info("Deleting {n} instances for project {name}...", n=len(records), name=self._project)
        for record in records:
            await self._provider.delete_instances(self._project, user_id, [record.id])
            self._repo.remove_instance(self._project, record.id)
            self._log.info("Deleted instance {name} ({id})", name=record.name, id=record.id)

        self._repo.clear_instances(self._project)
        return len(records)

    async def status(self) -> list[InstanceStatusReport]:
        """Provider-reported status of every recorded instance."""
        reports = []
        for record in self._repo.load().records(self._project):
            try:
                info = await self._provider.get_instance(record.id)
                status = info.status
            except ProviderNotFoundError:
                status = "missing"
            reports.append(InstanceStatusReport(record, status))
        return reports
