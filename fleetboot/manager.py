"""FleetManager - one facade over reconciliation, installs and bootstrap.

Wires configuration to the provider client, state repository, SSH executor
and the three orchestrators. Each public coroutine is one operation of the
command surface.

Example:
    >>> async with FleetManager(load_config()) as mgr:
    ...     await mgr.prepare_infra()
    ...     await mgr.install("go")
    ...     await mgr.bootstrap_network("test-chain")
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from loguru import logger

from fleetboot.api.model import InstanceRecord
from fleetboot.config import FleetConfig
from fleetboot.core.exceptions import ConfigurationError
from fleetboot.fleet.installer import APP, GO, NODE, ConcurrentInstaller, InstallReport, get_action
from fleetboot.fleet.reconciler import FleetReconciler, InstanceStatusReport
from fleetboot.infra.ssh import RemoteExecutor, SSHExecutor
from fleetboot.network.bootstrap import BootstrapResult, BootstrapSequencer, Participant
from fleetboot.network.keys import KeyGenerator
from fleetboot.providers.base import FleetProvider
from fleetboot.providers.talis import TalisClient
from fleetboot.state import StateRepository


class FleetManager:
    """Runs fleet operations against one configured project."""

    def __init__(
        self,
        config: FleetConfig,
        *,
        provider: FleetProvider | None = None,
        executor: RemoteExecutor | None = None,
        repository: StateRepository | None = None,
    ) -> None:
        self.config = config
        self._provider = provider
        self._owns_provider = provider is None
        self._executor = executor or SSHExecutor(config.ssh)
        self._repo = repository or StateRepository(config.state_path)
        self._installer = ConcurrentInstaller(self._executor, config.network.concurrency)
        self._log = logger.bind(component="manager", project=config.api.project)

    async def __aenter__(self) -> FleetManager:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_provider and isinstance(self._provider, TalisClient):
            await self._provider.close()
            self._provider = None

    @property
    def repository(self) -> StateRepository:
        return self._repo

    def _reconciler(self) -> FleetReconciler:
        if self._provider is None:
            api = self.config.api
            self._provider = TalisClient(api.base_url, self.config.require_api_key(), timeout=api.timeout)
        return FleetReconciler(
            self._provider,
            self._repo,
            username=self.config.api.username,
            project=self.config.api.project,
            project_description=self.config.api.project_description,
            poll_interval=self.config.poll_interval,
        )

    def records(self) -> tuple[InstanceRecord, ...]:
        return self._repo.load().records(self.config.api.project)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def prepare_infra(self, timeout: float | None = None) -> tuple[InstanceRecord, ...]:
        """Reconcile the configured specs with the provider."""
        if not self.config.specs:
            raise ConfigurationError("No instances configured")
        self._log.info("Preparing infrastructure for {n} instances...", n=len(self.config.specs))
        return await self._reconciler().prepare(
            self.config.specs, timeout if timeout is not None else self.config.ready_timeout,
        )

    async def install(self, component: str, version: str | None = None) -> InstallReport:
        """Install one component on every instance that wants it."""
        action = get_action(component)
        if version is None:
            version = self.config.versions.get(action.version_key)
        records = self.records()
        if not records:
            raise ConfigurationError(
                f"No instances recorded for project {self.config.api.project}; run prepare-infra first"
            )
        self._log.info(
            "Installing {desc} {version} on instances...",
            desc=action.description, version=version or "(latest)",
        )
        return await self._installer.install(action, version, records, self.config.specs)

    async def deploy(self, timeout: float | None = None) -> list[InstallReport]:
        """prepare-infra followed by the go, app and node install passes."""
        await self.prepare_infra(timeout)
        reports = []
        for action in (GO, APP, NODE):
            reports.append(await self.install(action.name))
        return reports

    def participants(self) -> list[Participant]:
        """Nodes running the consensus app, in recorded order."""
        wants_app = {s.name for s in self.config.specs if s.install_app}
        participants = []
        for record in self.records():
            if record.name not in wants_app:
                continue
            if not record.public_ip:
                raise ConfigurationError(f"Instance {record.name} has no public IP; run prepare-infra first")
            participants.append(Participant(record.name, record.public_ip))
        return participants

    async def bootstrap_network(
        self,
        chain_id: str,
        seed: int | None = None,
        participants: Sequence[Participant] | None = None,
    ) -> BootstrapResult:
        """Generate identities, configs and genesis, and distribute them."""
        nodes = list(participants) if participants is not None else self.participants()
        keygen = KeyGenerator(self.config.seed if seed is None else seed)
        sequencer = BootstrapSequencer(self._executor, chain_id, keygen, self.config.network)
        return await sequencer.run(nodes)

    async def delete_all(self) -> int:
        return await self._reconciler().delete_all()

    async def status(self) -> list[InstanceStatusReport]:
        return await self._reconciler().status()
