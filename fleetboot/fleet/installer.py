"""Concurrent software installation across the fleet.

Each install pass checks every selected host for the component and, where
it is missing, copies the installer script over and runs it with the
requested version. Hosts are processed concurrently, at most
``concurrency`` open sessions at a time; a failing host never stops its
siblings, and the pass joins all workers before it returns or raises.
"""

from __future__ import annotations

import shlex
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, cast

from loguru import logger

from fleetboot.api.model import InstanceRecord
from fleetboot.api.spec import InstanceSpec
from fleetboot.core.exceptions import ConfigurationError, InstallError
from fleetboot.infra.conc import DEFAULT_CONCURRENCY, run_bounded
from fleetboot.infra.ssh import CommandResult, RemoteExecutor

SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"

type Selector = Callable[[InstanceRecord, InstanceSpec], bool]
type HostOutcome = Literal["installed", "skipped", "failed"]


def every_instance(_: InstanceRecord, __: InstanceSpec) -> bool:
    return True


def wants_app(_: InstanceRecord, spec: InstanceSpec) -> bool:
    return spec.install_app


def wants_node(_: InstanceRecord, spec: InstanceSpec) -> bool:
    return spec.install_node


# =============================================================================
# Actions
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstallAction:
    """One installable component.

    Args:
        name: Action identifier used on the command line.
        description: Human-readable component name for logs.
        script: Installer file name under the package ``scripts`` directory.
        presence_check: Shell snippet exiting 0 when the component is already present.
        selector: Which (record, spec) pairs want this component.
        version_key: Entry of the ``[versions]`` config section that applies.
    """

    name: str
    description: str
    script: str
    presence_check: str
    selector: Selector = every_instance
    version_key: str | None = None

    @property
    def script_path(self) -> Path:
        return SCRIPTS_DIR / self.script

    def command(self, version: str) -> str:
        invocation = f"./{self.script}"
        if version:
            invocation += f" {shlex.quote(version)}"
        return f"chmod +x {self.script} && {invocation}"


GO = InstallAction(
    name="go",
    description="Go toolchain",
    script="install_go.sh",
    presence_check=(
        'if [ -x "/usr/local/go/bin/go" ] || [ -x "$HOME/go/bin/go" ] '
        "|| command -v go > /dev/null 2>&1; then exit 0; else exit 1; fi"
    ),
    version_key="go",
)

APP = InstallAction(
    name="app",
    description="consensus app",
    script="install_celestia_app.sh",
    presence_check="command -v celestia-appd > /dev/null 2>&1",
    selector=wants_app,
    version_key="app",
)

NODE = InstallAction(
    name="node",
    description="data availability node",
    script="install_celestia_node.sh",
    presence_check="command -v celestia > /dev/null 2>&1",
    selector=wants_node,
    version_key="node",
)

APP_SERVICE = InstallAction(
    name="app-service",
    description="consensus app systemd service",
    script="setup_celestia_appd_service.sh",
    presence_check="systemctl is-active --quiet celestia-appd",
    selector=wants_app,
)

COMPONENTS: Mapping[str, InstallAction] = {a.name: a for a in (GO, APP, NODE, APP_SERVICE)}


def get_action(name: str) -> InstallAction:
    try:
        return COMPONENTS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown component '{name}'. Valid: {', '.join(COMPONENTS)}"
        ) from None


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class HostResult:
    name: str
    address: str
    outcome: HostOutcome
    error: Exception | None = None


@dataclass(frozen=True, slots=True)
class InstallReport:
    action: str
    results: tuple[HostResult, ...]

    def _with(self, outcome: HostOutcome) -> tuple[HostResult, ...]:
        return tuple(r for r in self.results if r.outcome == outcome)

    @property
    def installed(self) -> tuple[HostResult, ...]:
        return self._with("installed")

    @property
    def skipped(self) -> tuple[HostResult, ...]:
        return self._with("skipped")

    @property
    def failed(self) -> tuple[HostResult, ...]:
        return self._with("failed")

    def raise_for_failures(self) -> None:
        failures = [(r.name, r.error) for r in self.failed if r.error is not None]
        if failures:
            raise InstallError(self.action, failures)


# =============================================================================
# Installer
# =============================================================================


class ConcurrentInstaller:
    """Runs install passes with bounded parallelism."""

    def __init__(self, executor: RemoteExecutor, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self._executor = executor
        self._concurrency = concurrency
        self._log = logger.bind(component="installer")

    def select(
        self,
        action: InstallAction,
        records: Sequence[InstanceRecord],
        specs: Sequence[InstanceSpec],
    ) -> list[InstanceRecord]:
        """Records that are reachable and whose spec wants ``action``."""
        by_name = {s.name: s for s in specs}
        selected = []
        for record in records:
            if not record.public_ip:
                self._log.info("Skipping instance {id}: no public IP", id=record.id)
                continue
            spec = by_name.get(record.name)
            if spec is None or not action.selector(record, spec):
                self._log.info(
                    "Skipping {desc} on {name} ({ip}): not requested",
                    desc=action.description, name=record.name, ip=record.public_ip,
                )
                continue
            selected.append(record)
        return selected

    async def _install_on(self, action: InstallAction, version: str, record: InstanceRecord) -> HostOutcome:
        name, ip = record.name, record.public_ip
        async with self._executor.connect(ip) as session:
            self._log.info("Checking {desc} on {name} ({ip})...", desc=action.description, name=name, ip=ip)
            present: CommandResult = await session.run(action.presence_check, check=False)
            if present.ok:
                self._log.info("{desc} already installed on {name} ({ip})", desc=action.description, name=name, ip=ip)
                return "skipped"

            self._log.info("Installing {desc} on {name} ({ip})...", desc=action.description, name=name, ip=ip)
            await session.copy_file(action.script_path, action.script, mode=0o755)
            await session.run(action.command(version))
            self._log.info("Installed {desc} on {name} ({ip})", desc=action.description, name=name, ip=ip)
            return "installed"

    async def run(
        self,
        action: InstallAction,
        version: str,
        records: Sequence[InstanceRecord],
        specs: Sequence[InstanceSpec],
    ) -> InstallReport:
        """Run one install pass and return every host's result without raising."""
        selected = self.select(action, records, specs)

        async def work(record: InstanceRecord) -> HostOutcome:
            return await self._install_on(action, version, record)

        outcomes = await run_bounded(work, selected, self._concurrency)
        results = []
        for outcome in outcomes:
            record = outcome.item
            if outcome.error is None:
                results.append(HostResult(record.name, record.public_ip, cast(HostOutcome, outcome.value)))
            else:
                self._log.error(
                    "Failed to install {desc} on {name} ({ip}): {err}",
                    desc=action.description, name=record.name, ip=record.public_ip, err=outcome.error,
                )
                results.append(HostResult(record.name, record.public_ip, "failed", outcome.error))
        return InstallReport(action.name, tuple(results))

    async def install(
        self,
        action: InstallAction,
        version: str,
        records: Sequence[InstanceRecord],
        specs: Sequence[InstanceSpec],
    ) -> InstallReport:
        """Run one install pass; raise InstallError if any host failed."""
        report = await self.run(action, version, records, specs)
        report.raise_for_failures()
        return report
