from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path

import pytest

from fleetboot.api.model import InstanceInfo
from fleetboot.api.spec import InstanceSpec
from fleetboot.core.exceptions import (
    ProviderError,
    ProviderNotFoundError,
    RemoteConnectionError,
    RemoteExecError,
)
from fleetboot.infra.ssh import CommandResult
from fleetboot.state import StateRepository

# =============================================================================
# Provider
# =============================================================================


class FakeProvider:
    """In-memory fleet API.

    ``ready_after`` is the number of ``get_instance`` polls an instance stays
    pending before turning ready; ``None`` keeps it pending forever.
    """

    def __init__(self, *, ready_after: int | None = 0, echo_key: bool = True) -> None:
        self.ready_after = ready_after
        self.echo_key = echo_key
        self.users: dict[str, int] = {}
        self.projects: dict[str, int] = {}
        self.instances: dict[int, InstanceInfo] = {}
        self.polls: dict[int, int] = {}
        self.calls: list[str] = []
        self.created: list[str] = []
        self.deleted: list[int] = []
        self.create_error: int | None = None
        self.create_commits = True
        self._next_id = 100

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def get_user(self, username: str) -> int:
        self.calls.append("get_user")
        if username not in self.users:
            raise ProviderNotFoundError(f"user {username}", status=404)
        return self.users[username]

    async def create_user(self, username: str) -> int:
        self.calls.append("create_user")
        self.users[username] = self._id()
        return self.users[username]

    async def get_project(self, name: str, owner_id: int) -> int:
        self.calls.append("get_project")
        if name not in self.projects:
            raise ProviderNotFoundError(f"project {name}", code=404)
        return self.projects[name]

    async def create_project(self, name: str, description: str, owner_id: int) -> int:
        self.calls.append("create_project")
        self.projects[name] = self._id()
        return self.projects[name]

    async def create_instance(
        self,
        spec: InstanceSpec,
        *,
        request_name: str,
        owner_id: int,
        project: str,
        idempotency_key: str,
    ) -> None:
        self.calls.append("create_instance")
        if self.create_error is None or self.create_commits:
            self.created.append(request_name)
            instance_id = self._id()
            self.instances[instance_id] = InstanceInfo(
                id=instance_id,
                name=request_name,
                status="pending",
                created_at=f"2025-01-01T00:00:00.{instance_id:06d}Z",
                idempotency_key=idempotency_key if self.echo_key else "",
            )
        if self.create_error is not None:
            raise ProviderError("POST /instances failed", status=self.create_error)

    async def list_instances(
        self, project: str, owner_id: int, statuses: frozenset[str] | None = None,
    ) -> Sequence[InstanceInfo]:
        self.calls.append("list_instances")
        return [i for i in self.instances.values() if statuses is None or i.status in statuses]

    async def get_instance(self, instance_id: int) -> InstanceInfo:
        self.calls.append("get_instance")
        info = self.instances.get(instance_id)
        if info is None:
            raise ProviderNotFoundError(f"instance {instance_id}", status=404)
        polls = self.polls.get(instance_id, 0)
        self.polls[instance_id] = polls + 1
        if self.ready_after is not None and polls >= self.ready_after and info.status != "ready":
            info = replace(info, status="ready", public_ip=f"10.0.0.{instance_id - 100}")
            self.instances[instance_id] = info
        return info

    async def delete_instances(self, project: str, owner_id: int, instance_ids: Sequence[int]) -> None:
        self.calls.append("delete_instances")
        for instance_id in instance_ids:
            self.instances.pop(instance_id, None)
            self.deleted.append(instance_id)


# =============================================================================
# Remote executor
# =============================================================================


@dataclass
class Rule:
    host: str | None
    needle: str
    exit_status: int


@dataclass
class FakeExecutor:
    """Records every remote interaction and the peak number of open sessions."""

    delay: float = 0.01
    unreachable: set[str] = field(default_factory=set)
    rules: list[Rule] = field(default_factory=list)
    commands: list[tuple[str, str]] = field(default_factory=list)
    files: dict[tuple[str, str], tuple[bytes, int | None]] = field(default_factory=dict)
    writes: list[tuple[str, str]] = field(default_factory=list)
    copies: list[tuple[str, str, str, int | None]] = field(default_factory=list)
    open_sessions: int = 0
    peak_sessions: int = 0
    connects: int = 0

    def respond(self, needle: str, exit_status: int, host: str | None = None) -> None:
        self.rules.append(Rule(host, needle, exit_status))

    def exit_status(self, host: str, command: str) -> int:
        for rule in reversed(self.rules):
            if rule.needle in command and rule.host in (None, host):
                return rule.exit_status
        return 0

    def commands_on(self, host: str) -> list[str]:
        return [c for h, c in self.commands if h == host]

    @asynccontextmanager
    async def connect(self, host: str) -> AsyncIterator[FakeSession]:
        self.connects += 1
        if host in self.unreachable:
            raise RemoteConnectionError(host, "connection refused")
        self.open_sessions += 1
        self.peak_sessions = max(self.peak_sessions, self.open_sessions)
        try:
            await asyncio.sleep(self.delay)
            yield FakeSession(host, self)
        finally:
            self.open_sessions -= 1


class FakeSession:
    def __init__(self, host: str, executor: FakeExecutor) -> None:
        self._host = host
        self._executor = executor

    @property
    def host(self) -> str:
        return self._host

    async def run(self, command: str, *, check: bool = True) -> tuple[str, str] | CommandResult:
        self._executor.commands.append((self._host, command))
        await asyncio.sleep(0)
        code = self._executor.exit_status(self._host, command)
        if not check:
            return CommandResult(code, "", "")
        if code != 0:
            raise RemoteExecError(self._host, command, code, "", "boom")
        return "", ""

    async def write_file(self, path: str, content: str | bytes, *, mode: int | None = None) -> None:
        data = content.encode() if isinstance(content, str) else content
        self._executor.writes.append((self._host, path))
        self._executor.files[(self._host, path)] = (data, mode)

    async def copy_file(self, local_path: str | Path, remote_path: str, *, mode: int | None = None) -> None:
        assert Path(local_path).is_file(), f"missing local file {local_path}"
        self._executor.copies.append((self._host, str(local_path), remote_path, mode))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_provider() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def repo(tmp_path: Path) -> StateRepository:
    return StateRepository(tmp_path / "state" / "state.json")


@pytest.fixture
def make_executor() -> type[FakeExecutor]:
    return FakeExecutor
