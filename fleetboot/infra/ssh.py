"""AsyncSSH-based remote executor.

Service class pattern - connection settings are bound at construction,
hosts are passed per session.

Every command runs behind a preamble that sources the user's shell profile
and extends PATH with known install locations, so binaries installed by an
earlier step are invokable by plain name in later steps regardless of
whether the remote shell is a login shell.

Example:
    >>> executor = SSHExecutor(SSHConfig(user="root", key_path="~/.ssh/id_ed25519"))
    >>> async with executor.connect("10.0.0.1") as session:
    ...     stdout, _ = await session.run("go version")
    ...     await session.write_file("/etc/motd", "hello\\n", mode=0o644)
"""

from __future__ import annotations

import contextlib
import shlex
import uuid
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Literal, Protocol, overload, runtime_checkable

import asyncssh
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from fleetboot.core.exceptions import (
    ConfigurationError,
    FleetbootError,
    RemoteConnectionError,
    RemoteExecError,
)

type HostKeyPolicy = Literal["tofu", "pinned", "insecure"]

PROFILE_PREAMBLE = """\
if [ -f "$HOME/.bashrc" ]; then
    . "$HOME/.bashrc"
elif [ -f "$HOME/.bash_profile" ]; then
    . "$HOME/.bash_profile"
fi
if [ -d "/usr/local/go/bin" ]; then
    export PATH="$PATH:/usr/local/go/bin"
fi
if [ -d "$HOME/go/bin" ]; then
    export PATH="$PATH:$HOME/go/bin"
fi
"""


def wrap_command(command: str) -> str:
    """Prefix a command with the profile/PATH preamble."""
    return f"{PROFILE_PREAMBLE}\n{command}"


# =============================================================================
# Configuration & results
# =============================================================================


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration.

    Args:
        user: Remote user.
        key_path: Private key used for authentication (key auth only).
        port: SSH port.
        connect_timeout: Per-attempt connect timeout in seconds.
        connect_attempts: Connection attempts before giving up.
        connect_retry_delay: Fixed delay between attempts in seconds.
        host_key_policy: "tofu" records unknown host keys on first contact and
            verifies them afterwards, "pinned" requires the key to be present
            in known_hosts already, "insecure" skips verification (tests only).
        known_hosts: known_hosts file used by "tofu" and "pinned".
    """

    user: str = "root"
    key_path: str = "~/.ssh/id_ed25519"
    port: int = 22
    connect_timeout: float = 30.0
    connect_attempts: int = 5
    connect_retry_delay: float = 3.0
    host_key_policy: HostKeyPolicy = "tofu"
    known_hosts: str = "~/.fleetboot/known_hosts"


@dataclass(frozen=True, slots=True)
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class RemoteSession(Protocol):
    """One authenticated session to one host."""

    @property
    def host(self) -> str: ...

    @overload
    async def run(self, command: str, *, check: Literal[True] = True) -> tuple[str, str]: ...

    @overload
    async def run(self, command: str, *, check: Literal[False]) -> CommandResult: ...

    async def run(self, command: str, *, check: bool = True) -> tuple[str, str] | CommandResult: ...

    async def write_file(self, path: str, content: str | bytes, *, mode: int | None = None) -> None: ...

    async def copy_file(self, local_path: str | Path, remote_path: str, *, mode: int | None = None) -> None: ...


@runtime_checkable
class RemoteExecutor(Protocol):
    """Opens sessions to hosts."""

    def connect(self, host: str) -> AbstractAsyncContextManager[RemoteSession]: ...


# =============================================================================
# Host keys
# =============================================================================


class KnownHosts:
    """known_hosts store for trust-on-first-use.

    Lookups go through asyncssh, so hashed (``|1|...``) and wildcard entries
    written by OpenSSH match as well as the plain entries recorded here.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    @staticmethod
    def host_pattern(host: str, port: int) -> str:
        return host if port == 22 else f"[{host}]:{port}"

    def contains(self, host: str, port: int = 22) -> bool:
        if not self.path.is_file():
            return False
        try:
            known = asyncssh.read_known_hosts(str(self.path))
        except ValueError as e:
            raise ConfigurationError(f"Invalid known_hosts file {self.path}: {e}") from e
        host_keys, ca_keys, *_ = known.match(host, host, port)
        return bool(host_keys or ca_keys)

    def record(self, host: str, port: int, key: asyncssh.SSHKey) -> None:
        public = key.export_public_key("openssh").decode().split()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a") as f:
            f.write(f"{self.host_pattern(host, port)} {public[0]} {public[1]}\n")


def _is_retryable(e: BaseException) -> bool:
    if isinstance(e, (asyncssh.HostKeyNotVerifiable, asyncssh.PermissionDenied)):
        return False
    return isinstance(e, (OSError, asyncssh.Error))


# =============================================================================
# Session
# =============================================================================


class SSHSession:
    """Session over one asyncssh connection."""

    def __init__(self, host: str, conn: asyncssh.SSHClientConnection) -> None:
        self._host = host
        self._conn = conn
        self._log = logger.bind(component="ssh", host=host)

    @property
    def host(self) -> str:
        return self._host

    async def run(self, command: str, *, check: bool = True) -> tuple[str, str] | CommandResult:  # type: ignore[override]
        """Execute a command.

        With ``check=True`` (default) returns (stdout, stderr) and raises
        RemoteExecError on non-zero exit. With ``check=False`` returns a
        CommandResult regardless of the exit status.
        """
        preview = command.strip().splitlines()[0][:80] if command.strip() else ""
        self._log.debug("run: {cmd}", cmd=preview)
        try:
            result = await self._conn.run(wrap_command(command), check=False)
        except (OSError, asyncssh.Error) as e:
            raise RemoteExecError(self._host, command, None, "", str(e)) from e

        code = result.returncode if result.returncode is not None else -1
        stdout = str(result.stdout or "")
        stderr = str(result.stderr or "")
        self._log.trace("exit_code={code}", code=code)

        if not check:
            return CommandResult(code, stdout, stderr)
        if code != 0:
            raise RemoteExecError(self._host, command, code, stdout, stderr)
        return stdout, stderr

    async def write_file(self, path: str, content: str | bytes, *, mode: int | None = None) -> None:
        """Write content to a remote file via SFTP, then apply ``mode``."""
        data = content.encode() if isinstance(content, str) else content
        self._log.debug("write {path} ({n} bytes)", path=path, n=len(data))
        try:
            async with self._conn.start_sftp_client() as sftp:
                async with sftp.open(path, "wb") as f:
                    await f.write(data)
                if mode is not None:
                    await sftp.chmod(path, mode)
        except (OSError, asyncssh.Error) as e:
            raise RemoteExecError(self._host, f"write {path}", None, "", str(e)) from e

    async def copy_file(self, local_path: str | Path, remote_path: str, *, mode: int | None = None) -> None:
        """Copy a local file to the host.

        The content lands in a temporary remote path first and is moved onto
        ``remote_path`` only once fully written, so a failed copy never leaves
        a partial destination file.
        """
        local = Path(local_path)
        try:
            data = local.read_bytes()
        except OSError as e:
            raise RemoteExecError(self._host, f"copy {local}", None, "", str(e)) from e

        tmp = f"/tmp/fleetboot-{uuid.uuid4().hex[:12]}-{PurePosixPath(local.name).name}"
        try:
            await self.write_file(tmp, data, mode=mode)
            await self.run(f"mv -f {shlex.quote(tmp)} {shlex.quote(remote_path)}")
        except FleetbootError:
            with contextlib.suppress(FleetbootError):
                await self.run(f"rm -f {shlex.quote(tmp)}", check=False)
            raise


# =============================================================================
# Executor
# =============================================================================


class SSHExecutor:
    """Opens authenticated asyncssh sessions, one connection per session."""

    def __init__(self, config: SSHConfig) -> None:
        self.config = config
        self._key_path = str(Path(config.key_path).expanduser())
        self._known_hosts = KnownHosts(config.known_hosts)
        self._log = logger.bind(component="ssh")
        if config.host_key_policy not in ("tofu", "pinned", "insecure"):
            raise ConfigurationError(f"Unknown host key policy: {config.host_key_policy}")

    def _known_hosts_arg(self, host: str) -> str | None:
        match self.config.host_key_policy:
            case "insecure":
                self._log.warning("Host key verification disabled for {host}", host=host)
                return None
            case "pinned":
                if not self._known_hosts.contains(host, self.config.port):
                    raise RemoteConnectionError(
                        host, f"host key not pinned in {self._known_hosts.path}",
                    )
                return str(self._known_hosts.path)
            case _:
                if self._known_hosts.contains(host, self.config.port):
                    return str(self._known_hosts.path)
                return None

    async def _open(self, host: str) -> asyncssh.SSHClientConnection:
        known_hosts = self._known_hosts_arg(host)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.connect_attempts),
                wait=wait_fixed(self.config.connect_retry_delay),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    if n > 1:
                        self._log.debug("connect {host}: attempt {n}", host=host, n=n)
                    conn = await asyncssh.connect(
                        host,
                        port=self.config.port,
                        username=self.config.user,
                        client_keys=[self._key_path],
                        known_hosts=known_hosts,
                        connect_timeout=self.config.connect_timeout,
                    )
        except (OSError, asyncssh.Error) as e:
            raise RemoteConnectionError(host, str(e) or type(e).__name__) from e

        if self.config.host_key_policy == "tofu" and known_hosts is None:
            key = conn.get_server_host_key()
            if key is not None:
                self._known_hosts.record(host, self.config.port, key)
                self._log.info("Recorded host key for {host}", host=host)
        return conn

    @asynccontextmanager
    async def connect(self, host: str) -> AsyncIterator[SSHSession]:
        conn = await self._open(host)
        try:
            yield SSHSession(host, conn)
        finally:
            conn.close()
            with contextlib.suppress(OSError, asyncssh.Error):
                await conn.wait_closed()
