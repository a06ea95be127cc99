"""Custom exception hierarchy for fleetboot.

All fleetboot-specific exceptions inherit from FleetbootError, enabling
callers to catch every failure of an operation with a single except clause.
"""

from __future__ import annotations

from collections.abc import Sequence


class FleetbootError(Exception):
    """Base exception for all fleetboot errors."""


class ConfigurationError(FleetbootError):
    """Raised for invalid configuration or missing required settings."""


class StateError(FleetbootError):
    """Raised when the persisted state file cannot be read or written."""


# =============================================================================
# Provider API
# =============================================================================


class ProviderError(FleetbootError):
    """Raised when a fleet-provider API call fails.

    Fatal for the current operation; previously persisted state is left intact.
    """

    def __init__(self, message: str, *, status: int = 0, code: int | None = None, body: str = "") -> None:
        self.status = status
        self.code = code
        self.body = body
        super().__init__(message)


class ProviderNotFoundError(ProviderError):
    """Raised when a looked-up entity does not exist. Recoverable: triggers create."""


# =============================================================================
# Remote execution
# =============================================================================


class RemoteConnectionError(FleetbootError):
    """Raised when an SSH session cannot be established (transport or auth)."""

    def __init__(self, host: str, reason: str) -> None:
        self.host = host
        self.reason = reason
        super().__init__(f"Connection to {host} failed: {reason}")


class RemoteExecError(FleetbootError):
    """Raised when a remote command or file transfer fails."""

    def __init__(
        self,
        host: str,
        command: str,
        exit_status: int | None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        preview = command if len(command) <= 80 else command[:80] + "..."
        super().__init__(
            f"Command on {host} failed ({exit_status}): {preview}\n"
            f"stdout: {stdout.strip()}\nstderr: {stderr.strip()}"
        )


# =============================================================================
# Fleet operations
# =============================================================================


class FleetTimeoutError(FleetbootError):
    """Raised when instances do not become ready before the deadline."""

    def __init__(self, timeout: float, pending: Sequence[str]) -> None:
        self.timeout = timeout
        self.pending = tuple(pending)
        super().__init__(
            f"Instances not ready after {timeout:.0f}s: {', '.join(self.pending) or 'unknown'}"
        )


class InstallError(FleetbootError):
    """Raised when an install pass failed on one or more hosts.

    Only the first failure is rendered in the message; all of them are kept
    in ``failures`` as (host name, error) pairs.
    """

    def __init__(self, action: str, failures: Sequence[tuple[str, BaseException]]) -> None:
        self.action = action
        self.failures = tuple(failures)
        name, first = self.failures[0]
        extra = len(self.failures) - 1
        suffix = f" (+{extra} more host(s) failed)" if extra else ""
        super().__init__(f"install {action} failed on {name}: {first}{suffix}")


# =============================================================================
# Network bootstrap
# =============================================================================


class ConfigValidationError(FleetbootError):
    """Raised when a rendered application config fails validation."""

    def __init__(self, node: str, reason: str) -> None:
        self.node = node
        self.reason = reason
        super().__init__(f"Invalid app config for {node}: {reason}")


class GenesisSealedError(FleetbootError):
    """Raised when a validator is added after the genesis was exported."""


class BootstrapError(FleetbootError):
    """Raised when a bootstrap stage fails. No stage is retried."""

    def __init__(self, stage: str, node: str | None, error: BaseException | str) -> None:
        self.stage = stage
        self.node = node
        self.error = error
        where = f" on {node}" if node else ""
        super().__init__(f"Bootstrap stage '{stage}' failed{where}: {error}")
