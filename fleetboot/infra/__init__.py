"""Internal machinery - HTTP, SSH, bounded concurrency."""

from .conc import Outcome, run_bounded
from .http import BearerAuth, HttpClient, HttpError
from .ssh import (
    CommandResult,
    RemoteExecutor,
    RemoteSession,
    SSHConfig,
    SSHExecutor,
    SSHSession,
)

__all__ = [
    "BearerAuth",
    "CommandResult",
    "HttpClient",
    "HttpError",
    "Outcome",
    "RemoteExecutor",
    "RemoteSession",
    "SSHConfig",
    "SSHExecutor",
    "SSHSession",
    "run_bounded",
]
