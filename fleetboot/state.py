"""File-backed state repository.

The repository is the only mutation boundary for persisted fleet state.
Every mutation is a read-modify-write: the current file is loaded, the
change applied to a fresh immutable PersistedState, and the result written
back atomically (temp file, fsync, rename) before the new state is returned.

Concurrent use by several processes is not supported: there is no
cross-process lock, the last writer wins.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import replace
from pathlib import Path

from loguru import logger

from fleetboot.api.model import InstanceRecord, PersistedState
from fleetboot.core.exceptions import StateError

DEFAULT_STATE_PATH = Path.home() / ".fleetboot" / "state.json"


class StateRepository:
    """Load and persist PersistedState at a fixed path."""

    def __init__(self, path: Path | str = DEFAULT_STATE_PATH) -> None:
        self._path = Path(path).expanduser()
        self._log = logger.bind(component="state")

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> PersistedState:
        """Load state. A missing file yields an empty, initialized state."""
        try:
            raw = self._path.read_text()
        except FileNotFoundError:
            self._log.debug("No state file at {path}, starting fresh", path=self._path)
            return PersistedState()
        except OSError as e:
            raise StateError(f"Failed to read state file {self._path}: {e}") from e

        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state file {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise StateError(f"Corrupt state file {self._path}: expected an object")
        return PersistedState.from_json(data)

    def save(self, state: PersistedState) -> None:
        """Write state atomically: temp file in the same directory, then rename."""
        payload = json.dumps(state.to_json(), indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent,
            )
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, 0o644)
                os.replace(tmp, self._path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Failed to write state file {self._path}: {e}") from e
        self._log.trace("State saved to {path}", path=self._path)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _commit(self, state: PersistedState) -> PersistedState:
        self.save(state)
        return state

    def set_user_id(self, user_id: int) -> PersistedState:
        return self._commit(replace(self.load(), user_id=user_id))

    def set_project_id(self, project: str, project_id: int) -> PersistedState:
        state = self.load()
        return self._commit(replace(state, projects={**state.projects, project: project_id}))

    def append_instance(self, project: str, record: InstanceRecord) -> PersistedState:
        state = self.load()
        if state.find(project, record.name) is not None:
            raise StateError(f"Instance {record.name} already recorded for project {project}")
        return self._commit(state.with_records(project, (*state.records(project), record)))

    def update_address(self, project: str, instance_id: int, public_ip: str) -> PersistedState:
        state = self.load()
        records = tuple(
            replace(r, public_ip=public_ip) if r.id == instance_id else r
            for r in state.records(project)
        )
        return self._commit(state.with_records(project, records))

    def remove_instance(self, project: str, instance_id: int) -> PersistedState:
        state = self.load()
        records = tuple(r for r in state.records(project) if r.id != instance_id)
        return self._commit(state.with_records(project, records))

    def clear_instances(self, project: str) -> PersistedState:
        return self._commit(self.load().with_records(project, ()))
