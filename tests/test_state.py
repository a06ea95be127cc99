from __future__ import annotations

import json
import stat
from pathlib import Path

import pytest

from fleetboot.api.model import InstanceRecord, PersistedState
from fleetboot.core.exceptions import StateError
from fleetboot.state import StateRepository

pytestmark = [pytest.mark.unit]


class TestLoad:
    def test_missing_file_is_empty_state(self, repo: StateRepository):
        state = repo.load()
        assert state == PersistedState()
        assert state.projects == {}
        assert state.records("any") == ()

    def test_null_maps_are_backfilled(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text('{"user_id": 7, "projects": null, "instances": null}')
        state = StateRepository(path).load()
        assert state.user_id == 7
        assert state.projects == {}
        assert state.instances == {}

    def test_empty_file_is_empty_state(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("")
        assert StateRepository(path).load() == PersistedState()

    def test_corrupt_file_raises(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateError, match="Corrupt"):
            StateRepository(path).load()

    def test_non_object_raises(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2]")
        with pytest.raises(StateError):
            StateRepository(path).load()


class TestSave:
    def test_on_disk_schema(self, repo: StateRepository):
        repo.set_user_id(3)
        repo.set_project_id("demo", 9)
        repo.append_instance("demo", InstanceRecord(11, "validator-1", "1.2.3.4"))

        data = json.loads(repo.path.read_text())
        assert data == {
            "user_id": 3,
            "projects": {"demo": 9},
            "instances": {"demo": [{"id": 11, "name": "validator-1", "public_ip": "1.2.3.4"}]},
        }

    def test_save_leaves_no_temp_files(self, repo: StateRepository):
        repo.set_user_id(1)
        repo.set_user_id(2)
        assert [p.name for p in repo.path.parent.iterdir()] == ["state.json"]

    def test_file_is_world_readable(self, repo: StateRepository):
        repo.set_user_id(1)
        assert stat.S_IMODE(repo.path.stat().st_mode) == 0o644

    def test_write_failure_raises_state_error(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        repo = StateRepository(blocker / "state.json")
        with pytest.raises(StateError, match="Failed to write"):
            repo.save(PersistedState(user_id=1))

    def test_survives_reload(self, tmp_path: Path):
        path = tmp_path / "state.json"
        StateRepository(path).set_project_id("p", 5)
        assert StateRepository(path).load().project_id("p") == 5


class TestMutations:
    def test_append_rejects_duplicate_name(self, repo: StateRepository):
        repo.append_instance("p", InstanceRecord(1, "a"))
        with pytest.raises(StateError, match="already recorded"):
            repo.append_instance("p", InstanceRecord(2, "a"))

    def test_append_preserves_order(self, repo: StateRepository):
        for i, name in enumerate(["c", "a", "b"]):
            repo.append_instance("p", InstanceRecord(i, name))
        assert [r.name for r in repo.load().records("p")] == ["c", "a", "b"]

    def test_update_address(self, repo: StateRepository):
        repo.append_instance("p", InstanceRecord(1, "a"))
        repo.append_instance("p", InstanceRecord(2, "b"))
        state = repo.update_address("p", 2, "10.0.0.2")
        assert state.find("p", "a").public_ip == ""
        assert state.find("p", "b").public_ip == "10.0.0.2"
        assert repo.load() == state

    def test_remove_and_clear(self, repo: StateRepository):
        repo.append_instance("p", InstanceRecord(1, "a"))
        repo.append_instance("p", InstanceRecord(2, "b"))
        repo.append_instance("q", InstanceRecord(3, "c"))

        assert [r.id for r in repo.remove_instance("p", 1).records("p")] == [2]
        state = repo.clear_instances("p")
        assert state.records("p") == ()
        assert state.records("q") == (InstanceRecord(3, "c"),)

    def test_zero_project_id_means_not_created(self, repo: StateRepository):
        assert repo.load().project_id("missing") == 0
