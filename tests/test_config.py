from __future__ import annotations

from pathlib import Path

import pytest

from fleetboot.api.spec import NodeRole
from fleetboot.config import (
    API_KEY_ENV,
    FleetConfig,
    _deep_merge,
    build_specs,
    load_config,
    resolve,
)
from fleetboot.core.exceptions import ConfigurationError

pytestmark = [pytest.mark.unit]


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def paths(tmp_path: Path) -> tuple[Path, Path]:
    return tmp_path / "project" / "fleetboot.toml", tmp_path / "home" / "defaults.toml"


class TestDeepMerge:
    def test_nested_tables_merge(self):
        merged = _deep_merge(
            {"api": {"base_url": "a", "username": "u"}, "seed": 1},
            {"api": {"base_url": "b"}},
        )
        assert merged == {"api": {"base_url": "b", "username": "u"}, "seed": 1}

    def test_scalars_replace_tables(self):
        assert _deep_merge({"x": {"a": 1}}, {"x": 2}) == {"x": 2}

    def test_inputs_untouched(self):
        base = {"api": {"base_url": "a"}}
        _deep_merge(base, {"api": {"base_url": "b"}})
        assert base == {"api": {"base_url": "a"}}


class TestLoadConfig:
    def test_defaults_without_files(self, paths):
        project, global_ = paths
        cfg = load_config(project_path=project, global_path=global_, env={})
        assert isinstance(cfg, FleetConfig)
        assert cfg.api.base_url == "http://localhost:8000/talis"
        assert cfg.versions.go == "1.23.0"
        assert cfg.seed == 42
        assert [s.name for s in cfg.specs] == [f"validator-{i}" for i in range(1, 5)]
        assert all(s.install_app and not s.install_node for s in cfg.specs)

    def test_project_overrides_global(self, paths):
        project, global_ = paths
        write(global_, '[api]\nbase_url = "http://global"\nusername = "alice"\n')
        write(project, '[api]\nbase_url = "http://project"\n')

        cfg = load_config(project_path=project, global_path=global_, env={})

        assert cfg.api.base_url == "http://project"
        assert cfg.api.username == "alice"

    def test_api_key_from_env_only(self, paths):
        project, global_ = paths
        cfg = load_config(project_path=project, global_path=global_, env={API_KEY_ENV: "k"})
        assert cfg.require_api_key() == "k"
        assert "k" not in repr(cfg.api)

    def test_missing_api_key(self, paths):
        project, global_ = paths
        cfg = load_config(project_path=project, global_path=global_, env={})
        with pytest.raises(ConfigurationError, match=API_KEY_ENV):
            cfg.require_api_key()

    def test_invalid_toml(self, paths):
        project, global_ = paths
        write(project, "[api\n")
        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            load_config(project_path=project, global_path=global_, env={})


class TestSections:
    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigurationError, match="Unknown keys in \\[api\\]: colour"):
            resolve({"api": {"colour": "blue"}}, env={})

    def test_section_must_be_table(self):
        with pytest.raises(ConfigurationError, match="must be a table"):
            resolve({"ssh": "root"}, env={})

    def test_ssh_paths_expanded(self, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("HOME", str(tmp_path))
        cfg = resolve({"ssh": {"key_path": "~/.ssh/key", "host_key_policy": "pinned"}}, env={})
        assert cfg.ssh.key_path == str(tmp_path / ".ssh" / "key")
        assert cfg.ssh.host_key_policy == "pinned"

    def test_unknown_host_key_policy(self):
        with pytest.raises(ConfigurationError, match="host key policy"):
            resolve({"ssh": {"host_key_policy": "trust-me"}}, env={})

    def test_network_and_seed(self):
        cfg = resolve({"network": {"seed": 7, "home_dir": "/data", "gas_price": "0.002"}}, env={})
        assert cfg.seed == 7
        assert cfg.network.home_dir == "/data"
        assert cfg.network.gas_price == "0.002"

    def test_versions(self):
        cfg = resolve({"versions": {"app": "v4.0.0"}}, env={})
        assert cfg.versions.get("app") == "v4.0.0"
        assert cfg.versions.get(None) == ""

    def test_state_and_fleet(self, tmp_path: Path):
        cfg = resolve({
            "state": {"path": str(tmp_path / "s.json")},
            "fleet": {"ready_timeout": 60, "poll_interval": 1},
        }, env={})
        assert cfg.state_path == tmp_path / "s.json"
        assert cfg.ready_timeout == 60.0
        assert cfg.poll_interval == 1.0


class TestNodeGroups:
    def test_groups_expand_over_template(self):
        specs = build_specs({
            "instance": {"region": "fra1", "ssh_key_name": "ops", "volume_size_gb": 20},
            "nodes": [
                {"role": "validator", "count": 2},
                {"role": "bridge", "count": 1, "size": "s-4vcpu-8gb", "volume_gb": 100},
            ],
        })

        assert [s.name for s in specs] == ["validator-1", "validator-2", "bridge-1"]
        validator, bridge = specs[0], specs[2]
        assert validator.region == "fra1"
        assert validator.ssh_key_name == "ops"
        assert validator.volume.size_gb == 20
        assert validator.install_app and not validator.install_node
        assert bridge.size == "s-4vcpu-8gb"
        assert bridge.volume.size_gb == 100
        assert bridge.install_node and not bridge.install_app

    def test_full_role_installs_both(self):
        [spec] = build_specs({"nodes": [{"role": "full", "count": 1}]})
        assert NodeRole.FULL.install_app and NodeRole.FULL.install_node
        assert spec.install_app and spec.install_node

    def test_tags_become_tuple(self):
        [spec] = build_specs({"instance": {"tags": ["a"]}, "nodes": [{"role": "light", "count": 1}]})
        assert spec.tags == ("a",)

    def test_unknown_role(self):
        with pytest.raises(ConfigurationError, match="Unknown node role 'miner'"):
            build_specs({"nodes": [{"role": "miner", "count": 1}]})

    def test_negative_count(self):
        with pytest.raises(ConfigurationError, match="negative count"):
            build_specs({"nodes": [{"role": "light", "count": -1}]})

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError, match="duplicate"):
            build_specs({"nodes": [{"role": "light", "count": 1}, {"role": "light", "count": 2}]})

    def test_empty_node_list(self):
        assert build_specs({"nodes": []}) == ()
