"""Tests for configuration file support and domain configs."""

import json
import os
from pathlib import Path
from unittest import mock


def test_get_config_value_env_precedence():
    """Verify environment variables take precedence over config file."""
    from agent_mesh_bus.config import _get_config_value

    config = {"opencode_port": 5000}

    with mock.patch.dict(os.environ, {"OPENCODE_PORT": "6000"}):
        value = _get_config_value("OPENCODE_PORT", ["opencode_port"], 4096, config, int)
        assert value == 6000


def test_get_config_value_config_file():
    """Verify config file values are used when env var not set."""
    from agent_mesh_bus.config import _get_config_value

    config = {"opencode_port": 5000}

    with mock.patch.dict(os.environ, {}, clear=True):
        value = _get_config_value("OPENCODE_PORT", ["opencode_port"], 4096, config, int)
        assert value == 5000


def test_get_config_value_default():
    """Verify default is used when neither env var nor config file has value."""
    from agent_mesh_bus.config import _get_config_value

    with mock.patch.dict(os.environ, {}, clear=True):
        value = _get_config_value("OPENCODE_PORT", ["opencode_port"], 4096, {}, int)
        assert value == 4096


def test_get_config_value_nested_path():
    """Verify nested config paths work correctly."""
    from agent_mesh_bus.config import _get_config_value

    config = {"delivery": {"idle_window": 3, "settle_delay": "0.25"}}

    with mock.patch.dict(os.environ, {}, clear=True):
        assert _get_config_value("X", ["delivery", "idle_window"], 2.0, config, float) == 3.0
        assert _get_config_value("X", ["delivery", "settle_delay"], 0.5, config, float) == 0.25
        assert _get_config_value("X", ["delivery", "missing"], 7, config, int) == 7
        assert _get_config_value("X", ["consumer", "poll_interval"], 5, config, int) == 5


def test_get_config_value_bool_coercion():
    """Verify boolean string coercion works."""
    from agent_mesh_bus.config import _get_config_value

    for true_val in ["true", "True", "TRUE", "1", "yes", "YES", "on"]:
        with mock.patch.dict(os.environ, {"TEST_BOOL": true_val}):
            value = _get_config_value("TEST_BOOL", ["test"], False, {}, bool)
            assert value is True, f"Failed for '{true_val}'"

    for false_val in ["false", "False", "0", "no", ""]:
        with mock.patch.dict(os.environ, {"TEST_BOOL": false_val}):
            value = _get_config_value("TEST_BOOL", ["test"], True, {}, bool)
            assert value is False, f"Failed for '{false_val}'"

    with mock.patch.dict(os.environ, {}, clear=True):
        assert _get_config_value("TEST_BOOL", ["test"], True, {"test": False}, bool) is False


def test_load_config_file_missing_and_invalid(tmp_path):
    """Verify _load_config_file returns empty dict for missing or broken files."""
    from agent_mesh_bus import config

    with mock.patch.object(config, "CONFIG_FILE", tmp_path / "nonexistent.json"):
        assert config._load_config_file() == {}

    broken = tmp_path / "config.json"
    broken.write_text("not valid json {{{")
    with mock.patch.object(config, "CONFIG_FILE", broken):
        assert config._load_config_file() == {}


def test_load_config_file_valid(tmp_path):
    """Verify _load_config_file loads valid JSON."""
    from agent_mesh_bus import config

    path = tmp_path / "config.json"
    path.write_text(json.dumps({"root": "/srv/tx", "log_level": "DEBUG"}))
    with mock.patch.object(config, "CONFIG_FILE", path):
        assert config._load_config_file() == {"root": "/srv/tx", "log_level": "DEBUG"}


def test_bus_config_load():
    """Verify BusConfig resolves env over file over defaults."""
    from agent_mesh_bus.config import BusConfig

    file_config = {
        "root": "/srv/tx",
        "session_backend": "opencode",
        "delivery": {"idle_timeout": 60},
        "consumer": {"enabled": False},
    }
    env = {"MESH_BUS_LOG_LEVEL": "debug", "MESH_BUS_IDLE_WINDOW": "4"}
    with mock.patch.dict(os.environ, env, clear=True):
        config = BusConfig.load(file_config)

    assert config.root == Path("/srv/tx")
    assert config.paths.meshes == Path("/srv/tx/meshes")
    assert config.log_level == "DEBUG"
    assert config.session_backend == "opencode"
    assert config.idle_timeout == 60.0
    assert config.idle_window == 4.0
    assert config.consumers_enabled is False
    assert config.lock_timeout == 5.0
    assert config.evidence_max_lines == 5000


def test_bus_paths_layout(tmp_path):
    """Verify tier and state locations for domains and participants."""
    from agent_mesh_bus.codec import Owner
    from agent_mesh_bus.config import BusPaths

    paths = BusPaths(root=tmp_path, meshes=tmp_path / "meshes")
    assert paths.tier_dir(Owner("d"), "inbox") == tmp_path / "mesh/d/msgs/inbox"
    assert paths.tier_dir(Owner("d", "a"), "outbox") == tmp_path / "mesh/d/agents/a/msgs/outbox"
    assert paths.state_file(Owner("d", "a")) == tmp_path / "mesh/d/agents/a/state.json"
    assert paths.offset_file("d/a") == tmp_path / "state/offsets/d-a.json"

    paths.ensure()
    paths.ensure_owner(Owner("d", "a"))
    assert (tmp_path / "msgs").is_dir()
    assert (tmp_path / "mesh/d/agents/a/msgs/outbox").is_dir()


def test_domain_config_instance_fallback(tmp_path):
    """Verify instance domains fall back to their base config."""
    from agent_mesh_bus.config import BusPaths, DomainConfigs

    paths = BusPaths(root=tmp_path, meshes=tmp_path / "meshes")
    config_file = paths.domain_config_file("research")
    config_file.parent.mkdir(parents=True)
    config_file.write_text(
        json.dumps(
            {
                "agents": ["research/interviewer", "writer"],
                "entry_point": "research/interviewer",
                "workflow": ["interviewer", "writer"],
            }
        )
    )
    domains = DomainConfigs(paths)

    assert domains.entry_point("research-807055") == "interviewer"
    assert domains.agents("research-807055") == ["interviewer", "writer"]
    assert domains.workflow("research") == ["interviewer", "writer"]
    assert domains.load("unknown") is None
    assert domains.entry_point("unknown") is None


def test_validate_route(tmp_path):
    """Verify routing table checks by status and target."""
    from agent_mesh_bus.config import BusPaths, DomainConfigs

    paths = BusPaths(root=tmp_path, meshes=tmp_path / "meshes")
    config_file = paths.domain_config_file("d")
    config_file.parent.mkdir(parents=True)
    config_file.write_text(json.dumps({"routing": {"a": {"complete": {"b": "when done"}}}}))
    domains = DomainConfigs(paths)

    assert domains.validate_route("d", "a", "complete", "d/b") == (True, None)
    assert domains.validate_route("d", "a", None, "d/c") == (True, None)
    assert domains.validate_route("d", "z", "complete", "d/c") == (True, None)
    ok, reason = domains.validate_route("d", "a", "complete", "d/c")
    assert not ok and "cannot route to 'c'" in reason
    ok, reason = domains.validate_route("d", "a", "blocked", "d/b")
    assert not ok and "Unknown status" in reason


def test_lens_and_template(tmp_path):
    """Verify lens index entries and templates are read from the meshes dir."""
    from agent_mesh_bus.config import BusPaths, DomainConfigs

    paths = BusPaths(root=tmp_path, meshes=tmp_path / "meshes")
    paths.lens_index_file.parent.mkdir(parents=True)
    paths.lens_index_file.write_text(
        json.dumps({"skeptic": {"perspective": "Doubt it."}, "plain": "Just the facts."})
    )
    template = paths.template_file("writer")
    template.parent.mkdir(parents=True)
    template.write_text("Write: $body")
    domains = DomainConfigs(paths)

    assert domains.lens("skeptic") == "Doubt it."
    assert domains.lens("plain") == "Just the facts."
    assert domains.lens("missing") is None
    assert domains.template("writer") == "Write: $body"
    assert domains.template("missing") is None


def test_default_participant(tmp_path):
    """Verify bare-domain recipients resolve entry point, then first agent, then the name."""
    from agent_mesh_bus.config import BusPaths, DomainConfigs

    paths = BusPaths(root=tmp_path, meshes=tmp_path / "meshes")
    configs = paths.meshes / "mesh-configs"
    configs.mkdir(parents=True)
    (configs / "d1.json").write_text(json.dumps({"agents": ["a", "b"], "entry_point": "x/b"}))
    (configs / "d2.json").write_text(json.dumps({"agents": ["editorial/first", "second"]}))
    domains = DomainConfigs(paths)

    assert domains.default_participant("d1") == "b"
    assert domains.default_participant("d2") == "first"
    assert domains.default_participant("solo") == "solo"
