"""Tests for centralized Config class."""

import pytest

from proton_gate import config as config_module
from proton_gate.config import Config, load_file_settings


def test_config_defaults():
    """Verify documented defaults."""
    assert Config.VAULT_CLI_NAME == "pass-cli"
    assert Config.SPAWN_POLL_INTERVAL == 1.0
    assert Config.UNLOCK_POLL_INTERVAL == 1.0
    assert Config.SESSION_FILE.endswith("session.json")
    assert Config.MANAGED_SOCKET.startswith(Config.STATE_DIR)


def test_config_validation_passes(monkeypatch):
    monkeypatch.setattr(Config, "SESSION_TTL", 900.0)
    monkeypatch.setattr(Config, "UNLOCK_TIMEOUT", 60.0)
    assert Config.validate() is True


@pytest.mark.parametrize(
    "attribute",
    ["SESSION_TTL", "UNLOCK_TIMEOUT", "CHECK_INTERVAL", "RESTART_DELAY", "PROBE_TIMEOUT"],
)
def test_config_validation_fails_on_non_positive_duration(monkeypatch, attribute):
    monkeypatch.setattr(Config, attribute, 0)
    with pytest.raises(ValueError, match=attribute):
        Config.validate()


def test_config_validation_fails_on_zero_spawn_attempts(monkeypatch):
    monkeypatch.setattr(Config, "SPAWN_ATTEMPTS", 0)
    with pytest.raises(ValueError, match="SPAWN_ATTEMPTS"):
        Config.validate()


def test_config_validation_rejects_same_canonical_and_managed_socket(monkeypatch):
    monkeypatch.setattr(Config, "CANONICAL_SOCKET", "/tmp/same.sock")
    monkeypatch.setattr(Config, "MANAGED_SOCKET", "/tmp/same.sock")
    with pytest.raises(ValueError, match="must be different"):
        Config.validate()


def test_config_validation_lists_every_problem(monkeypatch):
    monkeypatch.setattr(Config, "SESSION_TTL", -1)
    monkeypatch.setattr(Config, "UNLOCK_TIMEOUT", 0)
    with pytest.raises(ValueError) as excinfo:
        Config.validate()
    assert "SESSION_TTL" in str(excinfo.value)
    assert "UNLOCK_TIMEOUT" in str(excinfo.value)


def test_setting_precedence_env_over_file_over_default(monkeypatch):
    monkeypatch.setattr(config_module, "_FILE_SETTINGS", {"session_ttl": 120})
    monkeypatch.delenv("PROTON_SESSION_TTL", raising=False)
    assert config_module._setting("PROTON_SESSION_TTL", "session_ttl", 900) == 120

    monkeypatch.setenv("PROTON_SESSION_TTL", "30")
    assert config_module._setting("PROTON_SESSION_TTL", "session_ttl", 900) == "30"

    monkeypatch.setattr(config_module, "_FILE_SETTINGS", {})
    monkeypatch.setenv("PROTON_SESSION_TTL", "")
    assert config_module._setting("PROTON_SESSION_TTL", "session_ttl", 900) == 900


def test_parse_seconds_rejects_garbage():
    assert config_module._parse_seconds("2.5", "X") == 2.5
    with pytest.raises(ValueError, match="Invalid X"):
        config_module._parse_seconds("soon", "X")


def test_load_file_settings_missing_file(tmp_path):
    assert load_file_settings(tmp_path / "nope.yaml") == {}


def test_load_file_settings_reads_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("session_ttl: 300\nnative_sockets:\n  - ~/agent.sock\n")

    settings = load_file_settings(path)

    assert settings["session_ttl"] == 300
    assert settings["native_sockets"] == ["~/agent.sock"]


@pytest.mark.parametrize("content", ["session_ttl: [unclosed\n", "- just\n- a list\n"])
def test_load_file_settings_ignores_bad_files(tmp_path, content):
    path = tmp_path / "config.yaml"
    path.write_text(content)
    assert load_file_settings(path) == {}


def test_load_file_settings_empty_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_file_settings(path) == {}


def test_native_sockets_from_file_are_expanded(monkeypatch):
    monkeypatch.setattr(config_module, "_FILE_SETTINGS", {"native_sockets": ["~/a.sock"]})
    sockets = config_module._native_sockets()
    assert len(sockets) == 1
    assert not sockets[0].startswith("~")
