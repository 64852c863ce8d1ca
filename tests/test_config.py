from pathlib import Path

import pytest

from fleet.config import NetServaConfig, load_config, merge_env_overrides
from fleet.errors import ConfigurationError


def test_load_config_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("NETSERVA_CONFIG", raising=False)
    path = tmp_path / "netserva.yml"
    path.write_text("db_path: /tmp/fleet.db", encoding="utf-8")

    cfg = load_config(path)

    assert isinstance(cfg, NetServaConfig)
    assert cfg.db_path == Path("/tmp/fleet.db")
    assert cfg.ssh.default_user == "root"
    assert cfg.ssh.port == 22
    assert cfg.remote.strict_mode is True
    assert cfg.remote.heredoc_marker == "NETSERVA_SCRIPT_EOF"
    assert cfg.binarylane.max_attempts == 3
    assert cfg.timezone_area == "Australia"


def test_nested_yaml_sections(tmp_path):
    path = tmp_path / "netserva.yml"
    path.write_text(
        "ssh:\n  default_user: admin\n  port: 2222\n  use_sudo: false\n"
        "defaults:\n  timezone_area: Europe\n  timezone_city: Berlin\n",
        encoding="utf-8",
    )

    cfg = load_config(path)

    assert cfg.ssh.default_user == "admin"
    assert cfg.ssh.port == 2222
    assert cfg.ssh.use_sudo is False
    assert cfg.timezone_city == "Berlin"


def test_env_overrides(monkeypatch, tmp_path):
    source = tmp_path / "netserva.yml"
    source.write_text("ssh:\n  port: 22", encoding="utf-8")

    monkeypatch.setenv("NETSERVA_SSH_PORT", "2200")
    monkeypatch.setenv("NETSERVA_STRICT_MODE", "no")
    monkeypatch.setenv("NETSERVA_VAULT_KEY", "secret-key")
    monkeypatch.setenv("BINARYLANE_API_TOKEN", "bl-token")

    cfg = load_config(source)

    assert cfg.ssh.port == 2200
    assert cfg.remote.strict_mode is False
    assert cfg.vault_key == "secret-key"
    assert cfg.binarylane.api_token == "bl-token"


def test_merge_env_overrides_does_not_mutate_input(monkeypatch):
    monkeypatch.setenv("NETSERVA_SSH_USER", "deploy")
    original = {"ssh": {"default_user": "root"}}

    merged = merge_env_overrides(original)

    assert merged["ssh"]["default_user"] == "deploy"
    assert original["ssh"]["default_user"] == "root"


def test_explicit_missing_path_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yml")


def test_missing_env_config_path_raises(monkeypatch, tmp_path):
    monkeypatch.setenv("NETSERVA_CONFIG", str(tmp_path / "absent.yml"))
    with pytest.raises(FileNotFoundError):
        load_config()


def test_defaults_without_any_file(monkeypatch, tmp_path):
    monkeypatch.delenv("NETSERVA_CONFIG", raising=False)
    monkeypatch.setattr("fleet.config.DEFAULT_CONFIG_PATH", tmp_path / "none.yml")
    monkeypatch.setenv("NETSERVA_DB", str(tmp_path / "x.db"))

    cfg = load_config()

    assert cfg.db_path == tmp_path / "x.db"


def test_non_numeric_env_override_names_the_variable(monkeypatch):
    monkeypatch.setenv("NETSERVA_SSH_TIMEOUT", "30s")
    with pytest.raises(ConfigurationError, match="NETSERVA_SSH_TIMEOUT must be a whole number, got '30s'"):
        merge_env_overrides({})
