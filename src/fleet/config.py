"""Configuration loader for the NetServa fleet toolkit."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("~/.ns/netserva.yml").expanduser()
DEFAULT_DB_PATH = "~/.ns/netserva.db"


@dataclass(frozen=True)
class SSHConfig:
    default_user: str
    port: int
    key_path: Optional[str]
    timeout: int
    use_sudo: bool


@dataclass(frozen=True)
class RemoteConfig:
    strict_mode: bool
    heredoc_marker: str


@dataclass(frozen=True)
class BinaryLaneConfig:
    api_token: Optional[str]
    timeout: int
    max_attempts: int


@dataclass(frozen=True)
class NetServaConfig:
    db_path: Path
    ssh: SSHConfig
    remote: RemoteConfig
    vault_key: Optional[str]
    binarylane: BinaryLaneConfig
    timezone_area: str
    timezone_city: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetServaConfig":
        ssh_data = data.get("ssh", {})
        remote_data = data.get("remote", {})
        bl_data = data.get("binarylane", {})
        defaults = data.get("defaults", {})
        return cls(
            db_path=Path(data.get("db_path", DEFAULT_DB_PATH)).expanduser(),
            ssh=SSHConfig(
                default_user=ssh_data.get("default_user", "root"),
                port=int(ssh_data.get("port", 22)),
                key_path=ssh_data.get("key_path"),
                timeout=int(ssh_data.get("timeout", 30)),
                use_sudo=_as_bool(ssh_data.get("use_sudo", True)),
            ),
            remote=RemoteConfig(
                strict_mode=_as_bool(remote_data.get("strict_mode", True)),
                heredoc_marker=remote_data.get("heredoc_marker", "NETSERVA_SCRIPT_EOF"),
            ),
            vault_key=data.get("vault", {}).get("key"),
            binarylane=BinaryLaneConfig(
                api_token=bl_data.get("api_token"),
                timeout=int(bl_data.get("timeout", 30)),
                max_attempts=int(bl_data.get("max_attempts", 3)),
            ),
            timezone_area=defaults.get("timezone_area", "Australia"),
            timezone_city=defaults.get("timezone_city", "Sydney"),
        )


ENV_MAP = {
    "db_path": "NETSERVA_DB",
    "ssh.default_user": "NETSERVA_SSH_USER",
    "ssh.port": "NETSERVA_SSH_PORT",
    "ssh.key_path": "SSH_PRIVATE_KEY_PATH",
    "ssh.timeout": "NETSERVA_SSH_TIMEOUT",
    "ssh.use_sudo": "NETSERVA_USE_SUDO",
    "remote.strict_mode": "NETSERVA_STRICT_MODE",
    "vault.key": "NETSERVA_VAULT_KEY",
    "binarylane.api_token": "BINARYLANE_API_TOKEN",
    "binarylane.timeout": "BINARYLANE_TIMEOUT",
}

_INT_KEYS = {"port", "timeout", "max_attempts"}
_BOOL_KEYS = {"use_sudo", "strict_mode"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in _INT_KEYS:
            try:
                value = int(value)
            except ValueError:
                raise ConfigurationError(f"{env_name} must be a whole number, got '{value}'") from None
        elif last in _BOOL_KEYS:
            value = _as_bool(value)
        target[last] = value

    return merged


def load_config(config_path: str | Path | None = None) -> NetServaConfig:
    """Load the YAML config, then apply environment overrides.

    An explicit path must exist. Without one, ``$NETSERVA_CONFIG`` or
    ``~/.ns/netserva.yml`` is read when present and built-in defaults are
    used otherwise.
    """
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path)
    else:
        env_path = os.environ.get("NETSERVA_CONFIG")
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
        if env_path and not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path) if path.exists() else {}

    data = merge_env_overrides(data)
    return NetServaConfig.from_dict(data)
