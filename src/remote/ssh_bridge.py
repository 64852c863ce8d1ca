#!/usr/bin/env python3
"""
SSH Exec Bridge — one paramiko session per vnode

The executor above this layer owns heredocs, sudo and strict mode. A
bridge only ships a finished command string to one host and hands back
exit status, stdout and stderr as an ExecResult.

Keys are searched in order:
1. key_path argument (ssh.key_path in netserva.yml)
2. SSH_PRIVATE_KEY_PATH
3. key_content argument or SSH_PRIVATE_KEY (PEM text)
4. ~/.ssh/id_ed25519, ~/.ssh/id_rsa

Password auth, agents and ~/.ssh/config are never consulted.

Usage:
    with SSHExecBridge(host="203.0.113.10", username="sysadm") as bridge:
        result = bridge.exec("getent passwd | cut -d: -f3")
"""

import io
import logging
import os
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

import paramiko

logger = logging.getLogger(__name__)

DEFAULT_KEY_FILES = ("~/.ssh/id_ed25519", "~/.ssh/id_rsa")

# Exec records kept per bridge; older entries are dropped first
EXEC_LOG_LIMIT = 500


@dataclass
class ExecResult:
    """Outcome of one command on one vnode."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    error: str = ""
    dry_run: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _key_types():
    return (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


def read_key_file(path: str):
    """Parse a private key file with the first key type that accepts it."""
    for key_type in _key_types():
        try:
            return key_type.from_private_key_file(path)
        except (paramiko.SSHException, ValueError):
            continue
        except OSError as e:
            logger.error(f"Cannot read SSH key {path}: {e}")
            return None
    logger.error(f"Unsupported SSH key format: {path}")
    return None


def parse_key_text(content: str):
    """Parse PEM key text, as injected through SSH_PRIVATE_KEY."""
    buffer = io.StringIO(content)
    for key_type in _key_types():
        buffer.seek(0)
        try:
            return key_type.from_private_key(buffer)
        except (paramiko.SSHException, ValueError):
            continue
    logger.error("SSH_PRIVATE_KEY does not hold a supported private key")
    return None


def load_private_key(key_path: str = None, key_content: str = None):
    """Walk the key search order and return the first usable key, or None."""
    candidates = [key_path, os.environ.get("SSH_PRIVATE_KEY_PATH")]
    for candidate in candidates:
        if candidate and os.path.isfile(os.path.expanduser(candidate)):
            return read_key_file(os.path.expanduser(candidate))

    content = key_content or os.environ.get("SSH_PRIVATE_KEY", "")
    if content:
        return parse_key_text(content)

    for default in DEFAULT_KEY_FILES:
        path = os.path.expanduser(default)
        if os.path.isfile(path):
            return read_key_file(path)
    return None


class SSHExecBridge:
    """Key-authenticated command channel to a single vnode."""

    DEFAULT_TIMEOUT = 30
    DEFAULT_PORT = 22

    def __init__(
        self,
        host: str,
        username: str = "root",
        port: int = None,
        key_path: str = None,
        key_content: str = None,
        timeout: int = None,
    ):
        self.host = host
        self.username = username or "root"
        self.port = port or self.DEFAULT_PORT
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.last_error = ""
        self._client: Optional[paramiko.SSHClient] = None
        self._exec_log: List[ExecResult] = []
        self._key = load_private_key(key_path, key_content)

        if self._key is None:
            logger.warning(f"No SSH private key available for {self.host}")

    # ── Connection ───────────────────────────────────────────────

    def _refuse(self, reason: str) -> bool:
        self.last_error = reason
        logger.error(f"SSH {self.username}@{self.host}:{self.port}: {reason}")
        self._client = None
        return False

    def connect(self) -> bool:
        """Open the session. Returns False, with last_error set, on any failure."""
        if not self.host:
            return self._refuse("no address recorded for vnode")
        if not self._key:
            return self._refuse("no private key loaded")

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=self._key,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException:
            return self._refuse("key rejected")
        except (paramiko.SSHException, OSError) as e:
            return self._refuse(str(e) or e.__class__.__name__)

        self._client = client
        self.last_error = ""
        logger.info(f"SSH session open: {self.username}@{self.host}:{self.port}")
        return True

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug(f"SSH session to {self.host} closed")

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return bool(transport and transport.is_active())

    # ── Execution ────────────────────────────────────────────────

    def _record(self, result: ExecResult) -> ExecResult:
        self._exec_log.append(result)
        if len(self._exec_log) > EXEC_LOG_LIMIT:
            del self._exec_log[: len(self._exec_log) - EXEC_LOG_LIMIT]

        first_line = result.command.splitlines()[0][:80] if result.command else ""
        logger.log(
            logging.INFO if result.success else logging.WARNING,
            f"[SSH] {self.host}: {first_line} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)",
        )
        return result

    def exec(self, command: str, timeout: int = None) -> ExecResult:
        """
        Run ``command`` and wait for it to finish.

        Transport problems never raise. They come back with exit_code -1
        and the reason in both stderr and error.
        """
        started = time.time()

        if not self.connected and not self.connect():
            reason = f"SSH connection failed: {self.last_error}"
            return self._record(ExecResult(
                command=command, exit_code=-1, stdout="", stderr=reason,
                success=False, duration_ms=0, host=self.host, error=reason,
            ))

        try:
            _, out, err = self._client.exec_command(command, timeout=timeout or self.timeout)
            # Drain both streams before waiting so large script output cannot stall the channel
            stdout = out.read().decode("utf-8", errors="replace").strip()
            stderr = err.read().decode("utf-8", errors="replace").strip()
            exit_code = out.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            self.close()
            return self._record(ExecResult(
                command=command, exit_code=-1, stdout="", stderr=str(e),
                success=False, duration_ms=round((time.time() - started) * 1000, 1),
                host=self.host, error=str(e),
            ))

        return self._record(ExecResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            success=exit_code == 0,
            duration_ms=round((time.time() - started) * 1000, 1),
            host=self.host,
        ))

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent executions first."""
        return [entry.to_dict() for entry in reversed(self._exec_log[-limit:])]

    def get_exec_stats(self) -> Dict[str, Any]:
        total = len(self._exec_log)
        failures = sum(1 for entry in self._exec_log if not entry.success)
        elapsed = sum(entry.duration_ms for entry in self._exec_log)
        return {
            "host": self.host,
            "user": self.username,
            "connected": self.connected,
            "total_commands": total,
            "successes": total - failures,
            "failures": failures,
            "avg_duration_ms": round(elapsed / total, 1) if total else 0,
            "last_error": self.last_error,
        }

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"SSHExecBridge({self.username}@{self.host}:{self.port}, {state})"
