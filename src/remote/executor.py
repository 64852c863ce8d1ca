#!/usr/bin/env python3
"""
Remote Executor — heredoc script execution against fleet vnodes

Implements:
- exec(host, command) -> ExecResult
- execute_as_root(host, command) -> ExecResult
- execute_script(host, script, args, as_root, dry_run, strict_mode) -> ExecResult
- execute_script_with_vhost(host, env, script) -> ExecResult
- execute_sequence(host, commands, stop_on_error) -> SequenceResult
- detect_remote_os(host) -> dict
- get_os_variables(host) -> dict
- get_remote_file_content / put_remote_file_content
- create_remote_directory / remote_path_exists / get_remote_permissions
- test_root_access(host) -> bool

A whole bash script travels in ONE round trip:

    sudo -n bash -s -- 'arg1' 'arg 2' <<'NETSERVA_SCRIPT_EOF'
    #!/bin/bash
    set -euo pipefail
    ...
    NETSERVA_SCRIPT_EOF

The heredoc delimiter is quoted so nothing is expanded locally; $1..$n
inside the script are the shell-quoted arguments.
"""

import base64
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Sequence

from fleet.errors import ValidationError
from .ssh_bridge import SSHExecBridge, ExecResult

logger = logging.getLogger(__name__)

HEREDOC_MARKER = "NETSERVA_SCRIPT_EOF"
NO_EXIT_CODE = 255

OS_MIRRORS = {
    "debian": "deb.debian.org",
    "ubuntu": "archive.ubuntu.com",
    "alpine": "dl-cdn.alpinelinux.org",
    "arch": "archlinux.org",
    "cachyos": "archlinux.cachyos.org",
    "manjaro": "manjaro.moson.eu",
}

_SAFETY_RE = re.compile(r"^\s*set\s+-[a-zA-Z]*e", re.MULTILINE)


def single_quote(value: Any) -> str:
    """Quote a value for bash, always wrapping it in single quotes."""
    return "'" + str(value).replace("'", "'\\''") + "'"


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release KEY=VALUE lines, stripping quotes."""
    info = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        info[key.strip()] = value.strip().strip("'\"")
    return info


@dataclass
class HostTarget:
    """SSH coordinates for a vnode."""
    name: str
    address: str
    user: str = "root"
    port: int = 22


@dataclass
class SequenceResult:
    """Outcome of running several commands one after another."""
    results: List[ExecResult] = field(default_factory=list)
    success: bool = True
    completed: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "success": self.success,
            "completed_commands": self.completed,
            "total_commands": self.total,
        }


class RemoteExecutor:
    """
    Runs commands and scripts on vnodes recorded in the fleet store.

    Host names resolve through the vnodes table (ssh_host, then
    ip_address, then fqdn); unknown names are used as the address with
    the configured SSH defaults. One bridge is kept per host.

    Remote failures never raise: callers inspect ExecResult.success.
    """

    def __init__(
        self,
        store=None,
        config=None,
        bridge_factory: Callable[[HostTarget], Any] = None,
    ):
        self.store = store
        self.config = config
        self.marker = config.remote.heredoc_marker if config else HEREDOC_MARKER
        self.use_sudo = config.ssh.use_sudo if config else True
        self.strict_mode = config.remote.strict_mode if config else True
        self._bridge_factory = bridge_factory or self._default_bridge
        self._bridges: Dict[str, Any] = {}

    # ── Host Resolution ──────────────────────────────────────────

    def resolve_target(self, host: str) -> HostTarget:
        ssh = self.config.ssh if self.config else None
        default_user = ssh.default_user if ssh else "root"
        default_port = ssh.port if ssh else SSHExecBridge.DEFAULT_PORT

        vnode = self.store.get_vnode(host) if self.store else None
        if vnode:
            address = (
                vnode.get("ssh_host") or vnode.get("ip_address")
                or vnode.get("fqdn") or vnode["name"]
            )
            return HostTarget(
                name=host,
                address=address,
                user=vnode.get("ssh_user") or default_user,
                port=int(vnode.get("ssh_port") or default_port),
            )
        return HostTarget(name=host, address=host, user=default_user, port=default_port)

    def _default_bridge(self, target: HostTarget) -> SSHExecBridge:
        ssh = self.config.ssh if self.config else None
        return SSHExecBridge(
            host=target.address,
            username=target.user,
            port=target.port,
            key_path=ssh.key_path if ssh else None,
            timeout=ssh.timeout if ssh else None,
        )

    def _bridge(self, host: str):
        if host not in self._bridges:
            self._bridges[host] = self._bridge_factory(self.resolve_target(host))
        return self._bridges[host]

    def _is_root(self, host: str) -> bool:
        return self.resolve_target(host).user == "root"

    def close(self):
        for bridge in self._bridges.values():
            bridge.close()
        self._bridges.clear()

    # ── Commands ─────────────────────────────────────────────────

    def exec(self, host: str, command: str, timeout: int = None) -> ExecResult:
        return self._bridge(host).exec(command, timeout=timeout)

    def execute_as_root(self, host: str, command: str, use_sudo: bool = True,
                        timeout: int = None) -> ExecResult:
        """Run a command as root, via ``sudo -n`` unless already root."""
        if self._is_root(host) or not (use_sudo and self.use_sudo):
            return self.exec(host, command, timeout=timeout)
        return self.exec(host, f"sudo -n bash -c {shlex.quote(command)}", timeout=timeout)

    @staticmethod
    def chain(commands: Sequence[str]) -> str:
        return " && ".join(commands)

    # ── Scripts ──────────────────────────────────────────────────

    @staticmethod
    def wrap_strict(script: str) -> str:
        """Ensure a bash shebang and ``set -euo pipefail`` are present.

        An existing ``set -e`` (in any flag combination) is left alone.
        """
        shebang, body = "#!/bin/bash", script
        if script.startswith("#!"):
            shebang, _, body = script.partition("\n")
        if not _SAFETY_RE.search(body):
            body = "set -euo pipefail\n" + body
        return f"{shebang}\n{body}"

    def build_script_command(self, script: str, args: Sequence[Any] = (),
                             sudo: bool = False) -> str:
        if any(line.strip() == self.marker for line in script.splitlines()):
            raise ValidationError(f"Script must not contain the heredoc delimiter {self.marker}")
        quoted = " ".join(shlex.quote(str(a)) for a in args)
        invocation = "bash -s" + (f" -- {quoted}" if quoted else "")
        prefix = "sudo -n " if sudo else ""
        return f"{prefix}{invocation} <<'{self.marker}'\n{script.rstrip()}\n{self.marker}"

    def execute_script(
        self,
        host: str,
        script: str,
        args: Sequence[Any] = (),
        as_root: bool = True,
        dry_run: bool = False,
        strict_mode: bool = None,
        timeout: int = None,
    ) -> ExecResult:
        """
        Execute a bash script on a host in a single SSH round trip.

        Returns an ExecResult; a missing exit status is reported as 255.
        Raises ValidationError when the script contains the heredoc
        delimiter line. strict_mode=None follows remote.strict_mode.
        """
        if strict_mode is None:
            strict_mode = self.strict_mode
        if strict_mode:
            script = self.wrap_strict(script)

        if dry_run:
            self.build_script_command(script, args)
            shown = " ".join(shlex.quote(str(a)) for a in args)
            return ExecResult(
                command=f"bash -s {shown}".strip(),
                exit_code=0,
                stdout=f"[DRY RUN] Script would execute with args: {shown}",
                stderr="",
                success=True,
                duration_ms=0,
                host=host,
                dry_run=True,
            )

        sudo = as_root and self.use_sudo and not self._is_root(host)
        command = self.build_script_command(script, args, sudo=sudo)
        result = self.exec(host, command, timeout=timeout)

        if result.exit_code is None or result.exit_code < 0:
            result.exit_code = NO_EXIT_CODE
            result.success = False
            result.error = (
                "Script execution failed - no exit code returned (possible connection issue)"
            )
            if result.stderr:
                result.error += f": {result.stderr}"
        elif result.exit_code != 0:
            result.success = False
            result.error = f"Script failed with exit code: {result.exit_code}"

        if not result.success:
            logger.error(f"Remote script on {host} failed: {result.error}")
        return result

    def execute_script_with_vhost(
        self,
        host: str,
        env: Dict[str, str],
        script: str,
        args: Sequence[Any] = (),
        as_root: bool = True,
        dry_run: bool = False,
        strict_mode: bool = None,
    ) -> ExecResult:
        """Run a script with every vconf exported into its environment."""
        exports = "\n".join(f"export {k}={single_quote(v)}" for k, v in sorted(env.items()))
        if strict_mode is None:
            strict_mode = self.strict_mode
        if strict_mode:
            script = self.wrap_strict(script)
        head, body = "", script
        if script.startswith("#!"):
            head, _, body = script.partition("\n")
        combined = "\n".join(part for part in (head, exports, body) if part)
        return self.execute_script(
            host, combined, args, as_root=as_root, dry_run=dry_run, strict_mode=False,
        )

    def execute_sequence(self, host: str, commands: Sequence[str],
                         stop_on_error: bool = True, as_root: bool = False) -> SequenceResult:
        seq = SequenceResult(total=len(commands))
        for command in commands:
            if as_root:
                result = self.execute_as_root(host, command)
            else:
                result = self.exec(host, command)
            seq.results.append(result)
            if not result.success:
                seq.success = False
                if stop_on_error:
                    break
        seq.completed = len(seq.results)
        return seq

    # ── OS Detection ─────────────────────────────────────────────

    def detect_remote_os(self, host: str) -> Optional[Dict[str, str]]:
        result = self.exec(host, "cat /etc/os-release")
        if not result.success:
            logger.warning(f"OS detection failed on {host}: {result.stderr}")
            return None
        return parse_os_release(result.stdout) or None

    def get_os_variables(self, host: str) -> Dict[str, str]:
        """OSTYP, OSREL and OSMIR for a host; 'unknown' when undetectable."""
        info = self.detect_remote_os(host)
        if not info:
            return {"OSTYP": "unknown", "OSREL": "unknown", "OSMIR": "unknown"}
        ostyp = info.get("ID", "unknown").lower()
        return {
            "OSTYP": ostyp,
            "OSREL": info.get("VERSION_CODENAME") or info.get("VERSION_ID") or "unknown",
            "OSMIR": OS_MIRRORS.get(ostyp, "unknown"),
        }

    # ── Remote Files ─────────────────────────────────────────────

    def get_remote_file_content(self, host: str, path: str) -> Optional[str]:
        result = self.execute_as_root(host, f"cat {shlex.quote(path)}")
        return result.stdout if result.success else None

    def put_remote_file_content(self, host: str, path: str, content: str,
                                mode: str = None) -> bool:
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        target = shlex.quote(path)
        commands = [f"echo {encoded} | base64 -d > {target}"]
        if mode:
            commands.append(f"chmod {mode} {target}")
        return self.execute_as_root(host, self.chain(commands)).success

    def create_remote_directory(self, host: str, path: str, mode: str = "755",
                                owner: str = None) -> bool:
        target = shlex.quote(path)
        commands = [f"mkdir -p {target}", f"chmod {mode} {target}"]
        if owner:
            commands.append(f"chown {shlex.quote(owner)} {target}")
        return self.execute_as_root(host, self.chain(commands)).success

    def remote_path_exists(self, host: str, path: str) -> bool:
        return self.execute_as_root(host, f"test -e {shlex.quote(path)}").success

    def get_remote_permissions(self, host: str, path: str) -> Optional[str]:
        result = self.execute_as_root(host, f"stat -c '%a' {shlex.quote(path)}")
        return result.stdout.strip() if result.success else None

    def test_root_access(self, host: str) -> bool:
        result = self.execute_as_root(host, "whoami")
        return result.success and result.stdout.strip() == "root"

    def __repr__(self) -> str:
        return f"RemoteExecutor(hosts={sorted(self._bridges)})"
