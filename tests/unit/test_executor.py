#!/usr/bin/env python3
"""
Unit tests for the Remote Executor
"""

import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from fleet.config import NetServaConfig
from fleet.errors import ValidationError
from remote.executor import (
    HEREDOC_MARKER, NO_EXIT_CODE, HostTarget, RemoteExecutor, parse_os_release, single_quote,
)
from remote.ssh_bridge import ExecResult


# ── Helpers ──────────────────────────────────────────────────────

class TestHelpers:

    def test_single_quote_escapes(self):
        assert single_quote("it's") == "'it'\\''s'"
        assert single_quote(42) == "'42'"

    def test_parse_os_release(self):
        info = parse_os_release('# comment\nID="alpine"\nVERSION_ID=3.20.1\n\nBROKEN\n')
        assert info == {"ID": "alpine", "VERSION_ID": "3.20.1"}

    def test_wrap_strict_adds_safety(self):
        wrapped = RemoteExecutor.wrap_strict("echo hi")
        assert wrapped.splitlines()[:2] == ["#!/bin/bash", "set -euo pipefail"]

    def test_wrap_strict_keeps_shebang(self):
        wrapped = RemoteExecutor.wrap_strict("#!/usr/bin/env bash\necho hi")
        assert wrapped.splitlines()[0] == "#!/usr/bin/env bash"
        assert wrapped.splitlines()[1] == "set -euo pipefail"

    def test_wrap_strict_respects_existing_set_e(self):
        script = "#!/bin/bash\nset -eu\necho hi"
        assert RemoteExecutor.wrap_strict(script) == script


# ── Host Resolution ──────────────────────────────────────────────

class TestResolution:

    def test_known_vnode(self, store, executor):
        store.add_vnode("mail1", ip_address="203.0.113.5", ssh_host="mail1.lan",
                        ssh_user="admin", ssh_port=2222)
        target = executor.resolve_target("mail1")
        assert target == HostTarget(name="mail1", address="mail1.lan", user="admin", port=2222)

    def test_ip_fallback(self, executor, vnode):
        assert executor.resolve_target(vnode).address == "192.0.2.10"

    def test_unknown_name_used_as_address(self, executor):
        target = executor.resolve_target("203.0.113.99")
        assert target.address == "203.0.113.99"
        assert target.user == "root"

    def test_one_bridge_per_host(self, store):
        made = []

        def factory(target):
            bridge = MagicMock()
            made.append(target.name)
            return bridge

        ex = RemoteExecutor(store, bridge_factory=factory)
        ex.exec("a", "true")
        ex.exec("a", "true")
        ex.exec("b", "true")
        assert made == ["a", "b"]

        ex.close()
        assert ex._bridges == {}


# ── Script Execution ─────────────────────────────────────────────

class TestScripts:

    def test_heredoc_command(self, executor, bridge, vnode):
        result = executor.execute_script(vnode, "echo \"$1\"", ["it's here", "two"])

        assert result.success is True
        command = bridge.commands[-1]
        first, *body = command.splitlines()
        assert first == f"bash -s -- 'it'\"'\"'s here' two <<'{HEREDOC_MARKER}'"
        assert body[0] == "#!/bin/bash"
        assert body[1] == "set -euo pipefail"
        assert body[-1] == HEREDOC_MARKER

    def test_sudo_for_non_root_user(self, store, bridge):
        store.add_vnode("web1", ip_address="192.0.2.20", ssh_user="admin")
        ex = RemoteExecutor(store, bridge_factory=lambda t: bridge)

        ex.execute_script("web1", "id")

        assert bridge.commands[-1].startswith("sudo -n bash -s")

    def test_no_sudo_when_not_root_required(self, store, bridge):
        store.add_vnode("web1", ssh_user="admin")
        ex = RemoteExecutor(store, bridge_factory=lambda t: bridge)

        ex.execute_script("web1", "id", as_root=False)

        assert bridge.commands[-1].startswith("bash -s")

    def test_non_strict_leaves_script_alone(self, executor, bridge, vnode):
        executor.execute_script(vnode, "echo hi", strict_mode=False)
        assert "set -euo pipefail" not in bridge.commands[-1]

    def test_strict_mode_follows_config(self, store, bridge, vnode):
        config = NetServaConfig.from_dict({"remote": {"strict_mode": False}})
        ex = RemoteExecutor(store, config, bridge_factory=lambda t: bridge)

        ex.execute_script(vnode, "echo hi")
        assert "set -euo pipefail" not in bridge.commands[-1]

        ex.execute_script(vnode, "echo hi", strict_mode=True)
        assert "set -euo pipefail" in bridge.commands[-1]

    def test_vhost_env_strict_mode_follows_config(self, store, bridge, vnode):
        config = NetServaConfig.from_dict({"remote": {"strict_mode": False}})
        ex = RemoteExecutor(store, config, bridge_factory=lambda t: bridge)

        ex.execute_script_with_vhost(vnode, {"VHOST": "example.com"}, "echo $VHOST")

        assert "set -euo pipefail" not in bridge.commands[-1]

    def test_nonzero_exit(self, executor, bridge, vnode):
        bridge.add_rule("bash -s", 4, "", "exists", first=True)
        result = executor.execute_script(vnode, "exit 4")
        assert result.success is False
        assert result.error == "Script failed with exit code: 4"

    def test_missing_exit_code(self, executor, bridge, vnode):
        bridge.add_rule("bash -s", -1, "", "SSH connection failed", first=True)
        result = executor.execute_script(vnode, "true")
        assert result.exit_code == NO_EXIT_CODE
        assert result.success is False
        assert "no exit code returned" in result.error
        assert "SSH connection failed" in result.error

    def test_marker_in_script_rejected(self, executor, vnode):
        with pytest.raises(ValidationError):
            executor.execute_script(vnode, f"echo\n{HEREDOC_MARKER}\necho")

    def test_dry_run_sends_nothing(self, executor, bridge, vnode):
        result = executor.execute_script(vnode, "rm -rf /srv/x", ["example.com"], dry_run=True)

        assert result.dry_run is True
        assert result.stdout == "[DRY RUN] Script would execute with args: example.com"
        assert bridge.commands == []

    def test_vhost_env_exported(self, executor, bridge, vnode):
        executor.execute_script_with_vhost(
            vnode, {"VHOST": "example.com", "UPASS": "a'b"}, "echo $VHOST",
        )
        body = bridge.commands[-1].splitlines()
        assert body[1] == "#!/bin/bash"
        assert "export UPASS='a'\\''b'" in body
        assert "export VHOST='example.com'" in body
        assert body.index("export VHOST='example.com'") < body.index("echo $VHOST")
        assert body.count("set -euo pipefail") == 1


# ── Sequences, OS & Files ────────────────────────────────────────

class TestSequencesAndFiles:

    def test_sequence_stops_on_error(self, executor, bridge, vnode):
        bridge.add_rule("false", 1, "", "", first=True)
        seq = executor.execute_sequence(vnode, ["true", "false", "echo never"])
        assert seq.success is False
        assert seq.completed == 2
        assert seq.total == 3
        assert seq.to_dict()["completed_commands"] == 2

    def test_sequence_continues(self, executor, bridge, vnode):
        bridge.add_rule("false", 1, "", "", first=True)
        seq = executor.execute_sequence(vnode, ["false", "true"], stop_on_error=False)
        assert seq.completed == 2

    def test_os_variables(self, executor, vnode):
        assert executor.get_os_variables(vnode) == {
            "OSTYP": "debian", "OSREL": "trixie", "OSMIR": "deb.debian.org",
        }

    def test_os_variables_unknown(self, executor, bridge, vnode):
        bridge.add_rule("cat /etc/os-release", 1, "", "denied", first=True)
        assert executor.get_os_variables(vnode)["OSTYP"] == "unknown"

    def test_execute_as_root_wraps_sudo(self, store, bridge):
        store.add_vnode("web1", ssh_user="admin")
        ex = RemoteExecutor(store, bridge_factory=lambda t: bridge)
        ex.execute_as_root("web1", "cat /etc/shadow")
        assert bridge.commands[-1] == "sudo -n bash -c 'cat /etc/shadow'"

    def test_put_file_base64(self, executor, bridge, vnode):
        assert executor.put_remote_file_content(vnode, "/tmp/x", "hello", mode="600") is True
        assert bridge.commands[-1] == "echo aGVsbG8= | base64 -d > /tmp/x && chmod 600 /tmp/x"

    def test_remote_permissions(self, executor, bridge, vnode):
        bridge.add_rule("stat -c", 0, "750\n", "")
        assert executor.get_remote_permissions(vnode, "/srv/example.com") == "750"

    def test_root_access(self, executor, bridge, vnode):
        bridge.add_rule("whoami", 0, "root", "")
        assert executor.test_root_access(vnode) is True
