"""Shared fixtures: a throwaway fleet store and a scripted SSH bridge."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from fleet.store import FleetStore
from remote.executor import RemoteExecutor
from remote.ssh_bridge import ExecResult

OS_RELEASE = 'PRETTY_NAME="Debian GNU/Linux 13 (trixie)"\nID=debian\nVERSION_ID="13"\nVERSION_CODENAME=trixie\n'

# Answers a freshly installed debian vnode gives to the configuration lookups.
DEBIAN_RULES = [
    ("ip -4 route", (0, "192.0.2.10", "")),
    ('grep -E "^ID=', (0, "ID=debian\nVERSION_CODENAME=trixie", "")),
    ("hostname -f", (0, "mail.example.net", "")),
    ("getent passwd", (0, "1001\n1002\n1004", "")),
    ("cat /etc/os-release", (0, OS_RELEASE, "")),
]


class FakeBridge:
    """
    Stands in for SSHExecBridge.

    ``rules`` is a list of (substring, (exit_code, stdout, stderr)); the
    first rule whose substring occurs in the command answers it, anything
    else succeeds with no output.
    """

    def __init__(self, rules=None):
        self.rules = list(rules or [])
        self.commands = []
        self.closed = False

    def add_rule(self, needle, exit_code=0, stdout="", stderr="", first=False):
        rule = (needle, (exit_code, stdout, stderr))
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def exec(self, command, timeout=None):
        self.commands.append(command)
        exit_code, stdout, stderr = 0, "", ""
        for needle, answer in self.rules:
            if needle in command:
                exit_code, stdout, stderr = answer
                break
        return ExecResult(
            command=command, exit_code=exit_code, stdout=stdout, stderr=stderr,
            success=exit_code == 0, duration_ms=1.0, host="fake",
        )

    def scripts(self):
        return [c for c in self.commands if "bash -s" in c]

    def close(self):
        self.closed = True


@pytest.fixture
def store(tmp_path):
    s = FleetStore(db_path=str(tmp_path / "netserva.db"))
    yield s
    s.close()


@pytest.fixture
def bridge():
    return FakeBridge(DEBIAN_RULES)


@pytest.fixture
def executor(store, bridge):
    return RemoteExecutor(store, bridge_factory=lambda target: bridge)


@pytest.fixture
def vnode(store):
    """A registered vnode named 'markc'."""
    store.add_vnode("markc", ip_address="192.0.2.10", ssh_user="root")
    return "markc"
