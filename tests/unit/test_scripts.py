#!/usr/bin/env python3
"""
Unit tests for the Bash Script Builder
"""

import sys
import pytest
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from fleet.errors import ValidationError
from vhost.platform import OsConfiguration, VhostConfiguration, VhostPasswords, VhostPaths
from vhost.scripts import PROVISION_REQUIRED, BashScriptBuilder


@pytest.fixture
def variables():
    os_config = OsConfiguration.detected("debian", "trixie")
    cfg = VhostConfiguration(
        VHOST="example.com", VNODE="markc", U_UID=1003, U_GID=1003, UUSER="u1003",
        passwords=VhostPasswords.generate(),
        paths=VhostPaths.for_domain("example.com", os_config),
        os_config=os_config, IP4_0="192.0.2.10",
    )
    return cfg.to_environment()


@pytest.fixture
def builder():
    return BashScriptBuilder(clock=lambda: datetime(2026, 10, 19, 9, 30, 0))


# ── Provisioning ─────────────────────────────────────────────────

class TestProvisioning:

    def test_header(self, builder, variables):
        lines = builder.build(variables).splitlines()
        assert lines[0] == "#!/bin/bash"
        assert "# Generated: 2026-10-19 09:30:00" in lines
        assert "# Domain: example.com" in lines
        assert "set -euo pipefail" in lines

    def test_declares_every_variable(self, builder, variables):
        script = builder.build(variables)
        for name, value in variables.items():
            assert f"{name}='{value}'" in script

    def test_sections_in_order(self, builder, variables):
        script = builder.build(variables)
        steps = [script.index(f">>> Step {n}:") for n in range(1, 9)]
        assert steps == sorted(steps)
        assert script.rstrip().endswith('echo "    Mail: $MPATH"')

    def test_steps_are_guarded(self, builder, variables):
        script = builder.build(variables)
        assert 'if id -u "$UUSER" &>/dev/null; then' in script
        assert 'if [[ ! -f "$POOL_DIR/$VHOST.conf" ]]; then' in script
        assert 'if [[ ! -f "$NGINX_CONF" ]]; then' in script

    def test_regular_user_not_in_sudo(self, builder, variables):
        script = builder.build(variables)
        assert 'useradd -M -U -s "$U_SHL"' in script
        assert 'echo "$UUSER:$UPASS" | chpasswd' in script

    def test_admin_user_groups(self, builder, variables):
        variables.update(U_UID="1000", U_GID="1000", UUSER="sysadm")
        script = builder.build(variables)
        assert "useradd -M -U -G sudo,adm" in script

    def test_same_password_skips_chpasswd(self, builder, variables):
        variables["UPASS"] = variables["APASS"]
        script = builder.build(variables)
        assert "# User password same as admin, skipping" in script
        assert "| chpasswd" not in script

    def test_values_are_quoted(self, builder, variables):
        variables["UPASS"] = "it's$HOME"
        script = builder.build(variables)
        assert "UPASS='it'\\''s$HOME'" in script

    @pytest.mark.parametrize("name", PROVISION_REQUIRED)
    def test_required_variables(self, builder, variables, name):
        del variables[name]
        with pytest.raises(ValidationError, match=name):
            builder.build(variables)


# ── Cleanup & Reconfigure ────────────────────────────────────────

class TestCleanup:

    def test_script_takes_positional_values(self, variables):
        script = BashScriptBuilder.build_cleanup(variables)
        assert 'VHOST="$1"' in script
        assert 'SQCMD="$8"' in script
        assert "example.com" not in script

    def test_args_from_variables(self, variables):
        args = BashScriptBuilder.cleanup_args(variables)
        assert args == [
            "example.com", "u1003", "/srv/example.com", "/srv/example.com/web",
            "/srv/example.com/msg", "/etc/php/8.4/fpm", "debian",
            "sqlite3 /var/lib/sqlite/sysadm/sysadm.db",
        ]

    def test_args_with_partial_vconfs(self):
        args = BashScriptBuilder.cleanup_args({"VHOST": "old.example.com"})
        assert args[1] == "unknown"
        assert args[2] == "/srv/old.example.com"
        assert args[4] == "/srv/old.example.com/msg"

    def test_reconfigure_args(self, variables):
        new = dict(variables, C_FPM="/etc/php/8.3/fpm")
        args = BashScriptBuilder.reconfigure_args(variables, new)
        assert args[:4] == ["example.com", "debian", "/etc/php/8.4/fpm", "/etc/php/8.3/fpm"]
        assert len(args) == 9


# ── Permissions ──────────────────────────────────────────────────

class TestPermissions:

    def test_full_set(self, variables):
        commands = BashScriptBuilder.permission_commands(variables)
        assert commands[0] == "chown u1003:www-data /srv/example.com"
        assert "chown -R u1003:www-data /srv/example.com/web" in commands
        assert "chmod 750 /srv/example.com/msg" in commands
        assert any("/etc/ssl/le/example.com" in c for c in commands)

    def test_web_only(self, variables):
        commands = BashScriptBuilder.permission_commands(variables, web_only=True)
        assert not any("/msg" in c for c in commands)
        assert not any("/etc/ssl" in c for c in commands)

    def test_mail_only(self, variables):
        commands = BashScriptBuilder.permission_commands(variables, mail_only=True)
        assert not any("/web" in c for c in commands)
        assert r"find /srv/example.com/msg -type f -exec chmod 640 {} \;" in commands

    def test_script_wraps_commands(self, builder, variables):
        script = builder.build_permissions(variables, web_only=True)
        count = len(BashScriptBuilder.permission_commands(variables, web_only=True))
        assert script.startswith("#!/bin/bash\nset -euo pipefail")
        assert f"✓ {count} permission commands applied" in script
