#!/usr/bin/env python3
"""
Unit tests for the nsctl command line
"""

import json
import sys
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock

import requests
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from fleet.binarylane import ServerInfo
from fleet.config import NetServaConfig
from fleet.store import FleetStore
from nsctl import __version__
from nsctl.cli import app
from nsctl.runtime import Runtime
from remote.executor import RemoteExecutor
from vhost.vpass import Vault

runner = CliRunner()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "netserva.db"


@pytest.fixture
def cli(db_path, bridge):
    """Invoke nsctl against a temporary fleet store and a scripted vnode."""
    config = NetServaConfig.from_dict({
        "db_path": str(db_path),
        "vault": {"key": Vault.generate_key()},
    })

    def build(config_path=None):
        store = FleetStore(str(db_path))
        executor = RemoteExecutor(store, config, bridge_factory=lambda target: bridge)
        return Runtime.assemble(config, store, executor)

    def invoke(*args, input=None):
        with patch("nsctl.cli.build_runtime", side_effect=build):
            return runner.invoke(app, list(args), input=input)

    return invoke


@pytest.fixture
def fleet_db(db_path):
    """Open the store the CLI wrote to, after the command has closed it."""
    stores = []

    def open_store():
        s = FleetStore(str(db_path))
        stores.append(s)
        return s

    yield open_store
    for s in stores:
        s.close()


@pytest.fixture
def markc(cli):
    result = cli("addvnode", "markc", "--ip", "192.0.2.10", "--ssh-user", "root")
    assert result.exit_code == 0, result.output
    return "markc"


# ── Inventory ────────────────────────────────────────────────────

class TestInventory:

    def test_version(self, cli):
        result = cli("version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_add_chain_and_tree(self, cli):
        assert cli("addvenue", "sydney", "--provider", "binarylane").exit_code == 0
        assert cli("addvsite", "bl-syd", "--venue", "sydney", "--technology", "vps").exit_code == 0
        assert cli("addvnode", "mail1", "--vsite", "bl-syd", "--ip", "203.0.113.5").exit_code == 0

        result = cli("fleet-tree", "--simple")

        assert result.exit_code == 0
        assert "sydney" in result.output
        assert "└── mail1" in result.output

    def test_empty_tree(self, cli):
        result = cli("fleet-tree")
        assert "No infrastructure found" in result.output

    def test_duplicate_vnode_fails(self, cli, markc):
        result = cli("addvnode", "markc")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_unknown_vsite(self, cli):
        result = cli("addvnode", "x", "--vsite", "ghost")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_shvnode_json(self, cli, markc):
        result = cli("shvnode", "markc", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["ip_address"] == "192.0.2.10"
        assert data["vhosts"] == 0

    def test_shvnode_missing(self, cli):
        result = cli("shvnode", "ghost")
        assert result.exit_code == 1
        assert "nsctl addvnode ghost" in result.output

    def test_delvnode_confirm_abort(self, cli, markc, fleet_db):
        result = cli("delvnode", "markc", input="n\n")
        assert result.exit_code == 1
        assert fleet_db().get_vnode("markc") is not None

    def test_delvnode_force(self, cli, markc, fleet_db):
        result = cli("delvnode", "markc", "--force")
        assert result.exit_code == 0
        store = fleet_db()
        assert store.get_vnode("markc") is None
        assert store.get_events(action="delvnode")[0]["target"] == "markc"


# ── VHosts ───────────────────────────────────────────────────────

class TestVhostCommands:

    def test_addvhost(self, cli, markc, fleet_db):
        result = cli("addvhost", "markc", "example.com")

        assert result.exit_code == 0, result.output
        assert "VHost example.com created on markc" in result.output
        assert "u1003" in result.output
        assert fleet_db().get_vhost("markc", "example.com")["status"] == "active"

    def test_addvhost_dry_run_prints_script(self, cli, markc, fleet_db):
        result = cli("addvhost", "markc", "example.com", "--dry-run")
        assert result.exit_code == 0
        assert "# NetServa VHost Provisioning Script" in result.output
        assert fleet_db().get_vhost("markc", "example.com") is None

    def test_addvhost_remote_failure(self, cli, markc, bridge, fleet_db):
        bridge.add_rule("bash -s", 1, "", "useradd: UID 1003 is not unique", first=True)

        result = cli("addvhost", "markc", "example.com")

        assert result.exit_code == 1
        assert "not unique" in result.output
        assert fleet_db().get_vhost("markc", "example.com") is None

    def test_shvhost_and_shvconf(self, cli, markc):
        cli("addvhost", "markc", "example.com")

        listing = cli("shvhost", "markc", "--json")
        assert [v["domain"] for v in json.loads(listing.output)] == ["example.com"]

        plain = cli("shvconf", "markc", "example.com")
        assert plain.exit_code == 0
        assert "VHOST='example.com'" in plain.output

        one = cli("shvconf", "markc", "example.com", "u_uid")
        assert one.output.strip() == "1003"

        table = cli("shvconf", "markc", "example.com", "--format", "table")
        assert table.exit_code == 0
        assert "********" in table.output

    def test_shvconf_category(self, cli, markc):
        cli("addvhost", "markc", "example.com")

        paths = cli("shvconf", "markc", "example.com", "--category", "Paths", "--format", "json")
        assert paths.exit_code == 0
        assert set(json.loads(paths.output)) >= {"UPATH", "WPATH", "MPATH"}
        assert "VHOST" not in json.loads(paths.output)

        table = cli("shvconf", "markc", "example.com", "--category", "Database", "--format", "table")
        assert "Database" in table.output
        assert "Paths" not in table.output

        assert cli("shvconf", "markc", "example.com", "--category", "Nope").exit_code == 1

    def test_shvconf_bad_format(self, cli, markc):
        cli("addvhost", "markc", "example.com")
        result = cli("shvconf", "markc", "example.com", "--format", "xml")
        assert result.exit_code == 1

    def test_chvconf_and_delvconf(self, cli, markc, fleet_db):
        cli("addvhost", "markc", "example.com")

        assert "V_PHP updated" in cli("chvconf", "markc", "example.com", "v_php", "8.3").output
        assert cli("delvconf", "markc", "example.com", "V_PHP").exit_code == 0
        assert cli("delvconf", "markc", "example.com", "V_PHP").exit_code == 1
        assert cli("delvconf", "markc", "example.com").exit_code == 1

        result = cli("delvconf", "markc", "example.com", "--all")
        assert result.exit_code == 0
        assert fleet_db().get_stats()["vconfs"] == 0

    def test_chvhost(self, cli, markc):
        cli("addvhost", "markc", "example.com")
        result = cli("chvhost", "markc", "example.com", "--php", "8.3")
        assert result.exit_code == 0, result.output
        assert "VHost example.com updated" in result.output

    def test_delvhost_force(self, cli, markc, fleet_db):
        cli("addvhost", "markc", "example.com")
        result = cli("delvhost", "markc", "example.com", "--force")
        assert result.exit_code == 0
        assert fleet_db().get_vhost("markc", "example.com") is None

    def test_delvhost_dry_run_needs_no_confirmation(self, cli, markc):
        cli("addvhost", "markc", "example.com")
        result = cli("delvhost", "markc", "example.com", "--dry-run")
        assert result.exit_code == 0
        assert 'VHOST="$1"' in result.output


# ── Operations ───────────────────────────────────────────────────

class TestOperations:

    def test_validate_failure_exits_nonzero(self, cli, markc):
        cli("addvhost", "markc", "example.com")
        result = cli("validate", "markc", "example.com", "--json")
        assert result.exit_code == 1
        reports = json.loads(result.output)
        assert reports[0]["status"] == "failed"

    def test_chperms_dry_run(self, cli, markc):
        cli("addvhost", "markc", "example.com")
        result = cli("chperms", "markc", "--dry-run", "--web-only")
        assert result.exit_code == 0
        assert "chown u1003:www-data /srv/example.com" in result.output

    def test_addvmail(self, cli, markc):
        cli("addvhost", "markc", "example.com")
        result = cli("addvmail", "markc", "alice@example.com", "--password", "pw123")
        assert result.exit_code == 0, result.output
        assert "/srv/example.com/msg/alice/Maildir" in result.output

    def test_validate_repair_dry_run(self, cli, markc, fleet_db):
        cli("addvhost", "markc", "example.com")
        result = cli("validate", "markc", "example.com", "--repair", "--dry-run")
        assert result.exit_code == 0, result.output
        assert "repair plan" in result.output
        assert "# NetServa VHost Repair Script" in result.output
        assert fleet_db().get_events(action="repair") == []

    def test_validate_repair(self, cli, markc, bridge, fleet_db):
        cli("addvhost", "markc", "example.com")
        result = cli("validate", "markc", "example.com", "--repair", "--json")
        assert result.exit_code == 0, result.output
        repaired = json.loads(result.output)[0]
        assert "services" in repaired["sections"]
        assert any("NetServa VHost Repair" in c for c in bridge.scripts())
        assert fleet_db().get_events(action="repair")[0]["success"] is True

    def test_valias_commands(self, cli, markc, bridge):
        cli("addvhost", "markc", "example.com")

        added = cli("addvalias", "markc", "@example.com", "alice@example.com,bob@example.com")
        assert added.exit_code == 0, added.output
        assert "@example.com -> alice@example.com, bob@example.com" in added.output

        bridge.add_rule("SELECT source, target, active FROM valias", 0,
                        "@example.com\talice@example.com,bob@example.com\t1", "", first=True)
        listed = cli("shvalias", "markc", "example.com", "--json")
        assert json.loads(listed.output) == [{
            "source": "@example.com",
            "targets": ["alice@example.com", "bob@example.com"],
            "active": True,
        }]

        assert cli("delvalias", "markc", "@example.com", "--force").exit_code == 0

    def test_delvalias_missing(self, cli, markc, bridge):
        cli("addvhost", "markc", "example.com")
        bridge.add_rule("DELETE FROM valias WHERE source", 4, "",
                        "Virtual alias not found: old@example.com", first=True)
        result = cli("delvalias", "markc", "old@example.com", "--force")
        assert result.exit_code == 1
        assert "not found" in result.output


# ── Credentials ──────────────────────────────────────────────────

class TestCredentials:

    def test_addpw_prompts_and_shpw_decrypts(self, cli):
        added = cli("addpw", "root", "--service", "ssh", input="s3cret\ns3cret\n")
        assert added.exit_code == 0, added.output

        shown = cli("shpw", "root")
        assert "s3cret" in shown.output

        listing = cli("shpw")
        assert "s3cret" not in listing.output
        assert "********" in listing.output

    def test_chpw_and_delpw(self, cli):
        cli("addpw", "root", "--service", "ssh", "--password", "a")
        assert cli("chpw", "root", "--password", "b").exit_code == 0
        assert "b" in cli("shpw", "root").output
        assert cli("delpw", "root").exit_code == 0
        assert cli("delpw", "root").exit_code == 1

    def test_genkey(self, cli):
        key = cli("genkey").output.strip()
        Vault(MagicMock(), key=key)


# ── BinaryLane ───────────────────────────────────────────────────

class TestBinaryLane:

    def test_missing_token(self, cli, monkeypatch):
        monkeypatch.delenv("BINARYLANE_API_TOKEN", raising=False)
        result = cli("bl-servers")
        assert result.exit_code == 1
        assert "token not configured" in result.output

    @patch("fleet.binarylane.BinaryLaneClient.list_servers")
    def test_bl_sync(self, mock_list, cli, monkeypatch, fleet_db):
        monkeypatch.setenv("BINARYLANE_API_TOKEN", "tok")
        mock_list.return_value = [ServerInfo(id=5, name="web9", status="active", ipv4="203.0.113.9")]
        cli("addvsite", "bl-syd")

        result = cli("bl-sync", "bl-syd")

        assert result.exit_code == 0, result.output
        assert "1 created" in result.output
        assert fleet_db().get_vnode("web9")["ip_address"] == "203.0.113.9"

    @patch("fleet.binarylane.BinaryLaneClient.list_servers")
    def test_bl_servers_json(self, mock_list, cli, monkeypatch):
        monkeypatch.setenv("BINARYLANE_API_TOKEN", "tok")
        mock_list.return_value = [ServerInfo(id=5, name="web9", status="active")]
        result = cli("bl-servers", "--json")
        assert json.loads(result.output)[0]["name"] == "web9"

    @patch("fleet.binarylane.requests.request")
    def test_bl_sync_api_outage_fails(self, mock_request, cli, monkeypatch, fleet_db):
        monkeypatch.setenv("BINARYLANE_API_TOKEN", "tok")
        mock_request.side_effect = requests.ConnectionError("down")
        cli("addvsite", "bl-syd")

        result = cli("bl-sync", "bl-syd")

        assert result.exit_code == 1
        assert "unavailable" in result.output
        assert fleet_db().get_events(action="bl-sync") == []


# ── Configuration ────────────────────────────────────────────────

class TestConfiguration:

    @pytest.fixture
    def isolated(self, monkeypatch, tmp_path):
        monkeypatch.delenv("NETSERVA_CONFIG", raising=False)
        monkeypatch.setattr("fleet.config.DEFAULT_CONFIG_PATH", tmp_path / "none.yml")
        monkeypatch.setenv("NETSERVA_DB", str(tmp_path / "netserva.db"))
        return tmp_path

    def test_non_numeric_env_port(self, isolated, monkeypatch):
        monkeypatch.setenv("NETSERVA_SSH_PORT", "twenty-two")
        result = runner.invoke(app, ["shvnode"])
        assert result.exit_code == 1
        assert "NETSERVA_SSH_PORT must be a whole number" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_non_numeric_yaml_timeout(self, isolated):
        path = isolated / "netserva.yml"
        path.write_text("ssh:\n  timeout: soon\n", encoding="utf-8")
        result = runner.invoke(app, ["--config-file", str(path), "shvnode"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
