#!/usr/bin/env python3
"""
Unit tests for vconf management
"""

import json
import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from fleet.errors import ConflictError, NotFoundError, ValidationError
from vhost.configuration import ConfigurationService
from vhost.platform import MINIMAL_VARS
from vhost.vconf import (
    VconfService, format_json, format_plain, group_variables, is_sensitive, mask_value,
)


@pytest.fixture
def service(store, executor):
    config_service = ConfigurationService(store, executor, reverse_lookup=lambda ip: "")
    return VconfService(store, config_service, executor)


@pytest.fixture
def vhost_id(store, vnode):
    return store.add_vhost(store.get_vnode(vnode)["id"], "example.com")


# ── Formatting ───────────────────────────────────────────────────

class TestFormatting:

    def test_plain_is_sourceable(self):
        text = format_plain({"WPATH": "/srv/x/web", "DPASS": "a'b"})
        assert text.splitlines() == ["DPASS='a'\\''b'", "WPATH='/srv/x/web'"]

    def test_json_sorted(self):
        assert list(json.loads(format_json({"B": "2", "A": "1"}))) == ["A", "B"]

    def test_mask(self):
        assert is_sensitive("UPASS")
        assert mask_value("UPASS", "abc") == "***"
        assert mask_value("DPASS", "x" * 40) == "*" * 16
        assert mask_value("VHOST", "example.com") == "example.com"

    def test_groups(self):
        grouped = group_variables({
            "MPATH": "/m", "UUSER": "u1003", "DPASS": "p", "C_SSL": "/etc/ssl",
            "ADMIN": "sysadm", "WUGID": "www-data", "VHOST": "example.com",
        })
        assert grouped["Paths"] == {"MPATH": "/m"}
        assert grouped["User & Group"] == {"UUSER": "u1003", "WUGID": "www-data"}
        assert grouped["Database"] == {"DPASS": "p"}
        assert grouped["SSL/TLS"] == {"C_SSL": "/etc/ssl"}
        assert grouped["Web Server"] == {"ADMIN": "sysadm"}
        assert grouped["Other"] == {"VHOST": "example.com"}
        assert list(grouped) == [
            "Paths", "User & Group", "Database", "Mail", "Web Server", "SSL/TLS", "Other",
        ]


# ── Initialization ───────────────────────────────────────────────

class TestInitialize:

    def test_create(self, service, store, vnode, vhost_id):
        variables = service.initialize(vnode, "example.com")
        assert variables["OSMIR"] == "deb.debian.org"
        assert store.get_vconfs(vhost_id) == variables
        assert store.get_events(action="addvconf")[0]["context"] == {"mode": "create", "minimal": False}

    def test_create_refuses_existing(self, service, vnode, vhost_id):
        service.initialize(vnode, "example.com")
        with pytest.raises(ConflictError, match="merge or regenerate"):
            service.initialize(vnode, "example.com")

    def test_merge_preserves_identity(self, service, store, vnode, vhost_id):
        store.set_vconfs(vhost_id, {"UPASS": "keepme", "U_UID": "1042", "UUSER": "u1042", "OLD": "x"})

        variables = service.initialize(vnode, "example.com", mode="merge")

        assert variables["UPASS"] == "keepme"
        assert variables["U_UID"] == "1042"
        assert variables["UUSER"] == "u1042"
        assert store.get_vconf(vhost_id, "OLD") == "x"

    def test_regenerate_replaces(self, service, store, vnode, vhost_id):
        store.set_vconfs(vhost_id, {"UPASS": "old", "OLD": "x"})

        service.initialize(vnode, "example.com", mode="regenerate")

        assert store.get_vconf(vhost_id, "OLD") is None
        assert store.get_vconf(vhost_id, "UPASS") != "old"

    def test_minimal(self, service, vnode, vhost_id):
        variables = service.initialize(vnode, "example.com", minimal=True)
        assert set(variables) == set(MINIMAL_VARS)

    def test_dry_run(self, service, store, vnode, vhost_id):
        variables = service.initialize(vnode, "example.com", dry_run=True)
        assert variables
        assert store.get_vconfs(vhost_id) == {}

    def test_bad_mode(self, service, vnode, vhost_id):
        with pytest.raises(ValidationError):
            service.initialize(vnode, "example.com", mode="overwrite")

    def test_unknown_vhost(self, service, vnode):
        with pytest.raises(NotFoundError):
            service.initialize(vnode, "nowhere.com")


# ── CRUD ─────────────────────────────────────────────────────────

class TestCrud:

    def test_set_get_uppercases(self, service, vnode, vhost_id):
        assert service.set(vnode, "example.com", "v_php", "8.3") is None
        assert service.get(vnode, "example.com", "V_PHP") == "8.3"
        assert service.set(vnode, "example.com", "V_PHP", "8.4") == "8.3"

    def test_set_invalid_name(self, service, vnode, vhost_id):
        with pytest.raises(ValidationError):
            service.set(vnode, "example.com", "1BAD", "x")

    def test_get_missing(self, service, vnode, vhost_id):
        with pytest.raises(NotFoundError, match="WPATH"):
            service.get(vnode, "example.com", "wpath")

    def test_delete(self, service, store, vnode, vhost_id):
        service.set(vnode, "example.com", "A", "1")
        assert service.delete(vnode, "example.com", "a") is True
        assert service.delete(vnode, "example.com", "a") is False
        assert len(store.get_events(action="delvconf")) == 1

    def test_delete_all(self, service, vnode, vhost_id):
        service.set(vnode, "example.com", "A", "1")
        service.set(vnode, "example.com", "B", "2")
        assert service.delete_all(vnode, "example.com") == 2
        assert service.all(vnode, "example.com") == {}

    def test_rows_by_category(self, service, vnode, vhost_id):
        service.set(vnode, "example.com", "WPATH", "/srv/example.com/web")
        service.set(vnode, "example.com", "DPASS", "secret")
        service.set(vnode, "example.com", "U_UID", "1003")

        rows = service.rows(vnode, "example.com")
        assert {r["name"]: r["category"] for r in rows} == {
            "DPASS": "Database", "U_UID": "User & Group", "WPATH": "Paths",
        }
        assert service.all(vnode, "example.com", "Database") == {"DPASS": "secret"}

    def test_unknown_category(self, service, vnode, vhost_id):
        with pytest.raises(ValidationError, match="Unknown category"):
            service.rows(vnode, "example.com", "Nope")
