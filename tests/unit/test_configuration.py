#!/usr/bin/env python3
"""
Unit tests for the Configuration Service
"""

import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from fleet.errors import ConfigurationError
from vhost.configuration import ConfigurationService
from vhost.platform import ADMIN_UID, MINIMAL_VARS


@pytest.fixture
def service(store, executor):
    return ConfigurationService(store, executor, reverse_lookup=lambda ip: "")


# ── UID Allocation ───────────────────────────────────────────────

class TestUidAllocation:

    def test_fills_gap(self, service, vnode):
        assert service.get_next_available_uid(vnode) == 1003

    def test_first_uid_when_none_exist(self, service, bridge, vnode):
        bridge.add_rule("getent passwd", 0, "", "", first=True)
        assert service.get_next_available_uid(vnode) == 1001

    def test_contiguous(self, service, bridge, vnode):
        bridge.add_rule("getent passwd", 0, "1001\n1002\n1003", "", first=True)
        assert service.get_next_available_uid(vnode) == 1004

    def test_exhausted(self, service, bridge, vnode):
        uids = "\n".join(str(u) for u in range(1001, 9999))
        bridge.add_rule("getent passwd", 0, uids, "", first=True)
        with pytest.raises(ConfigurationError):
            service.get_next_available_uid(vnode)

    def test_admin_uid_for_server_fqdn(self, service, vnode):
        assert service.determine_vhost_uid(vnode, "mail.example.net", "mail.example.net") == ADMIN_UID
        assert service.determine_vhost_uid(vnode, "mail.example.net", "example.com") == 1003


# ── FQDN & IP ────────────────────────────────────────────────────

class TestHostDetection:

    @pytest.mark.parametrize("name,valid", [
        ("mail.example.net", True),
        ("localhost", False),
        ("", False),
        (None, False),
        ("-bad.example.com", False),
    ])
    def test_is_valid_fqdn(self, name, valid):
        assert ConfigurationService.is_valid_fqdn(name) is valid

    def test_store_fqdn_wins(self, store, service, bridge):
        store.add_vnode("web1", fqdn="web1.example.org")
        assert service.get_server_fqdn("web1") == "web1.example.org"
        assert not any("hostname" in c for c in bridge.commands)

    def test_hostname_lookup(self, service, vnode):
        assert service.get_server_fqdn(vnode) == "mail.example.net"

    def test_hosts_file_fallback(self, service, bridge, vnode):
        bridge.add_rule("hostname -f", 0, "markc", "", first=True)
        bridge.add_rule("/etc/hosts", 0, "markc.lan.example\n", "", first=True)
        assert service.get_server_fqdn(vnode) == "markc.lan.example"

    def test_reverse_dns_fallback(self, store, executor, bridge, vnode):
        bridge.add_rule("hostname -f", 1, "", "", first=True)
        svc = ConfigurationService(store, executor, reverse_lookup=lambda ip: "Host.Example.COM")
        assert svc.get_server_fqdn(vnode, ip="192.0.2.10") == "host.example.com"

    def test_vnode_name_last_resort(self, service, bridge, vnode):
        bridge.add_rule("hostname -f", 1, "", "", first=True)
        assert service.get_server_fqdn(vnode, ip="192.0.2.10") == vnode

    def test_ip_fallback_to_store(self, service, bridge, vnode):
        bridge.add_rule("ip -4 route", 1, "", "", first=True)
        assert service.get_server_ip(vnode) == "192.0.2.10"

    def test_ip_fallback_to_loopback(self, store, service, bridge):
        store.add_vnode("bare")
        bridge.add_rule("ip -4 route", 0, "", "", first=True)
        assert service.get_server_ip("bare") == "127.0.0.1"

    def test_detect_os(self, service, vnode):
        os_config = service.detect_os(vnode)
        assert os_config.type.value == "debian"
        assert os_config.release == "trixie"

    def test_detect_os_failure_assumes_debian(self, service, bridge, vnode):
        bridge.add_rule("os-release", 1, "", "", first=True)
        assert service.detect_os(vnode).type.value == "debian"


# ── Generation ───────────────────────────────────────────────────

class TestGeneration:

    def test_generate(self, service, vnode):
        cfg = service.generate_vhost_config(vnode, "example.com")
        env = service.extract_platform_variables(cfg)

        assert env["U_UID"] == "1003"
        assert env["UUSER"] == "u1003"
        assert env["IP4_0"] == "192.0.2.10"
        assert env["OSREL"] == "trixie"
        assert env["AHOST"] == vnode

    def test_facts_cached_per_vnode(self, service, bridge, vnode):
        service.generate_vhost_config(vnode, "a.example.com")
        lookups = sum("hostname -f" in c for c in bridge.commands)
        service.generate_vhost_config(vnode, "b.example.com")
        assert sum("hostname -f" in c for c in bridge.commands) == lookups

        service.forget(vnode)
        service.generate_vhost_config(vnode, "c.example.com")
        assert sum("hostname -f" in c for c in bridge.commands) == lookups + 1

    def test_minimal_variables(self, service, vnode):
        env = service.extract_platform_variables(service.generate_vhost_config(vnode, "example.com"))
        minimal = service.minimal_variables(env)
        assert set(minimal) == set(MINIMAL_VARS)

    def test_timezone_from_defaults(self, store, executor, vnode):
        class Defaults:
            timezone_area = "Europe"
            timezone_city = "Berlin"

        svc = ConfigurationService(store, executor, defaults=Defaults())
        env = svc.generate_vhost_config(vnode, "example.com").to_environment()
        assert (env["TAREA"], env["TCITY"]) == ("Europe", "Berlin")

    def test_plan_reads_only_the_store(self, service, store, bridge, vnode):
        store.update_vnode(vnode, operating_system="ubuntu", database_type="mysql")

        env = service.plan_vhost_config(vnode, "example.com").to_environment()

        assert env["U_UID"] == "1001"
        assert env["IP4_0"] == "192.0.2.10"
        assert env["OSTYP"] == "ubuntu"
        assert env["SQCMD"] == "mariadb -BN sysadm"
        assert bridge.commands == []

    def test_plan_reuses_detected_facts(self, service, bridge, vnode):
        service.generate_vhost_config(vnode, "a.example.com")
        sent = len(bridge.commands)

        env = service.plan_vhost_config(vnode, "mail.example.net").to_environment()

        assert env["U_UID"] == "1000"
        assert len(bridge.commands) == sent
