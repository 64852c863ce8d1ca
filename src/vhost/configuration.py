#!/usr/bin/env python3
"""
Configuration Service — platform variable generator

Produces the full set of vconfs for a new vhost by probing the vnode
once (OS, FQDN, IP) and allocating a UID.

Implements:
- generate_vhost_config(vnode, domain) -> VhostConfiguration
- plan_vhost_config(vnode, domain) -> VhostConfiguration (stored facts only)
- extract_platform_variables(config) -> dict
- minimal_variables(variables) -> dict
- get_server_fqdn(vnode) -> str
- is_valid_fqdn(hostname) -> bool
- determine_vhost_uid(vnode, fqdn, domain) -> int
- get_next_available_uid(vnode) -> int
- get_server_ip(vnode) -> str
- detect_os(vnode) -> OsConfiguration

FQDN resolution order:
1. vnodes.fqdn in the fleet store
2. `hostname -f` on the vnode
3. /etc/hosts 127.0.1.1 / 127.0.0.1 entries containing a dot
4. Reverse DNS of the server IP
5. The vnode name itself
"""

import logging
import re
import socket
from dataclasses import dataclass
from typing import Optional, Dict, Callable

from fleet.errors import ConfigurationError
from .platform import (
    ADMIN_UID, FIRST_USER_UID, MAX_USER_UID, MINIMAL_VARS,
    OsConfiguration, VhostConfiguration, VhostPasswords, VhostPaths,
    username_for_uid,
)

logger = logging.getLogger(__name__)

FQDN_RE = re.compile(
    r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)+$",
    re.IGNORECASE,
)

FALLBACK_IP = "127.0.0.1"


def _reverse_lookup(ip: str) -> str:
    try:
        return socket.gethostbyaddr(ip)[0]
    except (OSError, UnicodeError):
        return ""


@dataclass
class HostFacts:
    """Per-vnode detection results reused across vhosts in one run."""
    os_config: OsConfiguration
    fqdn: str
    ip: str


class ConfigurationService:
    """
    Generates platform variables for vhosts on a vnode.

    OS, FQDN and IP are detected once per vnode and cached for the life
    of the service; UIDs are always allocated fresh.
    """

    def __init__(self, store, executor, defaults=None,
                 reverse_lookup: Callable[[str], str] = None):
        self.store = store
        self.executor = executor
        self.timezone_area = defaults.timezone_area if defaults else "Australia"
        self.timezone_city = defaults.timezone_city if defaults else "Sydney"
        self._reverse_lookup = reverse_lookup or _reverse_lookup
        self._facts: Dict[str, HostFacts] = {}

    # ── Generation ───────────────────────────────────────────────

    def host_facts(self, vnode: str) -> HostFacts:
        if vnode not in self._facts:
            ip = self.get_server_ip(vnode)
            self._facts[vnode] = HostFacts(
                os_config=self.detect_os(vnode),
                fqdn=self.get_server_fqdn(vnode, ip=ip),
                ip=ip,
            )
            self._remember_os(vnode, self._facts[vnode].os_config)
        return self._facts[vnode]

    def _remember_os(self, vnode: str, os_config: OsConfiguration):
        vnode_row = self.store.get_vnode(vnode) if self.store else None
        if vnode_row and not vnode_row.get("operating_system"):
            self.store.update_vnode(vnode, operating_system=os_config.type.value)

    def stored_facts(self, vnode: str) -> HostFacts:
        """Host facts from the vnodes table alone, for runs that must not touch the vnode."""
        if vnode in self._facts:
            return self._facts[vnode]
        vnode_row = self.store.require_vnode(vnode)
        fqdn = vnode_row.get("fqdn")
        return HostFacts(
            os_config=OsConfiguration.detected(vnode_row.get("operating_system") or "debian"),
            fqdn=fqdn if self.is_valid_fqdn(fqdn) else vnode,
            ip=vnode_row.get("ip_address") or FALLBACK_IP,
        )

    def forget(self, vnode: str = None):
        """Drop cached host facts for one vnode, or all of them."""
        if vnode is None:
            self._facts.clear()
        else:
            self._facts.pop(vnode, None)

    def generate_vhost_config(self, vnode: str, domain: str) -> VhostConfiguration:
        logger.info(f"Generating vhost configuration for {domain} on {vnode}")
        facts = self.host_facts(vnode)
        uid = self.determine_vhost_uid(vnode, facts.fqdn, domain)
        return self._configuration(vnode, domain, uid, facts)

    def plan_vhost_config(self, vnode: str, domain: str) -> VhostConfiguration:
        """
        Configuration for a dry run; sends nothing to the vnode.

        The UID is a placeholder (admin UID for the vnode's own FQDN,
        otherwise the first user UID). The real one is allocated when
        the vhost is created.
        """
        facts = self.stored_facts(vnode)
        uid = ADMIN_UID if facts.fqdn == domain else FIRST_USER_UID
        return self._configuration(vnode, domain, uid, facts)

    def _configuration(self, vnode: str, domain: str, uid: int,
                       facts: HostFacts) -> VhostConfiguration:
        vnode_row = self.store.get_vnode(vnode) if self.store else None
        database_type = (vnode_row or {}).get("database_type") or "sqlite"

        return VhostConfiguration(
            VHOST=domain,
            VNODE=vnode,
            U_UID=uid,
            U_GID=uid,
            UUSER=username_for_uid(uid),
            passwords=VhostPasswords.generate(),
            paths=VhostPaths.for_domain(domain, facts.os_config),
            os_config=facts.os_config,
            IP4_0=facts.ip,
            database_type=database_type,
            timezone_area=self.timezone_area,
            timezone_city=self.timezone_city,
        )

    @staticmethod
    def extract_platform_variables(config: VhostConfiguration) -> Dict[str, str]:
        return config.to_environment()

    @staticmethod
    def minimal_variables(variables: Dict[str, str]) -> Dict[str, str]:
        return {k: variables[k] for k in MINIMAL_VARS if k in variables}

    # ── OS ───────────────────────────────────────────────────────

    def detect_os(self, vnode: str) -> OsConfiguration:
        result = self.executor.execute_as_root(
            vnode, 'grep -E "^ID=|^VERSION_CODENAME=" /etc/os-release'
        )
        if not result.success:
            logger.warning(f"OS detection failed on {vnode}, assuming debian")
            return OsConfiguration.detected("debian")

        os_id, release = "debian", None
        for line in result.stdout.splitlines():
            if line.startswith("ID="):
                os_id = line[3:].strip().strip('"')
            elif line.startswith("VERSION_CODENAME="):
                release = line[len("VERSION_CODENAME="):].strip().strip('"') or None
        return OsConfiguration.detected(os_id, release)

    # ── FQDN ─────────────────────────────────────────────────────

    @staticmethod
    def is_valid_fqdn(hostname: Optional[str]) -> bool:
        if not hostname or "." not in hostname:
            return False
        return bool(FQDN_RE.match(hostname))

    def get_server_fqdn(self, vnode: str, ip: str = None) -> str:
        vnode_row = self.store.get_vnode(vnode) if self.store else None
        if vnode_row and self.is_valid_fqdn(vnode_row.get("fqdn")):
            return vnode_row["fqdn"]

        result = self.executor.execute_as_root(vnode, 'hostname -f | tr "A-Z" "a-z"')
        fqdn = result.stdout.strip() if result.success else ""
        if self.is_valid_fqdn(fqdn):
            return fqdn

        result = self.executor.execute_as_root(
            vnode,
            "grep -E '^127\\.0\\.1\\.1|^127\\.0\\.0\\.1' /etc/hosts | awk '{print $2}' | grep '\\.'",
        )
        fqdn = result.stdout.strip().splitlines()[0].strip() if result.success and result.stdout.strip() else ""
        if self.is_valid_fqdn(fqdn):
            return fqdn

        ip = ip or self.get_server_ip(vnode)
        fqdn = self._reverse_lookup(ip).lower()
        if fqdn != ip and self.is_valid_fqdn(fqdn):
            return fqdn

        logger.warning(
            f"Could not determine a valid FQDN for {vnode}; using the vnode name. "
            f"Set it with: nsctl addvnode {vnode} --fqdn <name>"
        )
        return vnode

    # ── UID ──────────────────────────────────────────────────────

    def determine_vhost_uid(self, vnode: str, server_fqdn: str, domain: str) -> int:
        """The vnode's own FQDN gets the admin UID; everything else the next free one."""
        if server_fqdn == domain:
            return ADMIN_UID
        return self.get_next_available_uid(vnode)

    def get_next_available_uid(self, vnode: str) -> int:
        """First unused UID from 1001 upward, filling gaps.

        Existing UIDs 1001, 1002, 1004 give 1003.
        """
        result = self.executor.execute_as_root(
            vnode,
            f"getent passwd | awk -F: '$3 > {ADMIN_UID} && $3 < {MAX_USER_UID} {{print $3}}' | sort -n",
        )
        if not result.success or not result.stdout.strip():
            return FIRST_USER_UID

        existing = sorted({
            int(line) for line in result.stdout.split() if line.strip().isdigit()
        })
        candidate = FIRST_USER_UID
        for uid in existing:
            if uid == candidate:
                candidate += 1
            elif uid > candidate:
                break

        if candidate >= MAX_USER_UID:
            raise ConfigurationError(f"No free UID left below {MAX_USER_UID} on {vnode}")
        return candidate

    # ── IP ───────────────────────────────────────────────────────

    def get_server_ip(self, vnode: str) -> str:
        result = self.executor.execute_as_root(
            vnode, "ip -4 route get 1.1.1.1 | awk '/src/ {print $7}'"
        )
        ip = result.stdout.strip() if result.success else ""
        if ip:
            return ip

        vnode_row = self.store.get_vnode(vnode) if self.store else None
        fallback = (vnode_row or {}).get("ip_address") or FALLBACK_IP
        logger.warning(f"Could not detect IP on {vnode}, using {fallback}")
        return fallback
