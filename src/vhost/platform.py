"""Platform constants and value objects for vhost configuration.

A ``VhostConfiguration`` expands into the canonical set of platform
variables stored in vconfs. Every value is fully expanded: no ``$VAR``
references survive into the database.
"""

from __future__ import annotations

import posixpath
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from remote.executor import OS_MIRRORS, single_quote

ADMIN_UID = 1000
FIRST_USER_UID = 1001
MAX_USER_UID = 9999
SECURE_PASSWORD_LENGTH = 12
WORDPRESS_USER_LENGTH = 6

ADMIN_USER = "sysadm"
SYSADM_DB = "/var/lib/sqlite/sysadm/sysadm.db"
VHOST_ROOT = "/srv"
BACKUP_PATH = "/home/backups"

PASSWORD_VARS = ("APASS", "DPASS", "EPASS", "UPASS", "WPASS")

MINIMAL_VARS = (
    "VHOST", "VNODE", "UUSER", "U_UID", "U_GID", "UPATH", "WPATH", "MPATH",
    "OSTYP", "DNAME", "DUSER", "DPASS", "UPASS",
)


def username_for_uid(uid: int) -> str:
    return ADMIN_USER if uid == ADMIN_UID else f"u{uid}"


def generate_password(length: int = SECURE_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_lowercase(length: int = WORDPRESS_USER_LENGTH) -> str:
    return "".join(secrets.choice(string.ascii_lowercase) for _ in range(length))


class OsType(str, Enum):
    DEBIAN = "debian"
    UBUNTU = "ubuntu"
    ALPINE = "alpine"
    ARCH = "arch"
    CACHYOS = "cachyos"
    MANJARO = "manjaro"

    @classmethod
    def from_id(cls, os_id: Optional[str]) -> "OsType":
        """Map an os-release ID to a known type; unknown ids become debian."""
        try:
            return cls((os_id or "").strip().lower())
        except ValueError:
            return cls.DEBIAN

    @property
    def is_debian_family(self) -> bool:
        return self in (OsType.DEBIAN, OsType.UBUNTU)

    @property
    def is_arch_family(self) -> bool:
        return self in (OsType.ARCH, OsType.CACHYOS, OsType.MANJARO)

    def php_version(self) -> str:
        if self is OsType.UBUNTU:
            return "8.3"
        return "8.4"

    def php_fpm_path(self, php_version: str = None) -> str:
        version = php_version or self.php_version()
        if self.is_debian_family:
            return f"/etc/php/{version}/fpm"
        if self is OsType.ALPINE:
            return f"/etc/php{version.replace('.', '')}"
        return "/etc/php"

    def pool_dir(self) -> str:
        return "pool.d" if self.is_debian_family else "php-fpm.d"

    def web_user_group(self) -> str:
        if self.is_debian_family:
            return "www-data"
        if self is OsType.ALPINE or self.is_arch_family:
            return "http"
        return "nginx"

    def dns_path(self) -> str:
        return "/etc/pdns" if self is OsType.ALPINE else "/etc/powerdns"

    def mysql_path(self) -> str:
        return "/etc/mysql" if self.is_debian_family else "/etc/my.cnf.d"

    def default_release(self) -> str:
        return {
            OsType.DEBIAN: "trixie",
            OsType.UBUNTU: "noble",
            OsType.ALPINE: "edge",
        }.get(self, "rolling")

    def mirror(self) -> str:
        return OS_MIRRORS.get(self.value, "unknown")


@dataclass(frozen=True)
class OsConfiguration:
    type: OsType
    release: str
    mirror: str

    @classmethod
    def detected(cls, os_id: Optional[str], release: Optional[str] = None) -> "OsConfiguration":
        os_type = OsType.from_id(os_id)
        return cls(
            type=os_type,
            release=release or os_type.default_release(),
            mirror=os_type.mirror(),
        )


@dataclass(frozen=True)
class VhostPasswords:
    admin: str
    database: str
    email: str
    user: str
    web: str
    wordpress: str

    @classmethod
    def generate(cls) -> "VhostPasswords":
        return cls(
            admin=generate_password(),
            database=generate_password(),
            email=generate_password(),
            user=generate_password(),
            web=generate_password(),
            wordpress=generate_lowercase(),
        )


@dataclass(frozen=True)
class VhostPaths:
    vhost: str
    vpath: str
    upath: str
    wpath: str
    mpath: str
    bpath: str
    dbpath: str
    ssl_path: str
    php_fpm_path: str
    nginx_path: str
    postfix_path: str
    dovecot_path: str
    dns_path: str
    mysql_path: str

    @classmethod
    def for_domain(cls, domain: str, os_config: OsConfiguration) -> "VhostPaths":
        upath = f"{VHOST_ROOT}/{domain}"
        return cls(
            vhost=domain,
            vpath=VHOST_ROOT,
            upath=upath,
            wpath=f"{upath}/web",
            mpath=f"{upath}/msg",
            bpath=BACKUP_PATH,
            dbpath=SYSADM_DB,
            ssl_path="/etc/ssl",
            php_fpm_path=os_config.type.php_fpm_path(),
            nginx_path="/etc/nginx",
            postfix_path="/etc/postfix",
            dovecot_path="/etc/dovecot",
            dns_path=os_config.type.dns_path(),
            mysql_path=os_config.type.mysql_path(),
        )


@dataclass(frozen=True)
class VhostConfiguration:
    VHOST: str
    VNODE: str
    U_UID: int
    U_GID: int
    UUSER: str
    passwords: VhostPasswords
    paths: VhostPaths
    os_config: OsConfiguration
    IP4_0: str = "127.0.0.1"
    database_type: str = "sqlite"
    timezone_area: str = "Australia"
    timezone_city: str = "Sydney"

    def sql_command(self) -> str:
        if self.database_type == "sqlite":
            return f"sqlite3 {self.paths.dbpath}"
        return "mariadb -BN sysadm"

    def to_environment(self) -> Dict[str, str]:
        """The canonical platform variables, all values as strings."""
        labels = self.VHOST.split(".")
        hname = labels[0]
        hdomn = ".".join(labels[1:]) if len(labels) >= 2 else self.VHOST
        dname = ADMIN_USER if self.UUSER == ADMIN_USER else self.VHOST.replace(".", "_").replace("-", "_")
        sqcmd = self.sql_command()

        return {
            "ADMIN": ADMIN_USER,
            "AHOST": self.VNODE,
            "AMAIL": f"admin@{hdomn}",
            "ANAME": "System Administrator",
            "APASS": self.passwords.admin,
            "A_GID": str(ADMIN_UID),
            "A_UID": str(ADMIN_UID),
            "BPATH": self.paths.bpath,
            "CIMAP": self.paths.dovecot_path,
            "CSMTP": self.paths.postfix_path,
            "C_DNS": self.paths.dns_path,
            "C_FPM": self.paths.php_fpm_path,
            "C_SQL": self.paths.mysql_path,
            "C_SSL": self.paths.ssl_path,
            "C_WEB": self.paths.nginx_path,
            "DBMYS": "/var/lib/mysql",
            "DBSQL": "/var/lib/sqlite",
            "DHOST": "localhost",
            "DNAME": dname,
            "DPASS": self.passwords.database,
            "DPATH": posixpath.dirname(self.paths.dbpath),
            "DPORT": "3306",
            "DTYPE": "mysql",
            "DUSER": self.UUSER,
            "EPASS": self.passwords.email,
            "EXMYS": sqcmd,
            "EXSQL": f"sqlite3 {self.paths.dbpath}",
            "HDOMN": hdomn,
            "HNAME": hname,
            "IP4_0": self.IP4_0,
            "MHOST": self.VHOST,
            "MPATH": self.paths.mpath,
            "OSMIR": self.os_config.mirror,
            "OSREL": self.os_config.release,
            "OSTYP": self.os_config.type.value,
            "SQCMD": sqcmd,
            "SQDNS": "mariadb -BN pdns",
            "TAREA": self.timezone_area,
            "TCITY": self.timezone_city,
            "UPASS": self.passwords.user,
            "UPATH": self.paths.upath,
            "UUSER": self.UUSER,
            "U_GID": str(self.U_GID),
            "U_SHL": "/bin/bash" if self.U_UID == ADMIN_UID else "/bin/sh",
            "U_UID": str(self.U_UID),
            "VHOST": self.VHOST,
            "VNODE": self.VNODE,
            "VPATH": self.paths.vpath,
            "VUSER": "admin",
            "V_PHP": self.os_config.type.php_version(),
            "WPASS": self.passwords.web,
            "WPATH": self.paths.wpath,
            "WPUSR": self.passwords.wordpress,
            "WUGID": self.os_config.type.web_user_group(),
        }

    def to_shell(self) -> str:
        return to_shell(self.to_environment())

    def credentials(self) -> Dict[str, str]:
        return {
            "admin_password": self.passwords.admin,
            "database_password": self.passwords.database,
            "email_password": self.passwords.email,
            "user_password": self.passwords.user,
            "web_password": self.passwords.web,
            "wordpress_user": self.passwords.wordpress,
        }


def to_shell(variables: Dict[str, str]) -> str:
    """Render sorted ``KEY='value'`` lines that bash can source."""
    return "\n".join(f"{k}={single_quote(v)}" for k, v in sorted(variables.items()))
