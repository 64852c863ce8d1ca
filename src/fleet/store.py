#!/usr/bin/env python3
"""
Fleet Store — the NetServa source of truth

SQLite-backed inventory of the managed fleet and every vhost's
configuration variables. Remote hosts are brought in line with what is
recorded here, never the other way around.

Tables:
- venues:  physical or provider locations
- vsites:  hosting platforms inside a venue (proxmox, incus, vps ...)
- vnodes:  SSH-reachable servers
- vhosts:  domains provisioned on a vnode (soft deleted)
- vconfs:  per-vhost KEY=value platform variables, fully expanded
- vpass:   encrypted credentials attached to a vsite, vnode or vhost
- events:  append-only audit trail

Design principles:
- Explicit transactions: the outermost block owns BEGIN/COMMIT, nested
  blocks become savepoints
- A domain is unique per vnode among live (not deleted) vhosts
- vconfs rows disappear with their vhost
- Credentials are stored as ciphertext only
"""

import json
import logging
import os
import re
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Iterator

from .audit import AuditRecord
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.expanduser("~/.ns/netserva.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS venues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    provider TEXT DEFAULT '',      -- binarylane, hetzner, homelab ...
    location TEXT DEFAULT '',
    description TEXT DEFAULT '',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS vsites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    venue_id INTEGER REFERENCES venues(id) ON DELETE SET NULL,
    name TEXT NOT NULL UNIQUE,
    technology TEXT DEFAULT '',    -- proxmox, incus, vps, hardware
    description TEXT DEFAULT '',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS vnodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vsite_id INTEGER REFERENCES vsites(id) ON DELETE SET NULL,
    name TEXT NOT NULL UNIQUE,
    fqdn TEXT DEFAULT NULL,
    ip_address TEXT DEFAULT NULL,
    ssh_host TEXT DEFAULT NULL,
    ssh_user TEXT DEFAULT 'root',
    ssh_port INTEGER DEFAULT 22,
    database_type TEXT DEFAULT 'sqlite',   -- sqlite, mysql
    operating_system TEXT DEFAULT NULL,
    role TEXT DEFAULT 'compute',
    status TEXT DEFAULT 'active',
    is_active INTEGER DEFAULT 1,
    provider_id TEXT DEFAULT NULL,         -- external server id
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS vhosts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vnode_id INTEGER NOT NULL REFERENCES vnodes(id) ON DELETE CASCADE,
    domain TEXT NOT NULL,
    status TEXT DEFAULT 'inactive',        -- inactive, active, deleted
    is_active INTEGER DEFAULT 0,
    instance_type TEXT DEFAULT 'vhost',
    last_discovered_at REAL DEFAULT NULL,
    validation_status TEXT DEFAULT NULL,
    validation_report TEXT DEFAULT NULL,   -- JSON
    last_validated_at REAL DEFAULT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    deleted_at REAL DEFAULT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_vhosts_live
    ON vhosts(vnode_id, domain) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS vconfs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vhost_id INTEGER NOT NULL REFERENCES vhosts(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    value TEXT NOT NULL DEFAULT '',
    category TEXT DEFAULT 'Other',   -- display group, see vconf_category()
    is_sensitive INTEGER DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    UNIQUE(vhost_id, name)
);

CREATE TABLE IF NOT EXISTS vpass (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_type TEXT DEFAULT NULL,          -- vsite, vnode, vhost
    owner_id INTEGER DEFAULT NULL,
    name TEXT NOT NULL,
    service TEXT NOT NULL,
    username TEXT DEFAULT '',
    secret TEXT NOT NULL,                  -- Fernet token
    url TEXT DEFAULT '',
    port INTEGER DEFAULT NULL,
    notes TEXT DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_vpass_owner_name
    ON vpass(COALESCE(owner_type, ''), COALESCE(owner_id, 0), name);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,          -- addvhost, delvhost, chperms ...
    target TEXT DEFAULT '',        -- vnode/domain, vnode, credential name
    success INTEGER DEFAULT 1,
    detail TEXT DEFAULT '',
    context TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_events_action ON events(action);
CREATE INDEX IF NOT EXISTS idx_events_target ON events(target);
"""

VNODE_FIELDS = {
    "vsite_id", "fqdn", "ip_address", "ssh_host", "ssh_user", "ssh_port",
    "database_type", "operating_system", "role", "status", "is_active",
    "provider_id",
}
VHOST_FIELDS = {
    "status", "is_active", "instance_type", "last_discovered_at",
    "validation_status", "validation_report", "last_validated_at",
}
VPASS_FIELDS = {"username", "secret", "url", "port", "notes", "service"}
OWNER_TYPES = {"vsite", "vnode", "vhost"}

# ── VConf Categories ─────────────────────────────────────────────

VCONF_CATEGORIES = ("Paths", "User & Group", "Database", "Mail", "Web Server", "SSL/TLS", "Other")

# First match wins; names ending in PATH are always "Paths"
_CATEGORY_RULES = (
    ("User & Group", re.compile(r"^(UUSER|U_UID|U_GID|WUGID)")),
    ("Database", re.compile(r"^D(NAME|USER|PASS|TYPE|HOST|PORT)")),
    ("Mail", re.compile(r"^M(USER|PASS|PATH)")),
    ("Web Server", re.compile(r"^(WUGID|WPATH|ADMIN)")),
    ("SSL/TLS", re.compile(r"^(SSL|TLS|LEPATH|C_SSL)")),
)


def vconf_category(name: str) -> str:
    upper = name.upper()
    if upper.endswith("PATH"):
        return "Paths"
    for category, pattern in _CATEGORY_RULES:
        if pattern.match(upper):
            return category
    return "Other"


class FleetStore:
    """
    Relational store for venues, vsites, vnodes, vhosts and vconfs.

    Writes outside a ``transaction()`` block commit immediately.
    """

    def __init__(self, db_path: str = None):
        self.db_path = str(db_path or os.environ.get("NETSERVA_DB", DEFAULT_DB_PATH))

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._depth = 0
        self._init_schema()

        logger.info(f"FleetStore initialized (db={self.db_path})")

    def _init_schema(self):
        self._conn.executescript(SCHEMA)
        # Databases created before vconfs carried a category
        columns = {r["name"] for r in self._conn.execute("PRAGMA table_info(vconfs)")}
        if "category" not in columns:
            self._conn.execute("ALTER TABLE vconfs ADD COLUMN category TEXT DEFAULT 'Other'")
            rows = self._conn.execute("SELECT id, name FROM vconfs").fetchall()
            self._conn.executemany(
                "UPDATE vconfs SET category = ? WHERE id = ?",
                [(vconf_category(r["name"]), r["id"]) for r in rows],
            )
            logger.info(f"vconfs table upgraded with categories ({len(rows)} rows)")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Transactions ─────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator["FleetStore"]:
        """
        Run a block atomically.

        The outermost level issues BEGIN/COMMIT. Nested levels use
        savepoints so an inner failure can be caught without losing the
        outer work. Any exception rolls back its level and propagates.
        """
        savepoint = None
        if self._depth == 0:
            self._conn.execute("BEGIN")
        else:
            savepoint = f"sp_{self._depth}"
            self._conn.execute(f"SAVEPOINT {savepoint}")
        self._depth += 1
        try:
            yield self
        except BaseException:
            self._depth -= 1
            if savepoint:
                self._conn.execute(f"ROLLBACK TO {savepoint}")
                self._conn.execute(f"RELEASE {savepoint}")
            else:
                self._conn.execute("ROLLBACK")
                logger.debug("Transaction rolled back")
            raise
        else:
            self._depth -= 1
            if savepoint:
                self._conn.execute(f"RELEASE {savepoint}")
            else:
                self._conn.execute("COMMIT")

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # ── Venues & VSites ──────────────────────────────────────────

    def add_venue(self, name: str, provider: str = "", location: str = "",
                  description: str = "") -> int:
        try:
            cursor = self._conn.execute(
                """INSERT INTO venues (name, provider, location, description, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (name, provider, location, description, time.time()),
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"Venue '{name}' already exists")
        return cursor.lastrowid

    def get_venue(self, name: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute("SELECT * FROM venues WHERE name = ?", (name,)).fetchone()
        return dict(row) if row else None

    def list_venues(self) -> List[Dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM venues ORDER BY name").fetchall()
        return [dict(r) for r in rows]

    def add_vsite(self, name: str, venue: str = None, technology: str = "",
                  description: str = "") -> int:
        venue_id = None
        if venue:
            venue_row = self.get_venue(venue)
            if not venue_row:
                raise NotFoundError(f"Venue '{venue}' not found")
            venue_id = venue_row["id"]
        try:
            cursor = self._conn.execute(
                """INSERT INTO vsites (venue_id, name, technology, description, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (venue_id, name, technology, description, time.time()),
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"VSite '{name}' already exists")
        return cursor.lastrowid

    def get_vsite(self, name: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute("SELECT * FROM vsites WHERE name = ?", (name,)).fetchone()
        return dict(row) if row else None

    def list_vsites(self, venue_id: int = None) -> List[Dict[str, Any]]:
        if venue_id is None:
            rows = self._conn.execute("SELECT * FROM vsites ORDER BY name").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM vsites WHERE venue_id = ? ORDER BY name", (venue_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    # ── VNodes ───────────────────────────────────────────────────

    def add_vnode(self, name: str, vsite: str = None, **fields) -> int:
        unknown = set(fields) - VNODE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown vnode fields: {', '.join(sorted(unknown))}")
        if vsite:
            vsite_row = self.get_vsite(vsite)
            if not vsite_row:
                raise NotFoundError(f"VSite '{vsite}' not found")
            fields["vsite_id"] = vsite_row["id"]

        now = time.time()
        columns = ["name", "created_at", "updated_at"] + list(fields)
        values = [name, now, now] + list(fields.values())
        try:
            cursor = self._conn.execute(
                f"INSERT INTO vnodes ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"VNode '{name}' already exists")
        logger.info(f"VNode added: {name}")
        return cursor.lastrowid

    def update_vnode(self, name: str, **fields) -> None:
        unknown = set(fields) - VNODE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown vnode fields: {', '.join(sorted(unknown))}")
        self.require_vnode(name)
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        self._conn.execute(
            f"UPDATE vnodes SET {assignments}, updated_at = ? WHERE name = ?",
            list(fields.values()) + [time.time(), name],
        )

    def get_vnode(self, name: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute("SELECT * FROM vnodes WHERE name = ?", (name,)).fetchone()
        return dict(row) if row else None

    def require_vnode(self, name: str) -> Dict[str, Any]:
        vnode = self.get_vnode(name)
        if not vnode:
            raise NotFoundError(
                f"VNode '{name}' not found. Add it first with: nsctl addvnode {name}"
            )
        return vnode

    def list_vnodes(self, vsite_id: int = None) -> List[Dict[str, Any]]:
        if vsite_id is None:
            rows = self._conn.execute("SELECT * FROM vnodes ORDER BY name").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM vnodes WHERE vsite_id = ? ORDER BY name", (vsite_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_vnode(self, name: str) -> None:
        vnode = self.require_vnode(name)
        live = self._conn.execute(
            "SELECT COUNT(*) FROM vhosts WHERE vnode_id = ? AND deleted_at IS NULL",
            (vnode["id"],),
        ).fetchone()[0]
        if live:
            raise ConflictError(f"VNode '{name}' still has {live} vhost(s)")
        self._conn.execute("DELETE FROM vnodes WHERE id = ?", (vnode["id"],))
        logger.info(f"VNode deleted: {name}")

    # ── VHosts ───────────────────────────────────────────────────

    def add_vhost(self, vnode_id: int, domain: str, status: str = "inactive",
                  is_active: bool = False) -> int:
        now = time.time()
        try:
            cursor = self._conn.execute(
                """INSERT INTO vhosts (vnode_id, domain, status, is_active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (vnode_id, domain, status, 1 if is_active else 0, now, now),
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"VHost '{domain}' already exists on this vnode")
        return cursor.lastrowid

    def get_vhost(self, vnode: str, domain: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            """SELECT vhosts.*, vnodes.name AS vnode
               FROM vhosts JOIN vnodes ON vnodes.id = vhosts.vnode_id
               WHERE vnodes.name = ? AND vhosts.domain = ? AND vhosts.deleted_at IS NULL""",
            (vnode, domain),
        ).fetchone()
        return self._row_to_vhost(row) if row else None

    def require_vhost(self, vnode: str, domain: str) -> Dict[str, Any]:
        vhost = self.get_vhost(vnode, domain)
        if not vhost:
            raise NotFoundError(f"VHost '{domain}' not found on vnode '{vnode}'")
        return vhost

    def list_vhosts(self, vnode: str = None, include_deleted: bool = False) -> List[Dict[str, Any]]:
        query = """SELECT vhosts.*, vnodes.name AS vnode
                   FROM vhosts JOIN vnodes ON vnodes.id = vhosts.vnode_id WHERE 1=1"""
        params = []
        if vnode:
            query += " AND vnodes.name = ?"
            params.append(vnode)
        if not include_deleted:
            query += " AND vhosts.deleted_at IS NULL"
        query += " ORDER BY vnodes.name, vhosts.domain"
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_vhost(r) for r in rows]

    def update_vhost(self, vhost_id: int, **fields) -> None:
        unknown = set(fields) - VHOST_FIELDS
        if unknown:
            raise ValidationError(f"Unknown vhost fields: {', '.join(sorted(unknown))}")
        if "validation_report" in fields and not isinstance(fields["validation_report"], (str, type(None))):
            fields["validation_report"] = json.dumps(fields["validation_report"])
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        self._conn.execute(
            f"UPDATE vhosts SET {assignments}, updated_at = ? WHERE id = ?",
            list(fields.values()) + [time.time(), vhost_id],
        )

    def soft_delete_vhost(self, vhost_id: int) -> None:
        """Mark a vhost deleted and purge its vconfs in one step."""
        now = time.time()
        with self.transaction():
            self._conn.execute("DELETE FROM vconfs WHERE vhost_id = ?", (vhost_id,))
            self._conn.execute(
                """UPDATE vhosts SET deleted_at = ?, status = 'deleted', is_active = 0,
                   updated_at = ? WHERE id = ?""",
                (now, now, vhost_id),
            )

    # ── VConfs ───────────────────────────────────────────────────

    def set_vconfs(self, vhost_id: int, variables: Dict[str, str]) -> int:
        """Upsert many variables at once. Returns the number written."""
        now = time.time()
        rows = [
            (vhost_id, name, "" if value is None else str(value), vconf_category(name),
             1 if "PASS" in name.upper() else 0, now, now)
            for name, value in variables.items()
        ]
        self._conn.executemany(
            """INSERT INTO vconfs (vhost_id, name, value, category, is_sensitive, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(vhost_id, name) DO UPDATE SET
                   value = excluded.value,
                   category = excluded.category,
                   is_sensitive = excluded.is_sensitive,
                   updated_at = excluded.updated_at""",
            rows,
        )
        return len(rows)

    def set_vconf(self, vhost_id: int, name: str, value: Optional[str]) -> None:
        if value is None:
            self.delete_vconf(vhost_id, name)
            return
        self.set_vconfs(vhost_id, {name: value})

    def get_vconf(self, vhost_id: int, name: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT value FROM vconfs WHERE vhost_id = ? AND name = ?", (vhost_id, name)
        ).fetchone()
        return row["value"] if row else None

    def get_vconfs(self, vhost_id: int) -> Dict[str, str]:
        rows = self._conn.execute(
            "SELECT name, value FROM vconfs WHERE vhost_id = ? ORDER BY name", (vhost_id,)
        ).fetchall()
        return {r["name"]: r["value"] for r in rows}

    def get_vconf_rows(self, vhost_id: int, category: str = None) -> List[Dict[str, Any]]:
        """Full vconf rows, optionally limited to one category."""
        sql = "SELECT name, value, category, is_sensitive FROM vconfs WHERE vhost_id = ?"
        params: List[Any] = [vhost_id]
        if category:
            sql += " AND category = ?"
            params.append(category)
        rows = self._conn.execute(sql + " ORDER BY name", params).fetchall()
        return [
            {**dict(r), "is_sensitive": bool(r["is_sensitive"])}
            for r in rows
        ]

    def delete_vconf(self, vhost_id: int, name: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM vconfs WHERE vhost_id = ? AND name = ?", (vhost_id, name)
        )
        return cursor.rowcount > 0

    def delete_vconfs(self, vhost_id: int) -> int:
        cursor = self._conn.execute("DELETE FROM vconfs WHERE vhost_id = ?", (vhost_id,))
        return cursor.rowcount

    # ── VPass ────────────────────────────────────────────────────

    def add_vpass(self, name: str, service: str, secret: str, owner_type: str = None,
                  owner_id: int = None, **fields) -> int:
        if owner_type is not None and owner_type not in OWNER_TYPES:
            raise ValidationError(f"Invalid owner type: {owner_type}")
        unknown = set(fields) - VPASS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown vpass fields: {', '.join(sorted(unknown))}")
        now = time.time()
        columns = ["name", "service", "secret", "owner_type", "owner_id",
                   "created_at", "updated_at"] + list(fields)
        values = [name, service, secret, owner_type, owner_id, now, now] + list(fields.values())
        try:
            cursor = self._conn.execute(
                f"INSERT INTO vpass ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
        except sqlite3.IntegrityError:
            raise ConflictError(f"Credential '{name}' already exists for this owner")
        return cursor.lastrowid

    def update_vpass(self, vpass_id: int, **fields) -> None:
        unknown = set(fields) - VPASS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown vpass fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        self._conn.execute(
            f"UPDATE vpass SET {assignments}, updated_at = ? WHERE id = ?",
            list(fields.values()) + [time.time(), vpass_id],
        )

    def get_vpass(self, name: str, owner_type: str = None,
                  owner_id: int = None) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            """SELECT * FROM vpass WHERE name = ?
               AND COALESCE(owner_type, '') = COALESCE(?, '')
               AND COALESCE(owner_id, 0) = COALESCE(?, 0)""",
            (name, owner_type, owner_id),
        ).fetchone()
        return dict(row) if row else None

    def list_vpass(self, owner_type: str = None, owner_id: int = None,
                   service: str = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM vpass WHERE 1=1"
        params = []
        if owner_type:
            query += " AND owner_type = ?"
            params.append(owner_type)
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if service:
            query += " AND service = ?"
            params.append(service)
        query += " ORDER BY owner_type, owner_id, name"
        rows = self._conn.execute(query, params).fetchall()
        return [dict(r) for r in rows]

    def delete_vpass(self, vpass_id: int) -> bool:
        cursor = self._conn.execute("DELETE FROM vpass WHERE id = ?", (vpass_id,))
        return cursor.rowcount > 0

    # ── Audit Trail ──────────────────────────────────────────────

    def log_event(self, record: AuditRecord) -> int:
        """Validate and append an audit record. Returns the event ID."""
        payload = record.to_dict()
        cursor = self._conn.execute(
            """INSERT INTO events (timestamp, actor, action, target, success, detail, context)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (payload["timestamp"], payload["actor"], payload["action"], payload["target"],
             1 if payload["success"] else 0, payload["detail"],
             json.dumps(payload["context"])),
        )
        return cursor.lastrowid

    def get_events(self, action: str = None, target: str = None,
                   limit: int = 50) -> List[Dict[str, Any]]:
        query = "SELECT * FROM events WHERE 1=1"
        params = []
        if action:
            query += " AND action = ?"
            params.append(action)
        if target:
            query += " AND target = ?"
            params.append(target)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_event(r) for r in rows]

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _row_to_event(row) -> Dict[str, Any]:
        d = dict(row)
        d["success"] = bool(d.get("success"))
        try:
            d["context"] = json.loads(d["context"])
        except (json.JSONDecodeError, TypeError):
            pass
        return d

    @staticmethod
    def _row_to_vhost(row) -> Dict[str, Any]:
        d = dict(row)
        d["is_active"] = bool(d.get("is_active"))
        if d.get("validation_report"):
            try:
                d["validation_report"] = json.loads(d["validation_report"])
            except (json.JSONDecodeError, TypeError):
                pass
        return d

    def get_stats(self) -> Dict[str, Any]:
        def count(sql: str) -> int:
            return self._conn.execute(sql).fetchone()[0]

        return {
            "db_path": self.db_path,
            "venues": count("SELECT COUNT(*) FROM venues"),
            "vsites": count("SELECT COUNT(*) FROM vsites"),
            "vnodes": count("SELECT COUNT(*) FROM vnodes"),
            "vhosts": count("SELECT COUNT(*) FROM vhosts WHERE deleted_at IS NULL"),
            "active_vhosts": count(
                "SELECT COUNT(*) FROM vhosts WHERE deleted_at IS NULL AND is_active = 1"
            ),
            "vconfs": count("SELECT COUNT(*) FROM vconfs"),
            "credentials": count("SELECT COUNT(*) FROM vpass"),
            "events": count("SELECT COUNT(*) FROM events"),
        }

    def __repr__(self) -> str:
        return f"FleetStore({self.db_path})"
