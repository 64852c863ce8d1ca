#!/usr/bin/env python3
"""
Virtual Mailbox Service — vmails on a vhost's vnode

The vnode keeps only the SHA512-CRYPT hash (vmails table, hashed there
by doveadm); the cleartext goes into the local vault under service
"mail", owned by the vhost.

Aliases (valias rows) are managed alongside: user@domain or @domain
sources forwarding to a comma separated target list.

Each operation is one heredoc script. Remote exit codes:
    0  done
    3  domain not registered in the vnode's vhosts table
    4  mailbox or alias already exists (create) / does not exist (delete)
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

from fleet.audit import AuditRecord
from fleet.errors import (
    NetServaError, ConflictError, NotFoundError, RemoteExecutionError, ValidationError,
)
from .platform import SYSADM_DB, generate_password

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[a-z0-9][a-z0-9._%+-]{0,63}@[a-z0-9.-]+\.[a-z]{2,}$")
CATCH_ALL_LOCALPART = "admin"
CATCH_ALL_RE = re.compile(r"^@[a-z0-9.-]+\.[a-z]{2,}$")

EXIT_NO_DOMAIN = 3
EXIT_MAILBOX = 4

CREATE_SCRIPT = """#!/bin/bash
EMAIL="$1"; MPASS="$2"; VHOST="$3"; MPATH="$4"
U_UID="$5"; U_GID="$6"; SQCMD="$7"
LHS="${EMAIL%@*}"
HOME_DIR="$MPATH/$LHS"

HID=$(echo "SELECT id FROM vhosts WHERE domain = '$VHOST' AND active = 1" | $SQCMD)
if [[ -z "$HID" ]]; then
    echo "Domain $VHOST not found in vhosts table" >&2
    exit 3
fi

EXISTS=$(echo "SELECT COUNT(id) FROM vmails WHERE user = '$EMAIL'" | $SQCMD)
if [[ "$EXISTS" != "0" ]]; then
    echo "Virtual mail user already exists: $EMAIL" >&2
    exit 4
fi

HASH=$(doveadm pw -s SHA512-CRYPT -p "$MPASS")

if [[ "$LHS" == "admin" ]]; then
    SOURCE="@$VHOST"
else
    SOURCE="$EMAIL"
fi

cat <<EOS | $SQCMD
INSERT INTO vmails (hid, uid, gid, active, user, home, password, updated_at, created_at)
VALUES ($HID, $U_UID, $U_GID, 1, '$EMAIL', '$HOME_DIR', '$HASH', CURRENT_TIMESTAMP, CURRENT_TIMESTAMP);
INSERT INTO vmail_log (mid, ymd)
VALUES ((SELECT id FROM vmails WHERE user = '$EMAIL'), date('now'));
INSERT INTO valias (hid, source, target, active, updated_at, created_at)
VALUES ($HID, '$SOURCE', '$EMAIL', 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP);
EOS
echo "    ✓ Database entries created for $EMAIL"

mkdir -p "$HOME_DIR/Maildir" "$HOME_DIR/sieve"
if [[ -d /etc/spamprobe ]]; then
    mkdir -p "$HOME_DIR/.spamprobe"
    cp -a /etc/spamprobe/* "$HOME_DIR/.spamprobe/" 2>/dev/null || true
fi
chown -R "$U_UID:$U_GID" "$HOME_DIR"
find "$HOME_DIR" -type d -exec chmod 00750 {} +
find "$HOME_DIR" -type f -exec chmod 00640 {} +
echo "    ✓ Mailbox created: $HOME_DIR/Maildir"
"""

DELETE_SCRIPT = """#!/bin/bash
EMAIL="$1"; MPATH="$2"; SQCMD="$3"
LHS="${EMAIL%@*}"

EXISTS=$(echo "SELECT COUNT(id) FROM vmails WHERE user = '$EMAIL'" | $SQCMD)
if [[ "$EXISTS" == "0" ]]; then
    echo "Virtual mail user not found: $EMAIL" >&2
    exit 4
fi

cat <<EOS | $SQCMD
DELETE FROM vmail_log WHERE mid IN (SELECT id FROM vmails WHERE user = '$EMAIL');
DELETE FROM valias WHERE target = '$EMAIL';
DELETE FROM vmails WHERE user = '$EMAIL';
EOS
echo "    ✓ Database entries removed for $EMAIL"

if [[ -n "$LHS" && -d "$MPATH/$LHS" ]]; then
    rm -rf "${MPATH:?}/$LHS"
    echo "    ✓ Mailbox removed: $MPATH/$LHS"
fi
"""

LIST_SCRIPT = """#!/bin/bash
VHOST="$1"; SQCMD="$2"
echo "SELECT user, active FROM vmails WHERE user LIKE '%@$VHOST' ORDER BY user" | $SQCMD
"""

ALIAS_CREATE_SCRIPT = """#!/bin/bash
SOURCE="$1"; TARGET="$2"; VHOST="$3"; SQCMD="$4"

HID=$(echo "SELECT id FROM vhosts WHERE domain = '$VHOST' AND active = 1" | $SQCMD)
if [[ -z "$HID" ]]; then
    echo "Domain $VHOST not found in vhosts table" >&2
    exit 3
fi

EXISTS=$(echo "SELECT COUNT(id) FROM valias WHERE source = '$SOURCE'" | $SQCMD)
if [[ "$EXISTS" != "0" ]]; then
    echo "Virtual alias already exists: $SOURCE" >&2
    exit 4
fi

cat <<EOS | $SQCMD
INSERT INTO valias (hid, source, target, active, updated_at, created_at)
VALUES ($HID, '$SOURCE', '$TARGET', 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP);
EOS
echo "    ✓ Alias $SOURCE -> $TARGET"
"""

ALIAS_DELETE_SCRIPT = """#!/bin/bash
SOURCE="$1"; SQCMD="$2"

EXISTS=$(echo "SELECT COUNT(id) FROM valias WHERE source = '$SOURCE'" | $SQCMD)
if [[ "$EXISTS" == "0" ]]; then
    echo "Virtual alias not found: $SOURCE" >&2
    exit 4
fi

echo "DELETE FROM valias WHERE source = '$SOURCE'" | $SQCMD
echo "    ✓ Alias removed: $SOURCE"
"""

ALIAS_LIST_SCRIPT = """#!/bin/bash
VHOST="$1"; SQCMD="$2"
echo "SELECT source, target, active FROM valias WHERE source = '@$VHOST' OR source LIKE '%@$VHOST' ORDER BY source" | $SQCMD
"""

# sqlite3 separates columns with "|", mariadb -BN with tabs
_COLUMN_SEP = re.compile(r"[|\t]")


def parse_rows(output: str, columns: int) -> List[List[str]]:
    """Split SQL client output into rows of exactly ``columns`` fields."""
    rows = []
    for line in output.splitlines():
        fields = _COLUMN_SEP.split(line.strip(), maxsplit=columns - 1)
        if len(fields) == columns and fields[0]:
            rows.append([f.strip() for f in fields])
    return rows


@dataclass
class VmailResult:
    success: bool
    vnode: str
    email: str
    maildir: str = ""
    password: Optional[str] = field(default=None, repr=False)
    warnings: List[str] = field(default_factory=list)
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AliasResult:
    success: bool
    vnode: str
    source: str
    targets: List[str] = field(default_factory=list)
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def split_address(email: str):
    """Normalize an address and return (email, localpart, domain)."""
    email = email.strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address: '{email}'")
    localpart, _, domain = email.partition("@")
    return email, localpart, domain


def split_alias_source(source: str):
    """Normalize an alias source and return (source, domain).

    ``@example.com`` is the catch-all for the whole domain.
    """
    source = source.strip().lower()
    if source.startswith("@"):
        if not CATCH_ALL_RE.match(source):
            raise ValidationError(f"Invalid catch-all source: '{source}'")
        return source, source[1:]
    email, _, domain = split_address(source)
    return email, domain


class VmailService:
    """Creates, deletes and lists virtual mailboxes and aliases of fleet vhosts."""

    def __init__(self, store, executor, vault, actor: str = "nsctl"):
        self.store = store
        self.executor = executor
        self.vault = vault
        self.actor = actor

    def _vconfs(self, vnode: str, domain: str) -> Dict[str, str]:
        self.store.require_vnode(vnode)
        vhost = self.store.require_vhost(vnode, domain)
        variables = self.store.get_vconfs(vhost["id"])
        if not variables:
            raise NotFoundError(
                f"No vconfs found for '{domain}'. Run: nsctl addvconf {vnode} {domain}"
            )
        return variables

    @staticmethod
    def _mail_path(v: Dict[str, str], domain: str) -> str:
        return v.get("MPATH") or f"{v.get('UPATH') or '/srv/' + domain}/msg"

    @staticmethod
    def _sql(v: Dict[str, str]) -> str:
        return v.get("SQCMD") or f"sqlite3 {SYSADM_DB}"

    def _audit(self, action: str, vnode: str, email: str, success: bool, detail: str = ""):
        self.store.log_event(AuditRecord(
            action=action, target=f"{vnode}/{email}", success=success,
            detail=detail, actor=self.actor,
        ))

    @staticmethod
    def _raise_for(result, email: str, domain: str, vnode: str):
        if result.success:
            return
        if result.exit_code == EXIT_NO_DOMAIN:
            raise NotFoundError(f"Domain {domain} not found in vhosts table on {vnode}")
        if result.exit_code == EXIT_MAILBOX:
            message = (result.stderr or "").strip() or f"Conflict for {email}"
            if "not found" in message:
                raise NotFoundError(message)
            raise ConflictError(message)
        raise RemoteExecutionError(f"Remote mail operation failed: {result.error}", result)

    # ── Create ───────────────────────────────────────────────────

    def create_mailbox(self, vnode: str, email: str, password: str = None) -> VmailResult:
        warnings: List[str] = []
        try:
            email, localpart, domain = split_address(email)
            v = self._vconfs(vnode, domain)
            password = password or generate_password()
            mpath = self._mail_path(v, domain)

            logger.info(f"Creating mailbox {email} on {vnode}")
            result = self.executor.execute_script(
                vnode, CREATE_SCRIPT,
                [email, password, domain, mpath, v.get("U_UID", ""), v.get("U_GID", ""), self._sql(v)],
                as_root=True,
            )
            self._raise_for(result, email, domain, vnode)
        except NetServaError as e:
            logger.error(f"Mailbox creation failed for {email} on {vnode}: {e}")
            self._audit("addvmail", vnode, email, False, str(e))
            return VmailResult(success=False, vnode=vnode, email=email, error=str(e))

        if self.vault.unlocked:
            try:
                self.vault.add(email, "mail", password, owner_type="vhost",
                               owner_name=f"{vnode}/{domain}", username=email,
                               notes=f"Created via addvmail on {vnode}")
            except ConflictError:
                self.vault.change(email, "vhost", f"{vnode}/{domain}", password=password)
        else:
            message = "Vault key not configured, mailbox password was not stored"
            logger.warning(f"{message} for {email}")
            warnings.append(message)

        self._audit("addvmail", vnode, email, True, "created")
        return VmailResult(
            success=True, vnode=vnode, email=email,
            maildir=f"{mpath}/{localpart}/Maildir", password=password, warnings=warnings,
        )

    # ── Delete ───────────────────────────────────────────────────

    def delete_mailbox(self, vnode: str, email: str) -> VmailResult:
        try:
            email, _, domain = split_address(email)
            v = self._vconfs(vnode, domain)
            result = self.executor.execute_script(
                vnode, DELETE_SCRIPT, [email, self._mail_path(v, domain), self._sql(v)],
                as_root=True,
            )
            self._raise_for(result, email, domain, vnode)
        except NetServaError as e:
            logger.error(f"Mailbox deletion failed for {email} on {vnode}: {e}")
            self._audit("delvmail", vnode, email, False, str(e))
            return VmailResult(success=False, vnode=vnode, email=email, error=str(e))

        owner = f"{vnode}/{domain}"
        vhost_id = self.store.require_vhost(vnode, domain)["id"]
        row = self.store.get_vpass(email, "vhost", vhost_id)
        if row:
            self.store.delete_vpass(row["id"])

        logger.info(f"Mailbox {email} deleted from {vnode}")
        self._audit("delvmail", vnode, email, True, f"deleted from {owner}")
        return VmailResult(success=True, vnode=vnode, email=email)

    # ── List ─────────────────────────────────────────────────────

    def list_mailboxes(self, vnode: str, domain: str) -> List[Dict[str, Any]]:
        """Mailboxes registered on the vnode for a domain, plus vault status."""
        domain = domain.strip().lower()
        v = self._vconfs(vnode, domain)
        result = self.executor.execute_script(
            vnode, LIST_SCRIPT, [domain, self._sql(v)], as_root=True,
        )
        if not result.success:
            raise RemoteExecutionError(f"Could not list mailboxes: {result.error}", result)

        vhost_id = self.store.require_vhost(vnode, domain)["id"]
        stored = {r["name"] for r in self.store.list_vpass("vhost", vhost_id, service="mail")}

        return [
            {"email": user, "active": active == "1", "credential_stored": user in stored}
            for user, active in parse_rows(result.stdout, 2)
        ]

    # ── Aliases ──────────────────────────────────────────────────

    def _alias_audit(self, action: str, vnode: str, source: str, success: bool, detail: str = ""):
        self.store.log_event(AuditRecord(
            action=action, target=f"{vnode}/{source}", success=success,
            detail=detail, actor=self.actor,
        ))

    def create_alias(self, vnode: str, source: str, targets) -> AliasResult:
        """
        Forward ``source`` to one or more addresses.

        ``source`` is user@domain or @domain for a catch-all; ``targets``
        is a list or a comma separated string.
        """
        try:
            source, domain = split_alias_source(source)
            if isinstance(targets, str):
                targets = targets.split(",")
            targets = [split_address(t)[0] for t in targets if t.strip()]
            if not targets:
                raise ValidationError("At least one target address is required")
            v = self._vconfs(vnode, domain)

            logger.info(f"Creating alias {source} -> {', '.join(targets)} on {vnode}")
            result = self.executor.execute_script(
                vnode, ALIAS_CREATE_SCRIPT, [source, ",".join(targets), domain, self._sql(v)],
                as_root=True,
            )
            self._raise_for(result, source, domain, vnode)
        except NetServaError as e:
            logger.error(f"Alias creation failed for {source} on {vnode}: {e}")
            self._alias_audit("addvalias", vnode, source, False, str(e))
            return AliasResult(success=False, vnode=vnode, source=source, error=str(e))

        self._alias_audit("addvalias", vnode, source, True, ",".join(targets))
        return AliasResult(success=True, vnode=vnode, source=source, targets=targets)

    def delete_alias(self, vnode: str, source: str) -> AliasResult:
        try:
            source, domain = split_alias_source(source)
            v = self._vconfs(vnode, domain)
            result = self.executor.execute_script(
                vnode, ALIAS_DELETE_SCRIPT, [source, self._sql(v)], as_root=True,
            )
            self._raise_for(result, source, domain, vnode)
        except NetServaError as e:
            logger.error(f"Alias deletion failed for {source} on {vnode}: {e}")
            self._alias_audit("delvalias", vnode, source, False, str(e))
            return AliasResult(success=False, vnode=vnode, source=source, error=str(e))

        logger.info(f"Alias {source} deleted from {vnode}")
        self._alias_audit("delvalias", vnode, source, True, "deleted")
        return AliasResult(success=True, vnode=vnode, source=source)

    def list_aliases(self, vnode: str, domain: str) -> List[Dict[str, Any]]:
        """Aliases whose source lies in ``domain``, catch-all included."""
        domain = domain.strip().lower()
        v = self._vconfs(vnode, domain)
        result = self.executor.execute_script(
            vnode, ALIAS_LIST_SCRIPT, [domain, self._sql(v)], as_root=True,
        )
        if not result.success:
            raise RemoteExecutionError(f"Could not list aliases: {result.error}", result)
        return [
            {"source": source, "targets": target.split(","), "active": active == "1"}
            for source, target, active in parse_rows(result.stdout, 3)
        ]
