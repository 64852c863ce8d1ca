#!/usr/bin/env python3
"""
VPass Vault — encrypted credentials for the fleet

Credentials are Fernet tokens in the vpass table and may be attached to
a vsite, a vnode or a vhost. Plaintext only ever leaves through get().

Owners are addressed by name:
    vsite  -> "<vsite>"
    vnode  -> "<vnode>"
    vhost  -> "<vnode>/<domain>"
"""

import logging
from typing import Optional, Dict, Any, List, Tuple

from cryptography.fernet import Fernet, InvalidToken

from fleet.audit import AuditRecord
from fleet.errors import NotFoundError, ValidationError, VaultError

logger = logging.getLogger(__name__)

SERVICES = (
    "mysql", "sqlite", "ssh", "sftp", "mail", "imap", "smtp",
    "wordpress", "admin", "api", "cloudflare", "binarylane",
)

MASK = "********"


class Vault:
    """Encrypts, stores and decrypts fleet credentials."""

    def __init__(self, store, key: Optional[str] = None, actor: str = "nsctl"):
        self.store = store
        self.actor = actor
        self._fernet = None
        if key:
            try:
                self._fernet = Fernet(key.encode() if isinstance(key, str) else key)
            except (ValueError, TypeError) as e:
                raise VaultError(f"Invalid vault key: {e}")

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    @property
    def unlocked(self) -> bool:
        return self._fernet is not None

    def _require_key(self) -> Fernet:
        if self._fernet is None:
            raise VaultError(
                "Vault key not configured. Set NETSERVA_VAULT_KEY "
                "(generate one with: nsctl genkey)"
            )
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self._require_key().encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._require_key().decrypt(token.encode()).decode()
        except InvalidToken:
            raise VaultError("Credential could not be decrypted with the configured key")

    # ── Owners ───────────────────────────────────────────────────

    def resolve_owner(self, owner_type: str = None,
                      owner_name: str = None) -> Tuple[Optional[str], Optional[int]]:
        if not owner_type:
            return None, None
        if not owner_name:
            raise ValidationError(f"An owner name is required for owner type '{owner_type}'")
        if owner_type == "vsite":
            row = self.store.get_vsite(owner_name)
            if not row:
                raise NotFoundError(f"VSite '{owner_name}' not found")
            return "vsite", row["id"]
        if owner_type == "vnode":
            return "vnode", self.store.require_vnode(owner_name)["id"]
        if owner_type == "vhost":
            vnode, sep, domain = owner_name.partition("/")
            if not sep or not domain:
                raise ValidationError("VHost owners are written as <vnode>/<domain>")
            return "vhost", self.store.require_vhost(vnode, domain)["id"]
        raise ValidationError(f"Invalid owner type: {owner_type}")

    def _find(self, name: str, owner_type: str = None, owner_name: str = None) -> Dict[str, Any]:
        otype, oid = self.resolve_owner(owner_type, owner_name)
        row = self.store.get_vpass(name, otype, oid)
        if not row:
            raise NotFoundError(f"Credential '{name}' not found")
        return row

    def _audit(self, action: str, name: str, context: Dict[str, Any] = None):
        self.store.log_event(AuditRecord(
            action=action, target=name, actor=self.actor, context=context,
        ))

    # ── CRUD ─────────────────────────────────────────────────────

    def add(self, name: str, service: str, password: str, owner_type: str = None,
            owner_name: str = None, username: str = "", url: str = "",
            port: int = None, notes: str = "") -> int:
        if service not in SERVICES:
            raise ValidationError(f"Unknown service '{service}' (use one of: {', '.join(SERVICES)})")
        otype, oid = self.resolve_owner(owner_type, owner_name)
        vpass_id = self.store.add_vpass(
            name, service, self.encrypt(password), owner_type=otype, owner_id=oid,
            username=username, url=url, port=port, notes=notes,
        )
        logger.info(f"Credential stored: {name} ({service})")
        self._audit("addpw", name, {"service": service, "owner_type": otype or ""})
        return vpass_id

    def change(self, name: str, owner_type: str = None, owner_name: str = None,
               password: str = None, **fields) -> None:
        row = self._find(name, owner_type, owner_name)
        if fields.get("service") is not None and fields["service"] not in SERVICES:
            raise ValidationError(f"Unknown service '{fields['service']}'")
        updates = {k: v for k, v in fields.items() if v is not None}
        if password is not None:
            updates["secret"] = self.encrypt(password)
        self.store.update_vpass(row["id"], **updates)
        self._audit("chpw", name, {"fields": sorted(updates)})

    def get(self, name: str, owner_type: str = None, owner_name: str = None) -> Dict[str, Any]:
        row = self._find(name, owner_type, owner_name)
        row["password"] = self.decrypt(row.pop("secret"))
        return row

    def list(self, owner_type: str = None, owner_name: str = None,
             service: str = None) -> List[Dict[str, Any]]:
        otype, oid = self.resolve_owner(owner_type, owner_name)
        rows = self.store.list_vpass(owner_type=otype, owner_id=oid, service=service)
        for row in rows:
            row.pop("secret", None)
            row["password"] = MASK
        return rows

    def delete(self, name: str, owner_type: str = None, owner_name: str = None) -> bool:
        row = self._find(name, owner_type, owner_name)
        deleted = self.store.delete_vpass(row["id"])
        if deleted:
            self._audit("delpw", name)
        return deleted
