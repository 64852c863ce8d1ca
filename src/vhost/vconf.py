"""VHost configuration variable (vconf) management.

Plain output is sorted ``KEY='value'`` lines that bash can source
directly: ``source <(nsctl shvconf markc example.com)``.
"""

from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from typing import Dict, Optional

from fleet.audit import AuditRecord
from fleet.errors import ConflictError, NotFoundError, ValidationError
from fleet.store import VCONF_CATEGORIES, vconf_category
from .platform import PASSWORD_VARS, to_shell

logger = logging.getLogger(__name__)

VAR_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
INIT_MODES = ("create", "merge", "regenerate")

# Kept from the existing vconfs when re-initializing in merge mode
MERGE_PRESERVED = PASSWORD_VARS + ("U_UID", "U_GID", "UUSER", "U_SHL", "DUSER", "DNAME", "WPUSR")

GROUPS = VCONF_CATEGORIES


def is_sensitive(name: str) -> bool:
    return "pass" in name.lower()


def mask_value(name: str, value: str) -> str:
    if is_sensitive(name):
        return "*" * min(len(value), 16)
    return value


def format_plain(variables: Dict[str, str]) -> str:
    return to_shell(variables)


def format_json(variables: Dict[str, str]) -> str:
    return json.dumps(dict(sorted(variables.items())), indent=2)


def group_rows(rows) -> "OrderedDict[str, Dict[str, str]]":
    """Bucket stored vconf rows by their category column for table display."""
    grouped = OrderedDict((g, {}) for g in GROUPS)
    for row in sorted(rows, key=lambda r: r["name"]):
        grouped.setdefault(row.get("category") or "Other", {})[row["name"]] = row["value"]
    return grouped


def group_variables(variables: Dict[str, str]) -> "OrderedDict[str, Dict[str, str]]":
    """Bucket unsaved variables; path names win over other rules."""
    return group_rows(
        {"name": k, "value": v, "category": vconf_category(k)} for k, v in variables.items()
    )


class VconfService:
    """CRUD over a vhost's vconfs, addressed by vnode name and domain."""

    def __init__(self, store, config_service, executor, actor: str = "nsctl"):
        self.store = store
        self.config_service = config_service
        self.executor = executor
        self.actor = actor

    def _vhost(self, vnode: str, domain: str):
        self.store.require_vnode(vnode)
        return self.store.require_vhost(vnode, domain)

    def _audit(self, action: str, vnode: str, domain: str, detail: str, context=None):
        self.store.log_event(AuditRecord(
            action=action, target=f"{vnode}/{domain}", detail=detail,
            actor=self.actor, context=context,
        ))

    def initialize(self, vnode: str, domain: str, mode: str = "create",
                   minimal: bool = False, dry_run: bool = False) -> Dict[str, str]:
        """Generate and store the platform variables for an existing vhost.

        ``create`` refuses when variables already exist, ``merge`` keeps the
        existing passwords and user identity, ``regenerate`` replaces
        everything.
        """
        if mode not in INIT_MODES:
            raise ValidationError(f"Unknown mode '{mode}' (use one of: {', '.join(INIT_MODES)})")

        vhost = self._vhost(vnode, domain)
        existing = self.store.get_vconfs(vhost["id"])
        if existing and mode == "create":
            raise ConflictError(
                f"'{domain}' already has {len(existing)} vconfs; use merge or regenerate"
            )

        config = self.config_service.generate_vhost_config(vnode, domain)
        variables = self.config_service.extract_platform_variables(config)

        detected = self.executor.get_os_variables(vnode)
        variables.update({k: v for k, v in detected.items() if v != "unknown"})

        if mode == "merge":
            for name in MERGE_PRESERVED:
                if existing.get(name):
                    variables[name] = existing[name]

        if minimal:
            variables = self.config_service.minimal_variables(variables)

        if dry_run:
            return variables

        with self.store.transaction():
            if mode == "regenerate":
                self.store.delete_vconfs(vhost["id"])
            self.store.set_vconfs(vhost["id"], variables)

        logger.info(f"Stored {len(variables)} vconfs for {domain} on {vnode} (mode={mode})")
        self._audit("addvconf", vnode, domain, f"{len(variables)} variables",
                    {"mode": mode, "minimal": minimal})
        return variables

    def all(self, vnode: str, domain: str, category: str = None) -> Dict[str, str]:
        return {r["name"]: r["value"] for r in self.rows(vnode, domain, category)}

    def rows(self, vnode: str, domain: str, category: str = None):
        """Stored vconf rows with their category, optionally one category only."""
        if category and category not in VCONF_CATEGORIES:
            raise ValidationError(
                f"Unknown category '{category}' (use one of: {', '.join(VCONF_CATEGORIES)})"
            )
        return self.store.get_vconf_rows(self._vhost(vnode, domain)["id"], category)

    def get(self, vnode: str, domain: str, name: str) -> str:
        name = name.upper()
        value = self.store.get_vconf(self._vhost(vnode, domain)["id"], name)
        if value is None:
            raise NotFoundError(f"Variable {name} not found for {domain}")
        return value

    def set(self, vnode: str, domain: str, name: str, value: str) -> Optional[str]:
        """Set one variable. Returns the previous value, if any."""
        name = name.upper()
        if not VAR_NAME_RE.match(name):
            raise ValidationError(f"Invalid variable name: {name}")
        vhost = self._vhost(vnode, domain)
        previous = self.store.get_vconf(vhost["id"], name)
        self.store.set_vconf(vhost["id"], name, value)
        self._audit("chvconf", vnode, domain, name,
                    {"name": name, "created": previous is None})
        return previous

    def delete(self, vnode: str, domain: str, name: str) -> bool:
        name = name.upper()
        vhost = self._vhost(vnode, domain)
        deleted = self.store.delete_vconf(vhost["id"], name)
        if deleted:
            self._audit("delvconf", vnode, domain, name)
        return deleted

    def delete_all(self, vnode: str, domain: str) -> int:
        vhost = self._vhost(vnode, domain)
        count = self.store.delete_vconfs(vhost["id"])
        self._audit("delvconf", vnode, domain, f"all ({count})", {"count": count})
        return count
