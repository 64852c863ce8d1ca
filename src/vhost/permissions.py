"""Permission repair for vhost trees (chperms)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List

from fleet.audit import AuditRecord
from fleet.errors import NetServaError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class PermissionsResult:
    success: bool
    vnode: str
    domain: str
    commands: List[str] = field(default_factory=list)
    dry_run: bool = False
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PermissionsService:
    """Resets ownership and modes of a vhost from its vconfs in one script."""

    def __init__(self, store, executor, builder, actor: str = "nsctl"):
        self.store = store
        self.executor = executor
        self.builder = builder
        self.actor = actor

    def fix_permissions(self, vnode: str, domain: str, web_only: bool = False,
                        mail_only: bool = False, dry_run: bool = False) -> PermissionsResult:
        try:
            vhost = self.store.require_vhost(vnode, domain)
            variables = self.store.get_vconfs(vhost["id"])
            if not variables:
                raise NotFoundError(f"VHost configuration not found for {domain} on {vnode}")

            commands = self.builder.permission_commands(
                variables, web_only=web_only, mail_only=mail_only,
            )
            if dry_run:
                return PermissionsResult(True, vnode, domain, commands, dry_run=True)

            script = self.builder.build_permissions(
                variables, web_only=web_only, mail_only=mail_only,
            )
            result = self.executor.execute_script(vnode, script, as_root=True)
            if not result.success:
                raise NetServaError(result.error or "Permission fix failed")
        except NetServaError as e:
            logger.error(f"Permission fix failed for {domain} on {vnode}: {e}")
            self._audit(vnode, domain, False, str(e))
            return PermissionsResult(False, vnode, domain, error=str(e))

        logger.info(f"Permissions fixed for {domain} on {vnode} ({len(commands)} commands)")
        self._audit(vnode, domain, True, f"{len(commands)} commands")
        return PermissionsResult(True, vnode, domain, commands)

    def fix_all(self, vnode: str, **options) -> Dict[str, Any]:
        self.store.require_vnode(vnode)
        results = [
            self.fix_permissions(vnode, vhost["domain"], **options)
            for vhost in self.store.list_vhosts(vnode)
        ]
        failures = sum(1 for r in results if not r.success)
        return {
            "success": failures == 0,
            "total_processed": len(results),
            "total_success": len(results) - failures,
            "total_errors": failures,
            "results": [r.to_dict() for r in results],
        }

    def _audit(self, vnode: str, domain: str, success: bool, detail: str):
        self.store.log_event(AuditRecord(
            action="chperms", target=f"{vnode}/{domain}", success=success,
            detail=detail, actor=self.actor,
        ))
