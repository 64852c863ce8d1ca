#!/usr/bin/env python3
"""
VHost Management Service — the provisioning pipeline

Database first: vconfs are written, then the vnode is brought in line
with them by one heredoc script. Local rows and remote state stay
consistent through the transaction boundary:

create_vhost(vnode, domain):
    1. validate the domain, find the vnode, refuse duplicates
    2. generate the platform variables (reads facts from the vnode)
    BEGIN
    3. insert the vhost (status=inactive)
    4. write every variable to vconfs
    5. run the provisioning script (single SSH round trip, as root)
    6. mark the vhost active
    COMMIT   (any failure in 3-6 rolls everything back)

delete_vhost(vnode, domain):
    Remote cleanup is best effort: a failure is logged as a warning and
    the vhost is still soft deleted together with its vconfs.

update_vhost(vnode, domain, php_version, webroot):
    vconfs and the remote reconfiguration commit or roll back together.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List

from fleet.audit import AuditRecord
from fleet.errors import (
    NetServaError, ConflictError, NotFoundError, RemoteExecutionError, ValidationError,
)
from .configuration import ConfigurationService
from .platform import OsType

logger = logging.getLogger(__name__)

SUPPORTED_PHP_VERSIONS = ("8.1", "8.2", "8.3", "8.4")


@dataclass
class VhostResult:
    """Outcome of a vhost lifecycle operation."""
    success: bool
    vnode: str
    domain: str
    vhost_id: Optional[int] = None
    username: Optional[str] = None
    uid: Optional[str] = None
    paths: Dict[str, str] = field(default_factory=dict)
    changes: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: str = ""
    output: str = ""
    script: str = field(default="", repr=False)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if not self.dry_run:
            d.pop("script", None)
        return d


class VhostManagementService:
    """
    Creates, updates and deletes vhosts on fleet vnodes.

    Failures are returned, not raised: every public method catches
    NetServaError, rolls back, audits and returns success=False.
    """

    def __init__(self, store, config_service, executor, builder, actor: str = "nsctl"):
        self.store = store
        self.config_service = config_service
        self.executor = executor
        self.builder = builder
        self.actor = actor

    def _audit(self, action: str, vnode: str, domain: str, success: bool,
               detail: str = "", context: Dict[str, Any] = None):
        self.store.log_event(AuditRecord(
            action=action, target=f"{vnode}/{domain}", success=success,
            detail=detail, actor=self.actor, context=context,
        ))

    # ── Create ───────────────────────────────────────────────────

    def create_vhost(self, vnode: str, domain: str, dry_run: bool = False) -> VhostResult:
        domain = domain.strip().lower()
        logger.info(f"Creating vhost {domain} on {vnode}")

        try:
            if not ConfigurationService.is_valid_fqdn(domain):
                raise ValidationError(f"Invalid domain name: '{domain}'")
            vnode_row = self.store.require_vnode(vnode)
            if self.store.get_vhost(vnode, domain):
                raise ConflictError(f"VHost '{domain}' already exists on node '{vnode}'")

            if dry_run:
                config = self.config_service.plan_vhost_config(vnode, domain)
            else:
                config = self.config_service.generate_vhost_config(vnode, domain)
            variables = self.config_service.extract_platform_variables(config)
            script = self.builder.build(variables)

            if dry_run:
                # UID is a placeholder until the vnode's passwd is read
                logger.info(f"[DRY RUN] Would provision {domain} on {vnode}")
                return VhostResult(
                    success=True, vnode=vnode, domain=domain,
                    username=variables["UUSER"], uid=variables["U_UID"],
                    paths=self._paths(variables), script=script, dry_run=True,
                )

            with self.store.transaction():
                vhost_id = self.store.add_vhost(vnode_row["id"], domain, status="inactive")
                count = self.store.set_vconfs(vhost_id, variables)
                logger.info(f"VHost record {vhost_id} created with {count} vconfs")

                result = self.executor.execute_script(vnode, script, as_root=True)
                if not result.success:
                    raise RemoteExecutionError(
                        f"Remote provisioning failed: {result.error}", result,
                    )

                self.store.update_vhost(
                    vhost_id, status="active", is_active=True,
                    last_discovered_at=time.time(),
                )

        except NetServaError as e:
            logger.error(f"VHost creation failed for {domain} on {vnode}: {e}")
            output = ""
            if isinstance(e, RemoteExecutionError) and e.result is not None:
                output = "\n".join(filter(None, [e.result.stdout, e.result.stderr]))
            self._audit("addvhost", vnode, domain, False, str(e))
            return VhostResult(success=False, vnode=vnode, domain=domain,
                               error=str(e), output=output)

        logger.info(f"VHost {domain} created on {vnode} (id={vhost_id})")
        self._audit("addvhost", vnode, domain, True, "provisioned",
                    {"vhost_id": vhost_id, "uid": variables["U_UID"]})
        return VhostResult(
            success=True, vnode=vnode, domain=domain, vhost_id=vhost_id,
            username=variables["UUSER"], uid=variables["U_UID"],
            paths=self._paths(variables), output=result.stdout,
        )

    # ── Delete ───────────────────────────────────────────────────

    def delete_vhost(self, vnode: str, domain: str, dry_run: bool = False) -> VhostResult:
        logger.info(f"Deleting vhost {domain} on {vnode}")
        warnings: List[str] = []

        try:
            self.store.require_vnode(vnode)
            vhost = self.store.require_vhost(vnode, domain)
            variables = self.store.get_vconfs(vhost["id"])
            if variables:
                variables = dict(variables, VHOST=variables.get("VHOST") or domain)

            if dry_run:
                return VhostResult(
                    success=True, vnode=vnode, domain=domain, vhost_id=vhost["id"],
                    username=variables.get("UUSER"), dry_run=True,
                    script=self.builder.build_cleanup(variables) if variables else "",
                    paths=self._paths(variables),
                )

            with self.store.transaction():
                if not variables:
                    message = "No vconfs found, remote cleanup skipped"
                    logger.warning(f"{message} for {domain}")
                    warnings.append(message)
                else:
                    result = self.executor.execute_script(
                        vnode,
                        self.builder.build_cleanup(variables),
                        self.builder.cleanup_args(variables),
                        as_root=True,
                    )
                    if not result.success:
                        message = f"Remote cleanup failed (continuing with database deletion): {result.error}"
                        logger.warning(message)
                        warnings.append(message)

                self.store.soft_delete_vhost(vhost["id"])

        except NetServaError as e:
            logger.error(f"VHost deletion failed for {domain} on {vnode}: {e}")
            self._audit("delvhost", vnode, domain, False, str(e))
            return VhostResult(success=False, vnode=vnode, domain=domain, error=str(e))

        logger.info(f"VHost {domain} deleted from {vnode}")
        self._audit("delvhost", vnode, domain, True, "; ".join(warnings) or "deleted",
                    {"vhost_id": vhost["id"]})
        return VhostResult(
            success=True, vnode=vnode, domain=domain, vhost_id=vhost["id"],
            username=variables.get("UUSER"), warnings=warnings,
        )

    # ── Update ───────────────────────────────────────────────────

    def update_vhost(self, vnode: str, domain: str, php_version: str = None,
                     webroot: str = None, dry_run: bool = False) -> VhostResult:
        """Change the PHP version or web root of a vhost (chvhost)."""
        try:
            if php_version is None and webroot is None:
                raise ValidationError("Nothing to change: give a PHP version or a web root")
            vhost = self.store.require_vhost(vnode, domain)
            current = self.store.get_vconfs(vhost["id"])
            if not current:
                raise NotFoundError(f"No vconfs found for '{domain}'. Run: nsctl addvconf {vnode} {domain}")

            updated = dict(current)
            if php_version is not None:
                if php_version not in SUPPORTED_PHP_VERSIONS:
                    raise ValidationError(
                        f"Unsupported PHP version '{php_version}' "
                        f"(supported: {', '.join(SUPPORTED_PHP_VERSIONS)})"
                    )
                os_type = OsType.from_id(current.get("OSTYP"))
                updated["V_PHP"] = php_version
                updated["C_FPM"] = os_type.php_fpm_path(php_version)
            if webroot is not None:
                if not webroot.startswith("/"):
                    raise ValidationError("Web root must be an absolute path")
                updated["WPATH"] = webroot.rstrip("/") or "/"

            changes = {
                k: {"old": current.get(k), "new": v}
                for k, v in updated.items() if current.get(k) != v
            }
            if not changes:
                return VhostResult(success=True, vnode=vnode, domain=domain,
                                   vhost_id=vhost["id"], warnings=["No changes"])
            if dry_run:
                return VhostResult(success=True, vnode=vnode, domain=domain,
                                   vhost_id=vhost["id"], changes=changes, dry_run=True,
                                   script=self.builder.build_reconfigure())

            with self.store.transaction():
                self.store.set_vconfs(vhost["id"], {k: c["new"] for k, c in changes.items()})
                result = self.executor.execute_script(
                    vnode,
                    self.builder.build_reconfigure(),
                    self.builder.reconfigure_args(current, updated),
                    as_root=True,
                )
                if not result.success:
                    raise RemoteExecutionError(f"Remote update failed: {result.error}", result)

        except NetServaError as e:
            logger.error(f"VHost update failed for {domain} on {vnode}: {e}")
            self._audit("chvhost", vnode, domain, False, str(e))
            return VhostResult(success=False, vnode=vnode, domain=domain, error=str(e))

        self._audit("chvhost", vnode, domain, True, "updated", {"changes": changes})
        return VhostResult(success=True, vnode=vnode, domain=domain, vhost_id=vhost["id"],
                           changes=changes, paths=self._paths(updated))

    # ── Queries ──────────────────────────────────────────────────

    def show_vhost(self, vnode: str, domain: str) -> Dict[str, Any]:
        vhost = self.store.require_vhost(vnode, domain)
        variables = self.store.get_vconfs(vhost["id"])
        return {
            **vhost,
            "username": variables.get("UUSER"),
            "uid": variables.get("U_UID"),
            "php": variables.get("V_PHP"),
            "paths": self._paths(variables),
            "vconfs": len(variables),
        }

    def list_vhosts(self, vnode: str = None) -> List[Dict[str, Any]]:
        if vnode:
            self.store.require_vnode(vnode)
        return self.store.list_vhosts(vnode)

    @staticmethod
    def _paths(variables: Dict[str, str]) -> Dict[str, str]:
        keys = {"upath": "UPATH", "wpath": "WPATH", "mpath": "MPATH"}
        return {k: variables[v] for k, v in keys.items() if variables.get(v)}
