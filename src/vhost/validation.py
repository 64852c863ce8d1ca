#!/usr/bin/env python3
"""
VHost Validation Service — compliance checks against the vnode

All remote facts are gathered by ONE facts script printing key=value
lines; the checks themselves run locally against that snapshot.

Checks:
1. vconf consistency - WUGID matches OSTYP
2. User - UUSER exists with U_UID, UPATH owned by UUSER
3. Directories - UPATH, WPATH, MPATH and WPATH/{app,log,run,app/public}
4. Configuration files - PHP-FPM pool, nginx site
5. Database - vhost registered in the vnode's vhosts table
6. Services - nginx and php-fpm active
7. Security - WPATH 755, WPATH/log 750

Status: failed (any critical) > needs_fixes (any error) >
passed_with_warnings > passed.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List

from fleet.audit import AuditRecord
from fleet.errors import NetServaError, ValidationError
from .platform import OsType
from .scripts import REPAIR_SECTIONS, BashScriptBuilder

logger = logging.getLogger(__name__)

NOTFOUND = "NOTFOUND"
WEB_SUBDIRS = {"app": "app", "log": "log", "run": "run", "public": "app/public"}

FACTS_SCRIPT = r"""#!/bin/bash
set -uo pipefail
UUSER="$1"; UPATH="$2"; WPATH="$3"; MPATH="$4"
C_FPM="$5"; C_WEB="$6"; VHOST="$7"; SQCMD="$8"

fact() { printf '%s=%s\n' "$1" "$2"; }
isdir() { [[ -d "$1" ]] && echo yes || echo no; }

fact uid "$(id -u "$UUSER" 2>/dev/null || echo NOTFOUND)"
fact upath_owner "$(stat -c '%U:%G' "$UPATH" 2>/dev/null || echo NOTFOUND)"
fact dir_UPATH "$(isdir "$UPATH")"
fact dir_WPATH "$(isdir "$WPATH")"
fact dir_MPATH "$(isdir "$MPATH")"
fact sub_app "$(isdir "$WPATH/app")"
fact sub_log "$(isdir "$WPATH/log")"
fact sub_run "$(isdir "$WPATH/run")"
fact sub_public "$(isdir "$WPATH/app/public")"
if [[ -f "$C_FPM/pool.d/$VHOST.conf" || -f "$C_FPM/php-fpm.d/$VHOST.conf" ]]; then
    fact fpm_pool yes
else
    fact fpm_pool no
fi
fact nginx_site "$([[ -f "$C_WEB/sites-enabled/$VHOST" ]] && echo yes || echo no)"
fact db_count "$(echo "SELECT COUNT(id) FROM vhosts WHERE domain = '$VHOST'" | $SQCMD 2>/dev/null || echo ERROR)"
fact svc_nginx "$(systemctl is-active nginx 2>/dev/null | head -n1)"
fact svc_php "$(systemctl list-units --type=service --state=active --no-legend 'php*-fpm*' 2>/dev/null | wc -l)"
fact perm_wpath "$(stat -c '%a' "$WPATH" 2>/dev/null || echo NOTFOUND)"
fact perm_log "$(stat -c '%a' "$WPATH/log" 2>/dev/null || echo NOTFOUND)"
exit 0
"""


@dataclass
class ValidationReport:
    """Result of validating one vhost."""
    success: bool
    vnode: str
    domain: str
    status: str = "failed"
    issues: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[Dict[str, str]] = field(default_factory=list)
    passed: List[Dict[str, str]] = field(default_factory=list)
    error: str = ""

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total_checks": len(self.passed) + len(self.issues) + len(self.warnings),
            "passed": len(self.passed),
            "warnings": len(self.warnings),
            "errors": len(self.issues),
            "critical": sum(1 for i in self.issues if i["severity"] == "critical"),
        }

    def issue(self, severity: str, category: str, message: str,
              expected: str = "", actual: str = ""):
        self.issues.append({
            "severity": severity, "category": category, "message": message,
            "expected": expected, "actual": actual,
        })

    def warn(self, category: str, message: str, expected: str = "", actual: str = ""):
        self.warnings.append({
            "category": category, "message": message,
            "expected": expected, "actual": actual,
        })

    def ok(self, category: str, check: str):
        self.passed.append({"category": category, "check": check})

    def finalize(self) -> "ValidationReport":
        severities = {i["severity"] for i in self.issues}
        if "critical" in severities:
            self.status = "failed"
        elif "error" in severities:
            self.status = "needs_fixes"
        elif self.warnings:
            self.status = "passed_with_warnings"
        else:
            self.status = "passed"
        return self

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["summary"] = self.summary
        return d


def parse_facts(output: str) -> Dict[str, str]:
    facts = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            facts[key.strip()] = value.strip()
    return facts


# ── Repair planning ──────────────────────────────────────────────

# Report category -> what fixes it. "vconf" is a local vconf update,
# everything else names a BashScriptBuilder repair section.
REPAIR_ACTIONS = {
    "vconf_mismatch": "vconf",
    "user": "user",
    "database": "database",
    "directory": "directory",
    "config": "config",
    "permissions": "permissions",
    "security": "permissions",
    "service": "services",
}


@dataclass
class RepairResult:
    """Outcome of repairing one vhost from its validation report."""
    success: bool
    vnode: str
    domain: str
    dry_run: bool = False
    planned: List[Dict[str, str]] = field(default_factory=list)
    sections: List[str] = field(default_factory=list)
    vconf_changes: Dict[str, str] = field(default_factory=dict)
    unrepairable: List[Dict[str, str]] = field(default_factory=list)
    script: str = ""
    output: str = ""
    status_before: str = ""
    status_after: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def plan_repairs(report: ValidationReport) -> List[Dict[str, str]]:
    """One entry per issue and warning, each naming the action that covers it."""
    plan = []
    for item in report.issues + report.warnings:
        action = REPAIR_ACTIONS.get(item["category"])
        # without UUSER/U_UID the user section has nothing to create
        if item["category"] == "user" and item.get("severity") == "critical":
            action = None
        plan.append({
            "category": item["category"],
            "message": item["message"],
            "action": action or "manual",
        })
    return plan


class VhostValidationService:
    """Validates provisioned vhosts, repairs what validation finds and
    records the outcome on the vhost."""

    def __init__(self, store, executor, actor: str = "nsctl", builder: BashScriptBuilder = None):
        self.store = store
        self.executor = executor
        self.actor = actor
        self.builder = builder or BashScriptBuilder()

    def validate_vhost(self, vnode: str, domain: str) -> ValidationReport:
        report = ValidationReport(success=True, vnode=vnode, domain=domain)
        try:
            vhost = self.store.require_vhost(vnode, domain)
        except NetServaError as e:
            report.success = False
            report.error = str(e)
            return report

        variables = self.store.get_vconfs(vhost["id"])
        if not variables:
            report.success = False
            report.error = "VHost has no configuration variables"
            report.issue("critical", "configuration", "No vconfs found - cannot validate")
            self._record(vhost["id"], report.finalize())
            return report

        logger.info(f"Validating {domain} on {vnode}")
        result = self.executor.execute_script(
            vnode, FACTS_SCRIPT, self.check_args(variables), as_root=True, strict_mode=False,
        )
        if not result.success:
            report.issue("critical", "connectivity", f"Could not check {vnode}",
                         "facts script exit 0", result.error or result.stderr)
        else:
            self.evaluate(variables, parse_facts(result.stdout), report)

        report.finalize()
        self._record(vhost["id"], report)
        logger.info(f"Validation of {domain}: {report.status} {report.summary}")
        return report

    @staticmethod
    def check_args(v: Dict[str, str]) -> List[str]:
        vhost = v.get("VHOST", "")
        upath = v.get("UPATH") or f"/srv/{vhost}"
        return [
            v.get("UUSER", ""),
            upath,
            v.get("WPATH") or f"{upath}/web",
            v.get("MPATH") or f"{upath}/msg",
            v.get("C_FPM") or "/etc/php/8.4/fpm",
            v.get("C_WEB") or "/etc/nginx",
            vhost,
            v.get("SQCMD") or "sqlite3 /var/lib/sqlite/sysadm/sysadm.db",
        ]

    def evaluate(self, v: Dict[str, str], facts: Dict[str, str], report: ValidationReport):
        """Turn gathered facts into passed checks, warnings and issues."""
        uuser, u_uid, u_gid = v.get("UUSER"), v.get("U_UID"), v.get("U_GID")

        # vconf consistency
        wugid, ostyp = v.get("WUGID"), v.get("OSTYP") or "debian"
        if wugid:
            expected = OsType.from_id(ostyp).web_user_group()
            if wugid != expected:
                report.warn("vconf_mismatch", "WUGID does not match OSTYP",
                            f"WUGID '{expected}' for OSTYP '{ostyp}'", f"WUGID '{wugid}'")
            else:
                report.ok("vconf_consistency", f"WUGID '{wugid}' matches OSTYP '{ostyp}'")

        # user
        if not (uuser and u_uid and u_gid):
            report.issue("critical", "user", "Missing user configuration (UUSER, U_UID, or U_GID)",
                         "UUSER, U_UID, U_GID must be set",
                         f"UUSER={uuser}, U_UID={u_uid}, U_GID={u_gid}")
        else:
            actual_uid = facts.get("uid", NOTFOUND)
            if actual_uid == NOTFOUND:
                report.issue("error", "user", f"User {uuser} does not exist on remote system",
                             f"User {uuser} with UID {u_uid}", "User not found")
            elif actual_uid != u_uid:
                report.issue("error", "user", f"User {uuser} has incorrect UID",
                             f"UID {u_uid}", f"UID {actual_uid}")
            else:
                report.ok("user", f"User {uuser} exists with correct UID {u_uid}")

            owner = facts.get("upath_owner", NOTFOUND)
            if owner != NOTFOUND:
                if owner.startswith(f"{uuser}:"):
                    report.ok("permissions", f"Directory {v.get('UPATH')} has correct ownership")
                else:
                    report.warn("permissions", f"Directory {v.get('UPATH')} has incorrect ownership",
                                f"{uuser}:*", owner)

        # directories
        for name in ("UPATH", "WPATH", "MPATH"):
            path = v.get(name)
            if not path:
                report.warn("directory", f"Missing {name} configuration",
                            f"{name} must be set", "Not configured")
            elif facts.get(f"dir_{name}") == "yes":
                report.ok("directory", f"Required directory exists: {path}")
            else:
                report.issue("error", "directory", f"Required directory missing: {path}",
                             f"Directory {path} should exist", "Directory not found")

        wpath = v.get("WPATH")
        if wpath:
            for key, sub in WEB_SUBDIRS.items():
                full = f"{wpath}/{sub}"
                if facts.get(f"sub_{key}") == "yes":
                    report.ok("directory", f"Web subdirectory exists: {full}")
                else:
                    report.issue("error", "directory", f"Web subdirectory missing: {full}",
                                 f"Directory {full} should exist", "Directory not found")

        # configuration files
        if facts.get("fpm_pool") == "yes":
            report.ok("config", "PHP-FPM pool configuration exists")
        else:
            report.issue("error", "config", "PHP-FPM pool configuration missing",
                         f"{v.get('C_FPM')}/pool.d/{v.get('VHOST')}.conf", "File not found")
        if facts.get("nginx_site") == "yes":
            report.ok("config", "nginx site configuration exists")
        else:
            report.issue("error", "config", "nginx site configuration missing",
                         f"{v.get('C_WEB')}/sites-enabled/{v.get('VHOST')}", "File not found")

        # database
        count = facts.get("db_count", "ERROR")
        if count in ("", "ERROR") or not count.isdigit():
            report.warn("database", "Could not query remote vhosts table",
                        "numeric count", count or "no output")
        elif int(count) == 0:
            report.issue("error", "database", "VHost not registered in remote vhosts table",
                         "1 row", "0 rows")
        else:
            report.ok("database", "VHost registered in remote vhosts table")

        # services
        if facts.get("svc_nginx") == "active":
            report.ok("service", "nginx is active")
        else:
            report.issue("critical", "service", "nginx is not running",
                         "active", facts.get("svc_nginx") or "unknown")
        php_units = facts.get("svc_php", "0")
        if php_units.isdigit() and int(php_units) > 0:
            report.ok("service", "php-fpm is active")
        else:
            report.issue("error", "service", "php-fpm is not running", "active", "inactive")

        # security
        for key, path, expected in (("perm_wpath", wpath, "755"),
                                    ("perm_log", f"{wpath}/log" if wpath else None, "750")):
            actual = facts.get(key, NOTFOUND)
            if not path or actual == NOTFOUND:
                continue
            if actual == expected:
                report.ok("security", f"{path} has mode {expected}")
            else:
                report.warn("security", f"{path} has unexpected mode", expected, actual)

    # ── Repair ───────────────────────────────────────────────────

    def repair_vhost(self, vnode: str, domain: str, dry_run: bool = False) -> RepairResult:
        """
        Validate, fix what the report points at, then validate again.

        WUGID mismatches are fixed in the vconfs; every other repairable
        finding reruns the matching provisioning section on the vnode.
        With dry_run nothing is written locally or remotely and the
        result carries the script that would run.
        """
        result = RepairResult(success=True, vnode=vnode, domain=domain, dry_run=dry_run)
        before = self.validate_vhost(vnode, domain)
        result.status_before = before.status
        if before.error and not before.issues:
            result.success = False
            result.error = before.error
            return result

        result.planned = plan_repairs(before)
        actions = {p["action"] for p in result.planned}
        result.unrepairable = [p for p in result.planned if p["action"] == "manual"]
        result.sections = [s for s in REPAIR_SECTIONS if s in actions]

        vhost = self.store.require_vhost(vnode, domain)
        variables = self.store.get_vconfs(vhost["id"])
        if "vconf" in actions:
            ostyp = variables.get("OSTYP") or "debian"
            result.vconf_changes["WUGID"] = OsType.from_id(ostyp).web_user_group()
            variables.update(result.vconf_changes)

        if not result.sections and not result.vconf_changes:
            logger.info(f"Nothing to repair for {domain} on {vnode}")
            result.status_after = before.status
            return result

        if result.sections:
            try:
                result.script = self.builder.build_repair(variables, result.sections)
            except ValidationError as e:
                result.success = False
                result.error = str(e)
                return result

        if dry_run:
            logger.info(f"[DRY RUN] Repair of {domain}: {', '.join(result.sections) or 'vconfs only'}")
            return result

        if result.vconf_changes:
            self.store.set_vconfs(vhost["id"], result.vconf_changes)
        if result.sections:
            logger.info(f"Repairing {domain} on {vnode}: {', '.join(result.sections)}")
            executed = self.executor.execute_script(vnode, result.script, as_root=True)
            result.output = executed.stdout
            if not executed.success:
                result.success = False
                result.error = f"Repair script failed: {executed.stderr or executed.error}"

        after = self.validate_vhost(vnode, domain)
        result.status_after = after.status
        self.store.log_event(AuditRecord(
            action="repair", target=f"{vnode}/{domain}", success=result.success,
            detail=result.error or f"{result.status_before} -> {result.status_after}",
            actor=self.actor,
            context={"sections": result.sections, "vconfs": sorted(result.vconf_changes)},
        ))
        return result

    def _record(self, vhost_id: int, report: ValidationReport):
        self.store.update_vhost(
            vhost_id,
            validation_status=report.status,
            validation_report=report.to_dict(),
            last_validated_at=time.time(),
        )
        self.store.log_event(AuditRecord(
            action="validate", target=f"{report.vnode}/{report.domain}",
            success=report.status != "failed", detail=report.status,
            actor=self.actor, context=report.summary,
        ))
