#!/usr/bin/env python3
"""
nsctl — NetServa command line

Fleet inventory:   addvenue, addvsite, addvnode, shvnode, delvnode, fleet-tree
VHost lifecycle:   addvhost, chvhost, shvhost, delvhost
VHost variables:   addvconf, chvconf, shvconf, delvconf
Operations:        validate [--repair], chperms
Mail:              addvmail, shvmail, delvmail, addvalias, shvalias, delvalias
Credentials:       addpw, chpw, shpw, delpw, genkey
BinaryLane:        bl-servers, bl-sync

Every command exits 0 on success and 1 on failure.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fleet.audit import AuditRecord
from fleet.binarylane import BinaryLaneClient, format_server_for_display, sync_to_fleet
from fleet.errors import NetServaError
from fleet.tree import build_tree, render_tree, tree_stats
from vhost.permissions import PermissionsResult
from vhost.vconf import format_json, format_plain, group_rows, mask_value
from vhost.vpass import Vault
from . import __version__
from .runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

console = Console()

app = typer.Typer(
    name="nsctl",
    help="NetServa fleet and vhost management.",
    no_args_is_help=True,
    add_completion=False,
)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    dir_okay=False,
    help="Path to the NetServa YAML config (default: ~/.ns/netserva.yml).",
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log progress to stderr.")
DRY_RUN_OPTION = typer.Option(False, "--dry-run", help="Show what would happen without changing anything.")
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")
FORCE_OPTION = typer.Option(False, "--force", "-f", help="Do not ask for confirmation.")
OWNER_TYPE_OPTION = typer.Option(None, "--owner-type", help="vsite, vnode or vhost.")
OWNER_OPTION = typer.Option(None, "--owner", help="Owner name (vhost owners: <vnode>/<domain>).")


@dataclass
class CliState:
    config_file: Optional[Path] = None
    runtime: Optional[Runtime] = None


# ── Helpers ──────────────────────────────────────────────────────

def _fail(message: str, code: int = 1):
    console.print(f"[red]✗[/red] {escape(message)}")
    raise typer.Exit(code=code)


def _ok(message: str):
    console.print(f"[green]✓[/green] {escape(message)}")


def _warn(message: str):
    console.print(f"[yellow]⚠[/yellow] {escape(message)}")


@contextmanager
def _errors():
    """Turn NetServa errors into a message and exit status 1."""
    try:
        yield
    except NetServaError as e:
        _fail(str(e))


def _runtime(ctx: typer.Context) -> Runtime:
    state: CliState = ctx.obj
    if state.runtime is None:
        try:
            state.runtime = build_runtime(state.config_file)
        except (FileNotFoundError, NetServaError) as e:
            _fail(str(e))
        except ValueError as e:
            _fail(f"Invalid configuration: {e}")
        ctx.call_on_close(state.runtime.close)
    return state.runtime


def _audit(rt: Runtime, action: str, target: str, detail: str = "", context: Dict[str, Any] = None):
    rt.store.log_event(AuditRecord(action=action, target=target, detail=detail, context=context))


def _echo_json(data: Any):
    typer.echo(json.dumps(data, indent=2, default=str))


def _kv_table(title: str, rows: Dict[str, Any]) -> Table:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in rows.items():
        table.add_row(key, "" if value is None else str(value))
    return table


@app.callback()
def _root(
    ctx: typer.Context,
    config_file: Optional[Path] = CONFIG_FILE_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """NetServa fleet and vhost management."""
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, format=LOG_FORMAT)
    ctx.obj = CliState(config_file=config_file)


@app.command()
def version():
    """Show the nsctl version."""
    typer.echo(f"nsctl {__version__}")


# ── Fleet Inventory ──────────────────────────────────────────────

@app.command()
def addvenue(
    ctx: typer.Context,
    name: str,
    provider: str = typer.Option("", "--provider", help="binarylane, hetzner, homelab ..."),
    location: str = typer.Option("", "--location"),
    description: str = typer.Option("", "--description"),
):
    """Add a venue (physical or provider location)."""
    rt = _runtime(ctx)
    with _errors():
        rt.store.add_venue(name, provider=provider, location=location, description=description)
    _audit(rt, "addvenue", name, provider)
    _ok(f"Venue added: {name}")


@app.command()
def addvsite(
    ctx: typer.Context,
    name: str,
    venue: Optional[str] = typer.Option(None, "--venue"),
    technology: str = typer.Option("", "--technology", help="proxmox, incus, vps, hardware ..."),
    description: str = typer.Option("", "--description"),
):
    """Add a vsite (hosting platform inside a venue)."""
    rt = _runtime(ctx)
    with _errors():
        rt.store.add_vsite(name, venue=venue, technology=technology, description=description)
    _audit(rt, "addvsite", name, technology)
    _ok(f"VSite added: {name}")


@app.command()
def addvnode(
    ctx: typer.Context,
    name: str,
    vsite: Optional[str] = typer.Option(None, "--vsite"),
    ip: Optional[str] = typer.Option(None, "--ip", help="IPv4 address."),
    fqdn: Optional[str] = typer.Option(None, "--fqdn"),
    ssh_host: Optional[str] = typer.Option(None, "--ssh-host", help="Address or ssh alias to connect to."),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_port: Optional[int] = typer.Option(None, "--ssh-port"),
    role: Optional[str] = typer.Option(None, "--role"),
    database_type: Optional[str] = typer.Option(None, "--database-type", help="sqlite or mysql."),
):
    """Register a vnode (SSH-reachable server)."""
    rt = _runtime(ctx)
    fields = {
        "ip_address": ip, "fqdn": fqdn, "ssh_host": ssh_host, "ssh_user": ssh_user,
        "ssh_port": ssh_port, "role": role, "database_type": database_type,
    }
    with _errors():
        rt.store.add_vnode(name, vsite=vsite, **{k: v for k, v in fields.items() if v is not None})
    _audit(rt, "addvnode", name, vsite or "")
    _ok(f"VNode added: {name}")


@app.command()
def shvnode(ctx: typer.Context, name: Optional[str] = typer.Argument(None), json_output: bool = JSON_OPTION):
    """Show one vnode, or list them all."""
    rt = _runtime(ctx)
    vsites = {s["id"]: s["name"] for s in rt.store.list_vsites()}

    if name:
        with _errors():
            vnode = rt.store.require_vnode(name)
        vnode["vsite"] = vsites.get(vnode.pop("vsite_id"), "")
        vnode["vhosts"] = len(rt.store.list_vhosts(name))
        if json_output:
            _echo_json(vnode)
        else:
            console.print(_kv_table(f"VNode {name}", vnode))
        return

    vnodes = rt.store.list_vnodes()
    if json_output:
        _echo_json(vnodes)
        return
    if not vnodes:
        console.print("No vnodes registered. Add one with: nsctl addvnode <name>")
        return
    table = Table(title="VNodes")
    for column in ("Name", "VSite", "Address", "Role", "Status", "VHosts"):
        table.add_column(column)
    for vnode in vnodes:
        table.add_row(
            vnode["name"],
            vsites.get(vnode["vsite_id"], ""),
            vnode.get("ssh_host") or vnode.get("ip_address") or vnode.get("fqdn") or "",
            vnode.get("role") or "",
            vnode.get("status") or "",
            str(len(rt.store.list_vhosts(vnode["name"]))),
        )
    console.print(table)


@app.command()
def delvnode(ctx: typer.Context, name: str, force: bool = FORCE_OPTION):
    """Remove a vnode that has no vhosts left."""
    rt = _runtime(ctx)
    if not force:
        typer.confirm(f"Delete vnode {name}?", abort=True)
    with _errors():
        rt.store.delete_vnode(name)
    _audit(rt, "delvnode", name)
    _ok(f"VNode deleted: {name}")


@app.command("fleet-tree")
def fleet_tree(
    ctx: typer.Context,
    venue: Optional[str] = typer.Option(None, "--venue", help="Filter by venue name."),
    vsite: Optional[str] = typer.Option(None, "--vsite", help="Filter by vsite name."),
    vnode: Optional[str] = typer.Option(None, "--vnode", help="Filter by vnode name."),
    simple: bool = typer.Option(False, "--simple", help="Plain names without icons."),
    stats: bool = typer.Option(False, "--stats", help="Show a statistics summary."),
):
    """Display the fleet hierarchy as a tree."""
    rt = _runtime(ctx)
    tree = build_tree(rt.store, venue=venue, vsite=vsite, vnode=vnode)
    if not tree:
        console.print("No infrastructure found in the fleet.")
        return
    typer.echo(render_tree(tree, simple=simple))
    if stats:
        console.print(_kv_table("Fleet statistics", tree_stats(tree)))


# ── VHost Lifecycle ──────────────────────────────────────────────

@app.command()
def addvhost(ctx: typer.Context, vnode: str, domain: str, dry_run: bool = DRY_RUN_OPTION):
    """Provision a vhost on a vnode."""
    rt = _runtime(ctx)
    result = rt.vhosts.create_vhost(vnode, domain, dry_run=dry_run)
    if not result.success:
        if result.output:
            typer.echo(result.output)
        _fail(result.error)
    if dry_run:
        typer.echo(result.script)
        return
    _ok(f"VHost {result.domain} created on {vnode}")
    console.print(f"  user: {result.username} (uid {result.uid})")
    for key, path in result.paths.items():
        console.print(f"  {key}: {path}")


@app.command()
def chvhost(
    ctx: typer.Context,
    vnode: str,
    domain: str,
    php: Optional[str] = typer.Option(None, "--php", help="PHP version, e.g. 8.4."),
    webroot: Optional[str] = typer.Option(None, "--webroot", help="New web root (WPATH)."),
    dry_run: bool = DRY_RUN_OPTION,
):
    """Change the PHP version or web root of a vhost."""
    rt = _runtime(ctx)
    result = rt.vhosts.update_vhost(vnode, domain, php_version=php, webroot=webroot, dry_run=dry_run)
    if not result.success:
        _fail(result.error)
    for warning in result.warnings:
        _warn(warning)
    if result.changes:
        table = Table(title=f"{'Planned changes' if dry_run else 'Changes'} for {domain}")
        for column in ("Variable", "Old", "New"):
            table.add_column(column)
        for name, change in sorted(result.changes.items()):
            table.add_row(name, str(change["old"] or ""), str(change["new"]))
        console.print(table)
    if not dry_run and result.changes:
        _ok(f"VHost {domain} updated")


@app.command()
def shvhost(
    ctx: typer.Context,
    vnode: Optional[str] = typer.Argument(None),
    domain: Optional[str] = typer.Argument(None),
    json_output: bool = JSON_OPTION,
):
    """Show one vhost, or list the vhosts of a vnode (or the whole fleet)."""
    rt = _runtime(ctx)
    with _errors():
        if vnode and domain:
            info = rt.vhosts.show_vhost(vnode, domain)
            if json_output:
                _echo_json(info)
            else:
                info.pop("validation_report", None)
                console.print(_kv_table(f"VHost {domain}", info))
            return
        vhosts = rt.vhosts.list_vhosts(vnode)

    if json_output:
        _echo_json(vhosts)
        return
    if not vhosts:
        console.print("No vhosts found.")
        return
    table = Table(title=f"VHosts on {vnode}" if vnode else "VHosts")
    for column in ("VNode", "Domain", "Status", "Validation"):
        table.add_column(column)
    for vh in vhosts:
        table.add_row(vh["vnode"], vh["domain"], vh["status"] or "", vh.get("validation_status") or "-")
    console.print(table)


@app.command()
def delvhost(
    ctx: typer.Context,
    vnode: str,
    domain: str,
    dry_run: bool = DRY_RUN_OPTION,
    force: bool = FORCE_OPTION,
):
    """Remove a vhost from its vnode and soft delete its record."""
    rt = _runtime(ctx)
    if not (force or dry_run):
        typer.confirm(f"Delete {domain} from {vnode}? This removes its files and user", abort=True)
    result = rt.vhosts.delete_vhost(vnode, domain, dry_run=dry_run)
    if not result.success:
        _fail(result.error)
    if dry_run:
        typer.echo(result.script or "# no vconfs, nothing to clean up remotely")
        return
    for warning in result.warnings:
        _warn(warning)
    _ok(f"VHost {domain} deleted from {vnode}")


# ── VHost Variables ──────────────────────────────────────────────

@app.command()
def addvconf(
    ctx: typer.Context,
    vnode: str,
    domain: str,
    mode: str = typer.Option("create", "--mode", help="create, merge or regenerate."),
    minimal: bool = typer.Option(False, "--minimal", help="Store only the essential variables."),
    dry_run: bool = DRY_RUN_OPTION,
):
    """Generate and store the vconfs of an existing vhost."""
    rt = _runtime(ctx)
    with _errors():
        variables = rt.vconfs.initialize(vnode, domain, mode=mode, minimal=minimal, dry_run=dry_run)
    if dry_run:
        typer.echo(format_plain(variables))
        return
    _ok(f"Stored {len(variables)} variables for {domain} ({mode})")


@app.command()
def chvconf(ctx: typer.Context, vnode: str, domain: str, name: str, value: str):
    """Set one vconf variable."""
    rt = _runtime(ctx)
    with _errors():
        previous = rt.vconfs.set(vnode, domain, name, value)
    verb = "created" if previous is None else "updated"
    _ok(f"{name.upper()} {verb} for {domain}")


@app.command()
def shvconf(
    ctx: typer.Context,
    vnode: str,
    domain: str,
    name: Optional[str] = typer.Argument(None),
    output: str = typer.Option("plain", "--format", help="plain (sourceable), json or table."),
    category: Optional[str] = typer.Option(None, "--category", help="Only this category, e.g. Paths."),
):
    """Show the vconfs of a vhost."""
    rt = _runtime(ctx)
    with _errors():
        if name:
            typer.echo(rt.vconfs.get(vnode, domain, name))
            return
        rows = rt.vconfs.rows(vnode, domain, category)
    variables = {r["name"]: r["value"] for r in rows}

    if not variables:
        if category:
            _fail(f"No {category} vconfs found for {domain}")
        _fail(f"No vconfs found for {domain}. Run: nsctl addvconf {vnode} {domain}")
    if output == "json":
        typer.echo(format_json(variables))
    elif output == "table":
        for group, values in group_rows(rows).items():
            if not values:
                continue
            table = Table(title=group)
            table.add_column("Variable", style="cyan")
            table.add_column("Value")
            for key, value in values.items():
                table.add_row(key, mask_value(key, value))
            console.print(table)
    elif output == "plain":
        typer.echo(format_plain(variables))
    else:
        _fail(f"Unknown format '{output}' (use plain, json or table)")


@app.command()
def delvconf(
    ctx: typer.Context,
    vnode: str,
    domain: str,
    name: Optional[str] = typer.Argument(None),
    delete_all: bool = typer.Option(False, "--all", help="Delete every variable of the vhost."),
):
    """Delete one vconf variable, or all of them."""
    rt = _runtime(ctx)
    if not name and not delete_all:
        _fail("Give a variable name or --all")
    with _errors():
        if delete_all:
            count = rt.vconfs.delete_all(vnode, domain)
            _ok(f"Deleted {count} variables for {domain}")
            return
        if not rt.vconfs.delete(vnode, domain, name):
            _fail(f"Variable {name.upper()} not found for {domain}")
    _ok(f"{name.upper()} deleted for {domain}")


# ── Operations ───────────────────────────────────────────────────

def _print_report(report):
    colour = {"passed": "green", "passed_with_warnings": "yellow"}.get(report.status, "red")
    console.print(f"[bold]{escape(report.domain)}[/bold]: [{colour}]{report.status}[/{colour}]")
    if report.error:
        console.print(f"  {escape(report.error)}")
    for issue in report.issues:
        console.print(f"  [red]{issue['severity']}[/red] {issue['category']}: {escape(issue['message'])}")
        if issue.get("expected") or issue.get("actual"):
            console.print(f"      expected {escape(issue['expected'])}, got {escape(issue['actual'])}")
    for warning in report.warnings:
        console.print(f"  [yellow]warning[/yellow] {warning['category']}: {escape(warning['message'])}")
    summary = report.summary
    console.print(f"  {summary['passed']}/{summary['total_checks']} checks passed")


def _print_repair(result):
    label = "repair plan" if result.dry_run else "repair"
    console.print(f"[bold]{escape(result.domain)}[/bold] {label}: was {result.status_before or 'unknown'}")
    if result.error:
        console.print(f"  [red]✗[/red] {escape(result.error)}")
    for item in result.planned:
        style = "yellow" if item["action"] == "manual" else "cyan"
        console.print(f"  [{style}]{item['action']}[/{style}] {item['category']}: {escape(item['message'])}")
    for name, value in result.vconf_changes.items():
        console.print(f"  vconf {name} -> {escape(value)}")
    if result.dry_run:
        if result.script:
            typer.echo(result.script)
    elif result.status_after:
        console.print(f"  now {result.status_after}")


@app.command()
def validate(
    ctx: typer.Context,
    vnode: str,
    domain: Optional[str] = typer.Argument(None),
    json_output: bool = JSON_OPTION,
    repair: bool = typer.Option(False, "--repair", help="Fix what validation finds, then validate again."),
    dry_run: bool = DRY_RUN_OPTION,
):
    """Validate one vhost, or every vhost of a vnode."""
    rt = _runtime(ctx)
    with _errors():
        if domain:
            domains = [domain]
        else:
            domains = [vh["domain"] for vh in rt.vhosts.list_vhosts(vnode)]

    if repair:
        results = [rt.validator.repair_vhost(vnode, d, dry_run=dry_run) for d in domains]
        if json_output:
            _echo_json([r.to_dict() for r in results])
        else:
            for result in results:
                _print_repair(result)
        if any(not r.success for r in results):
            raise typer.Exit(code=1)
        return

    reports = [rt.validator.validate_vhost(vnode, d) for d in domains]
    if json_output:
        _echo_json([r.to_dict() for r in reports])
    else:
        if not reports:
            console.print(f"No vhosts on {vnode}")
        for report in reports:
            _print_report(report)
    if any(not r.success or r.status == "failed" for r in reports):
        raise typer.Exit(code=1)


@app.command()
def chperms(
    ctx: typer.Context,
    vnode: str,
    domain: Optional[str] = typer.Argument(None),
    web_only: bool = typer.Option(False, "--web-only"),
    mail_only: bool = typer.Option(False, "--mail-only"),
    dry_run: bool = DRY_RUN_OPTION,
):
    """Reset ownership and modes of one vhost, or every vhost of a vnode."""
    rt = _runtime(ctx)
    options = {"web_only": web_only, "mail_only": mail_only, "dry_run": dry_run}
    if domain:
        results = [rt.permissions.fix_permissions(vnode, domain, **options)]
    else:
        with _errors():
            summary = rt.permissions.fix_all(vnode, **options)
        results = [PermissionsResult(**r) for r in summary["results"]]

    failed = False
    for result in results:
        if dry_run and result.success:
            console.print(f"[bold]{escape(result.domain)}[/bold]")
            for command in result.commands:
                typer.echo(f"  {command}")
        elif result.success:
            _ok(f"Permissions fixed for {result.domain}")
        else:
            failed = True
            console.print(f"[red]✗[/red] {escape(result.domain)}: {escape(result.error)}")
    if failed:
        raise typer.Exit(code=1)


# ── Mail ─────────────────────────────────────────────────────────

@app.command()
def addvmail(
    ctx: typer.Context,
    vnode: str,
    email: str,
    password: Optional[str] = typer.Option(None, "--password", help="Generated when omitted."),
):
    """Create a virtual mailbox on a vhost."""
    rt = _runtime(ctx)
    result = rt.vmail.create_mailbox(vnode, email, password=password)
    if not result.success:
        _fail(result.error)
    for warning in result.warnings:
        _warn(warning)
    _ok(f"Mailbox created: {result.email}")
    console.print(f"  maildir:  {result.maildir}")
    console.print(f"  password: {escape(result.password)}")


@app.command()
def shvmail(ctx: typer.Context, vnode: str, domain: str, json_output: bool = JSON_OPTION):
    """List the mailboxes of a vhost."""
    rt = _runtime(ctx)
    with _errors():
        mailboxes = rt.vmail.list_mailboxes(vnode, domain)
    if json_output:
        _echo_json(mailboxes)
        return
    if not mailboxes:
        console.print(f"No mailboxes for {domain}")
        return
    table = Table(title=f"Mailboxes for {domain}")
    for column in ("Email", "Active", "Password stored"):
        table.add_column(column)
    for mb in mailboxes:
        table.add_row(mb["email"], "yes" if mb["active"] else "no",
                      "yes" if mb["credential_stored"] else "no")
    console.print(table)


@app.command()
def delvmail(ctx: typer.Context, vnode: str, email: str, force: bool = FORCE_OPTION):
    """Delete a virtual mailbox and its mail."""
    rt = _runtime(ctx)
    if not force:
        typer.confirm(f"Delete mailbox {email} and all of its mail?", abort=True)
    result = rt.vmail.delete_mailbox(vnode, email)
    if not result.success:
        _fail(result.error)
    _ok(f"Mailbox deleted: {result.email}")


@app.command()
def addvalias(ctx: typer.Context, vnode: str, source: str, targets: str):
    """Forward SOURCE (user@domain or @domain) to comma separated TARGETS."""
    rt = _runtime(ctx)
    result = rt.vmail.create_alias(vnode, source, targets)
    if not result.success:
        _fail(result.error)
    _ok(f"Alias created: {result.source} -> {', '.join(result.targets)}")


@app.command()
def shvalias(ctx: typer.Context, vnode: str, domain: str, json_output: bool = JSON_OPTION):
    """List the mail aliases of a vhost."""
    rt = _runtime(ctx)
    with _errors():
        aliases = rt.vmail.list_aliases(vnode, domain)
    if json_output:
        _echo_json(aliases)
        return
    if not aliases:
        console.print(f"No aliases for {domain}")
        return
    table = Table(title=f"Aliases for {domain}")
    for column in ("Source", "Targets", "Active"):
        table.add_column(column)
    for alias in aliases:
        table.add_row(alias["source"], ", ".join(alias["targets"]),
                      "yes" if alias["active"] else "no")
    console.print(table)


@app.command()
def delvalias(ctx: typer.Context, vnode: str, source: str, force: bool = FORCE_OPTION):
    """Delete a mail alias."""
    rt = _runtime(ctx)
    if not force:
        typer.confirm(f"Delete alias {source}?", abort=True)
    result = rt.vmail.delete_alias(vnode, source)
    if not result.success:
        _fail(result.error)
    _ok(f"Alias deleted: {result.source}")


# ── Credentials ──────────────────────────────────────────────────

@app.command()
def addpw(
    ctx: typer.Context,
    name: str,
    service: str = typer.Option(..., "--service", help="mysql, ssh, mail, wordpress, api ..."),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    owner_type: Optional[str] = OWNER_TYPE_OPTION,
    owner: Optional[str] = OWNER_OPTION,
    username: str = typer.Option("", "--username"),
    url: str = typer.Option("", "--url"),
    port: Optional[int] = typer.Option(None, "--port"),
    notes: str = typer.Option("", "--notes"),
):
    """Store an encrypted credential."""
    rt = _runtime(ctx)
    with _errors():
        rt.vault.add(name, service, password, owner_type=owner_type, owner_name=owner,
                     username=username, url=url, port=port, notes=notes)
    _ok(f"Credential stored: {name}")


@app.command()
def chpw(
    ctx: typer.Context,
    name: str,
    password: Optional[str] = typer.Option(None, "--password"),
    owner_type: Optional[str] = OWNER_TYPE_OPTION,
    owner: Optional[str] = OWNER_OPTION,
    service: Optional[str] = typer.Option(None, "--service"),
    username: Optional[str] = typer.Option(None, "--username"),
    url: Optional[str] = typer.Option(None, "--url"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Change a stored credential."""
    rt = _runtime(ctx)
    with _errors():
        rt.vault.change(name, owner_type, owner, password=password, service=service,
                        username=username, url=url, notes=notes)
    _ok(f"Credential updated: {name}")


@app.command()
def shpw(
    ctx: typer.Context,
    name: Optional[str] = typer.Argument(None),
    owner_type: Optional[str] = OWNER_TYPE_OPTION,
    owner: Optional[str] = OWNER_OPTION,
    service: Optional[str] = typer.Option(None, "--service"),
):
    """Show one credential (decrypted), or list them masked."""
    rt = _runtime(ctx)
    with _errors():
        if name:
            console.print(_kv_table(f"Credential {name}", rt.vault.get(name, owner_type, owner)))
            return
        rows = rt.vault.list(owner_type, owner, service=service)
    if not rows:
        console.print("No credentials stored.")
        return
    table = Table(title="Credentials")
    for column in ("Name", "Service", "Owner", "Username", "Password"):
        table.add_column(column)
    for row in rows:
        owner_label = f"{row['owner_type']}:{row['owner_id']}" if row.get("owner_type") else "-"
        table.add_row(row["name"], row["service"], owner_label, row.get("username") or "", row["password"])
    console.print(table)


@app.command()
def delpw(
    ctx: typer.Context,
    name: str,
    owner_type: Optional[str] = OWNER_TYPE_OPTION,
    owner: Optional[str] = OWNER_OPTION,
):
    """Delete a stored credential."""
    rt = _runtime(ctx)
    with _errors():
        rt.vault.delete(name, owner_type, owner)
    _ok(f"Credential deleted: {name}")


@app.command()
def genkey():
    """Generate a vault key for NETSERVA_VAULT_KEY."""
    typer.echo(Vault.generate_key())


# ── BinaryLane ───────────────────────────────────────────────────

def _binarylane(rt: Runtime) -> BinaryLaneClient:
    client = BinaryLaneClient.from_config(rt.config)
    if not client.api_token:
        _fail("BinaryLane API token not configured. Set BINARYLANE_API_TOKEN")
    return client


@app.command("bl-servers")
def bl_servers(ctx: typer.Context, json_output: bool = JSON_OPTION):
    """List BinaryLane servers."""
    rt = _runtime(ctx)
    servers = _binarylane(rt).list_servers()
    if json_output:
        _echo_json([s.to_dict() for s in servers])
        return
    if not servers:
        console.print("No BinaryLane servers found.")
        return
    table = Table(title="BinaryLane servers")
    for column in ("ID", "Name", "Status", "Region", "Size", "IPv4", "Specs"):
        table.add_column(column)
    for server in servers:
        row = format_server_for_display(server)
        table.add_row(row["id"], row["name"], row["status"], row["region"],
                      row["size"], row["ipv4"], row["specs"])
    console.print(table)


@app.command("bl-sync")
def bl_sync(ctx: typer.Context, vsite: str):
    """Import BinaryLane servers as vnodes of a vsite."""
    rt = _runtime(ctx)
    client = _binarylane(rt)
    with _errors():
        summary = sync_to_fleet(client, rt.store, vsite)
    _ok(f"Synced {summary['servers']} servers into {vsite}: "
        f"{len(summary['created'])} created, {len(summary['updated'])} updated")


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
