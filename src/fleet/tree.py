"""
Fleet hierarchy view: venue > vsite > vnode > vhost.

Filters match by substring on the name. VSites without a venue and
vnodes without a vsite are collected under "(unassigned)".
"""

import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

UNASSIGNED = "(unassigned)"

VSITE_ICONS = {
    "proxmox": "📦", "incus": "🐳", "lxc": "🐳", "kubernetes": "☸️",
    "docker": "🐋", "bare-metal": "🖥️", "hardware": "🖥️", "vps": "☁️",
}
VNODE_ICONS = {
    "workstation": "💻", "hypervisor": "🖥️", "nameserver": "🌐",
    "mailserver": "📧", "webserver": "🌍", "database": "🗄️", "compute": "⚙️",
}
STATUS_ICONS = {"active": "✅", "inactive": "⏸️", "error": "❌"}


def _matches(value: str, pattern: Optional[str]) -> bool:
    return not pattern or pattern.lower() in (value or "").lower()


def build_tree(store, venue: str = None, vsite: str = None,
               vnode: str = None) -> List[Dict[str, Any]]:
    """
    Load the fleet as nested dicts.

    Branches left empty by a vsite or vnode filter are pruned; an
    unfiltered tree keeps empty venues and vsites.
    """
    vhosts_by_vnode: Dict[int, List[Dict[str, Any]]] = {}
    for vh in store.list_vhosts():
        vhosts_by_vnode.setdefault(vh["vnode_id"], []).append(
            {"domain": vh["domain"], "status": vh["status"]}
        )

    nodes_by_vsite: Dict[Optional[int], List[Dict[str, Any]]] = {}
    for node in store.list_vnodes():
        if not _matches(node["name"], vnode):
            continue
        nodes_by_vsite.setdefault(node["vsite_id"], []).append({
            "name": node["name"],
            "role": node.get("role") or "",
            "ip_address": node.get("ip_address") or "",
            "vhosts": sorted(vhosts_by_vnode.get(node["id"], []), key=lambda v: v["domain"]),
        })

    sites_by_venue: Dict[Optional[int], List[Dict[str, Any]]] = {}
    for site in store.list_vsites():
        if not _matches(site["name"], vsite):
            continue
        nodes = nodes_by_vsite.get(site["id"], [])
        if vnode and not nodes:
            continue
        sites_by_venue.setdefault(site["venue_id"], []).append({
            "name": site["name"],
            "technology": site.get("technology") or "",
            "vnodes": nodes,
        })

    if not vsite and nodes_by_vsite.get(None):
        sites_by_venue.setdefault(None, []).append(
            {"name": UNASSIGNED, "technology": "", "vnodes": nodes_by_vsite[None]}
        )

    tree = []
    for row in store.list_venues():
        if not _matches(row["name"], venue):
            continue
        sites = sites_by_venue.get(row["id"], [])
        if (vsite or vnode) and not sites:
            continue
        tree.append({"name": row["name"], "provider": row.get("provider") or "", "vsites": sites})

    if not venue and sites_by_venue.get(None):
        tree.append({"name": UNASSIGNED, "provider": "", "vsites": sites_by_venue[None]})
    return tree


def tree_stats(tree: List[Dict[str, Any]]) -> Dict[str, int]:
    stats = {"venues": len(tree), "vsites": 0, "vnodes": 0, "vhosts": 0, "active_vhosts": 0}
    for venue in tree:
        stats["vsites"] += len(venue["vsites"])
        for site in venue["vsites"]:
            stats["vnodes"] += len(site["vnodes"])
            for node in site["vnodes"]:
                stats["vhosts"] += len(node["vhosts"])
                stats["active_vhosts"] += sum(1 for v in node["vhosts"] if v["status"] == "active")
    return stats


def _branch(items: List[Any], indent: str):
    """Yield (item, connector, child_indent) for each child of a node."""
    for index, item in enumerate(items):
        last = index == len(items) - 1
        yield item, indent + ("└── " if last else "├── "), indent + ("    " if last else "│   ")


def render_tree(tree: List[Dict[str, Any]], simple: bool = False) -> str:
    """Render a built tree as box-drawing text, one node per line."""
    lines: List[str] = []

    if simple:
        stats = tree_stats(tree)
        lines.append(".")
        lines.append(f"├── {stats['venues']} venues")
        lines.append(f"├── {stats['vsites']} vsites")
        lines.append(f"├── {stats['vnodes']} vnodes")
        lines.append(f"└── {stats['vhosts']} vhosts")
        lines.append("")

    for venue in tree:
        if simple:
            lines.append(venue["name"])
        else:
            lines.append(
                f"🌍 {venue['name']} ({venue['provider'] or 'unknown'}) "
                f"[{len(venue['vsites'])} vsites]"
            )
        for site, head, site_indent in _branch(venue["vsites"], ""):
            if simple:
                lines.append(f"{head}{site['name']}")
            else:
                icon = VSITE_ICONS.get(site["technology"], "📁")
                tech = f" ({site['technology']})" if site["technology"] else ""
                lines.append(f"{head}{icon} {site['name']}{tech} [{len(site['vnodes'])} vnodes]")
            for node, head, node_indent in _branch(site["vnodes"], site_indent):
                if simple:
                    lines.append(f"{head}{node['name']}")
                else:
                    icon = VNODE_ICONS.get(node["role"], "🔧")
                    ip = f" ({node['ip_address']})" if node["ip_address"] else ""
                    lines.append(f"{head}{icon} {node['name']}{ip} [{len(node['vhosts'])} vhosts]")
                for vh, head, _ in _branch(node["vhosts"], node_indent):
                    if simple:
                        lines.append(f"{head}{vh['domain']}")
                    else:
                        lines.append(f"{head}🌐 {vh['domain']} {STATUS_ICONS.get(vh['status'], '❓')}")
        lines.append("")

    return "\n".join(lines).rstrip("\n")
