import pytest

from fleet.tree import UNASSIGNED, build_tree, render_tree, tree_stats


@pytest.fixture
def fleet(store):
    store.add_venue("sydney", provider="binarylane")
    store.add_venue("homelab", provider="local")
    store.add_vsite("bl-syd", venue="sydney", technology="vps")
    store.add_vsite("pve1", venue="homelab", technology="proxmox")
    store.add_vnode("mail1", vsite="bl-syd", ip_address="203.0.113.5", role="mailserver")
    store.add_vnode("web1", vsite="bl-syd", role="webserver")
    store.add_vnode("ct100", vsite="pve1")
    store.add_vnode("laptop")

    mail1 = store.get_vnode("mail1")["id"]
    store.add_vhost(mail1, "example.com", status="active", is_active=True)
    store.add_vhost(mail1, "example.org")
    return store


def test_build_tree_nests_every_level(fleet):
    tree = build_tree(fleet)

    names = [v["name"] for v in tree]
    assert names == ["homelab", "sydney", UNASSIGNED]

    sydney = tree[1]
    assert sydney["provider"] == "binarylane"
    assert [s["name"] for s in sydney["vsites"]] == ["bl-syd"]
    nodes = sydney["vsites"][0]["vnodes"]
    assert [n["name"] for n in nodes] == ["mail1", "web1"]
    assert [v["domain"] for v in nodes[0]["vhosts"]] == ["example.com", "example.org"]


def test_unassigned_vnode_collected(fleet):
    tree = build_tree(fleet)
    unassigned = tree[-1]
    assert unassigned["vsites"][0]["name"] == UNASSIGNED
    assert unassigned["vsites"][0]["vnodes"][0]["name"] == "laptop"


def test_deleted_vhosts_hidden(fleet):
    vhost = fleet.get_vhost("mail1", "example.org")
    fleet.soft_delete_vhost(vhost["id"])

    nodes = build_tree(fleet, vnode="mail1")[0]["vsites"][0]["vnodes"]
    assert [v["domain"] for v in nodes[0]["vhosts"]] == ["example.com"]


def test_vnode_filter_prunes_empty_branches(fleet):
    tree = build_tree(fleet, vnode="mail")
    assert [v["name"] for v in tree] == ["sydney"]
    assert [n["name"] for n in tree[0]["vsites"][0]["vnodes"]] == ["mail1"]


def test_venue_filter_is_substring(fleet):
    tree = build_tree(fleet, venue="home")
    assert [v["name"] for v in tree] == ["homelab"]


def test_filter_with_no_match_is_empty(fleet):
    assert build_tree(fleet, vsite="nowhere") == []


def test_tree_stats(fleet):
    stats = tree_stats(build_tree(fleet))
    assert stats == {"venues": 3, "vsites": 3, "vnodes": 4, "vhosts": 2, "active_vhosts": 1}


def test_render_tree_icons(fleet):
    text = render_tree(build_tree(fleet, venue="sydney"))
    lines = text.splitlines()

    assert lines[0] == "🌍 sydney (binarylane) [1 vsites]"
    assert lines[1] == "└── ☁️ bl-syd (vps) [2 vnodes]"
    assert lines[2] == "    ├── 📧 mail1 (203.0.113.5) [2 vhosts]"
    assert lines[3] == "    │   ├── 🌐 example.com ✅"
    assert lines[4] == "    │   └── 🌐 example.org ⏸️"
    assert lines[5] == "    └── 🌍 web1 [0 vhosts]"


def test_render_tree_simple(fleet):
    text = render_tree(build_tree(fleet, venue="sydney"), simple=True)
    lines = text.splitlines()

    assert lines[:5] == [".", "├── 1 venues", "├── 1 vsites", "├── 2 vnodes", "└── 2 vhosts"]
    assert "sydney" in lines
    assert "    │   ├── example.com" in lines


def test_render_empty_tree():
    assert render_tree([]) == ""
