#!/usr/bin/env python3
"""
BinaryLane API Client — VPS inventory for the fleet
Wraps the BinaryLane public API (api.binarylane.com.au/v2).

Implements:
- list_servers() -> list[ServerInfo]
- get_server(server_id) -> ServerInfo
- create_server(name, size, image, region, ...) -> ActionResult
- delete_server(server_id) -> ActionResult
- list_sizes() / list_images() / list_regions() -> list[dict]
- test_connection() -> dict
- sync_to_fleet(client, store, vsite) -> dict

Rate limiting: HTTP 429 is retried with exponential backoff
(1s, 2s, 4s ...) up to max_attempts.
"""

import logging
import os
import re
import time
import requests
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field, asdict

from .audit import AuditRecord
from .errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.binarylane.com.au/v2"

SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]{0,62}[a-zA-Z0-9]$")


@dataclass
class ServerInfo:
    """A BinaryLane server, normalized."""
    id: int
    name: str
    status: str
    size_slug: Optional[str] = None
    region_slug: Optional[str] = None
    image_slug: Optional[str] = None
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None
    vcpus: Optional[int] = None
    memory_mb: Optional[int] = None
    disk_gb: Optional[int] = None
    created_at: Optional[str] = None
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass
class ActionResult:
    """Result of a BinaryLane API action."""
    success: bool
    action: str
    server_id: Optional[int] = None
    message: str = ""
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = field(default=None, repr=False)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("data", None)
        return d


class BinaryLaneClient:
    """
    BinaryLane API client.

    Auth: Bearer token from the constructor, else BINARYLANE_API_TOKEN.
    Read methods return empty results on failure; actions return an
    ActionResult with success=False.
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_MAX_ATTEMPTS = 3

    def __init__(self, api_token: str = None, timeout: int = None, max_attempts: int = None):
        self.api_token = api_token or os.environ.get("BINARYLANE_API_TOKEN")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.max_attempts = max_attempts or self.DEFAULT_MAX_ATTEMPTS

        if not self.api_token:
            logger.warning("No BinaryLane API token configured. Set BINARYLANE_API_TOKEN env var.")

        self._request_count = 0
        self._error_count = 0

    @classmethod
    def from_config(cls, config) -> "BinaryLaneClient":
        bl = config.binarylane
        return cls(api_token=bl.api_token, timeout=bl.timeout, max_attempts=bl.max_attempts)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Optional[requests.Response]:
        """Make an authenticated request, backing off on 429. Returns None on failure."""
        url = f"{BASE_URL}{path}"

        for attempt in range(1, self.max_attempts + 1):
            self._request_count += 1
            try:
                resp = requests.request(
                    method, url,
                    headers=self._headers(),
                    timeout=self.timeout,
                    **kwargs,
                )
            except requests.Timeout:
                logger.error(f"BinaryLane API timeout: {method} {path}")
                self._error_count += 1
                return None
            except requests.ConnectionError:
                logger.error(f"BinaryLane API connection error: {method} {path}")
                self._error_count += 1
                return None
            except requests.RequestException as e:
                logger.error(f"BinaryLane API unexpected error: {method} {path}: {e}")
                self._error_count += 1
                return None

            if resp.status_code == 429 and attempt < self.max_attempts:
                wait = 2 ** (attempt - 1)
                logger.info(
                    f"BinaryLane rate limited. Waiting {wait}s before retry #{attempt} ({path})"
                )
                time.sleep(wait)
                continue

            if resp.status_code >= 400:
                logger.warning(
                    f"BinaryLane API error: {method} {path} -> "
                    f"{resp.status_code} {resp.text[:300]}"
                )
                self._error_count += 1
            return resp
        return None

    def _get_json(self, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        resp = self._request("GET", path, **kwargs)
        if resp is None or resp.status_code != 200:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def _action(self, method: str, path: str, action_name: str,
                server_id: int = None, **kwargs) -> ActionResult:
        """Execute an API action and return a standardized result."""
        resp = self._request(method, path, **kwargs)
        if resp is None:
            return ActionResult(
                success=False, action=action_name, server_id=server_id,
                message="Connection failed",
            )

        success = resp.status_code < 400
        try:
            data = resp.json() if resp.content else None
        except ValueError:
            data = None

        message = ""
        if isinstance(data, dict):
            message = data.get("message") or data.get("error") or ""
            if isinstance(data.get("errors"), list):
                message = ", ".join(str(e) for e in data["errors"])
        elif not success:
            message = resp.text[:200]

        return ActionResult(
            success=success,
            action=action_name,
            server_id=server_id,
            message=message,
            status_code=resp.status_code,
            data=data,
        )

    # ── Servers ──────────────────────────────────────────────────

    def list_servers(self, strict: bool = False) -> List[ServerInfo]:
        """
        List all servers on the account.

        A failed or unreadable fetch returns [] unless ``strict`` is set,
        in which case it raises ProviderError so callers can tell an
        outage from an empty account.
        """
        data = self._get_json("/servers")
        if data is None:
            if strict:
                raise ProviderError("BinaryLane server list unavailable (API unreachable or returned an error)")
            return []
        try:
            servers = [self._parse_server(s) for s in data.get("servers", [])]
        except (TypeError, AttributeError) as e:
            logger.error(f"Failed to parse server list: {e}")
            if strict:
                raise ProviderError(f"BinaryLane server list unreadable: {e}") from e
            return []
        logger.info(f"Listed {len(servers)} BinaryLane servers")
        return servers

    def get_server(self, server_id: int) -> Optional[ServerInfo]:
        data = self._get_json(f"/servers/{server_id}")
        if not data or "server" not in data:
            return None
        return self._parse_server(data["server"])

    @staticmethod
    def validate_server_request(name: str, size: str, image: str, region: str):
        for label, value in (("name", name), ("size", size), ("image", image), ("region", region)):
            if not value:
                raise ValidationError(f"Missing required field: {label}")
        if not SERVER_NAME_RE.match(name):
            raise ValidationError(
                "Invalid server name format. Must be 2-64 characters, alphanumeric "
                "with dots/hyphens, and cannot start or end with a hyphen or dot"
            )

    def create_server(self, name: str, size: str, image: str, region: str,
                      ssh_keys: List[int] = None, ipv6: bool = False,
                      vpc_id: int = None, user_data: str = None,
                      backups: bool = False) -> ActionResult:
        """Create a server. Raises ValidationError on a malformed request."""
        self.validate_server_request(name, size, image, region)
        payload: Dict[str, Any] = {"name": name, "size": size, "image": image, "region": region}
        if ssh_keys:
            payload["ssh_keys"] = ssh_keys
        if ipv6:
            payload["ipv6"] = True
        if vpc_id is not None:
            payload["vpc_id"] = vpc_id
        if user_data:
            payload["user_data"] = user_data
        if backups:
            payload["backups"] = True

        result = self._action("POST", "/servers", "create_server", json=payload)
        if result.success and isinstance(result.data, dict) and result.data.get("server"):
            result.server_id = result.data["server"].get("id")
        return result

    def delete_server(self, server_id: int) -> ActionResult:
        return self._action("DELETE", f"/servers/{server_id}", "delete_server", server_id)

    # ── Reference Data ───────────────────────────────────────────

    def list_sizes(self) -> List[Dict[str, Any]]:
        data = self._get_json("/sizes")
        return [
            {
                "slug": s.get("slug"),
                "description": s.get("description"),
                "vcpus": s.get("vcpus"),
                "memory_mb": s.get("memory"),
                "disk_gb": s.get("disk"),
                "price_monthly": s.get("price_monthly"),
                "regions": s.get("regions", []),
                "available": s.get("available", True),
            }
            for s in (data or {}).get("sizes", [])
        ]

    def list_images(self, image_type: str = "distribution") -> List[Dict[str, Any]]:
        data = self._get_json("/images", params={"type": image_type})
        return [
            {
                "id": i.get("id"),
                "slug": i.get("slug"),
                "name": i.get("name"),
                "distribution": i.get("distribution"),
                "regions": i.get("regions", []),
            }
            for i in (data or {}).get("images", [])
        ]

    def list_regions(self) -> List[Dict[str, Any]]:
        data = self._get_json("/regions")
        return [
            {
                "slug": r.get("slug"),
                "name": r.get("name"),
                "available": r.get("available", True),
            }
            for r in (data or {}).get("regions", [])
        ]

    def test_connection(self) -> Dict[str, Any]:
        """Check authentication against the account endpoint."""
        resp = self._request("GET", "/account")
        if resp is None:
            return {"success": False, "error": "Connection failed"}
        if resp.status_code != 200:
            return {"success": False, "error": f"HTTP {resp.status_code}"}
        try:
            account = resp.json().get("account", {})
        except ValueError:
            account = {}
        return {
            "success": True,
            "email": account.get("email", "unknown"),
            "status": account.get("status", "unknown"),
        }

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _public_address(networks: List[Dict[str, Any]]) -> Optional[str]:
        for network in networks or []:
            if network.get("type") == "public":
                return network.get("ip_address")
        return None

    @classmethod
    def _parse_server(cls, data: Dict[str, Any]) -> ServerInfo:
        networks = data.get("networks") or {}
        size = data.get("size")
        region = data.get("region")
        image = data.get("image")
        return ServerInfo(
            id=data.get("id", 0),
            name=data.get("name", ""),
            status=data.get("status", "unknown"),
            size_slug=size.get("slug") if isinstance(size, dict) else data.get("size_slug"),
            region_slug=region.get("slug") if isinstance(region, dict) else region,
            image_slug=image.get("slug") if isinstance(image, dict) else image,
            ipv4=cls._public_address(networks.get("v4")),
            ipv6=cls._public_address(networks.get("v6")),
            vcpus=data.get("vcpus"),
            memory_mb=data.get("memory"),
            disk_gb=data.get("disk"),
            created_at=data.get("created_at"),
            raw=data,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "token_configured": bool(self.api_token),
            "total_requests": self._request_count,
            "total_errors": self._error_count,
        }


def format_server_for_display(server: ServerInfo) -> Dict[str, str]:
    """Flatten a server into table-ready strings."""
    specs = []
    if server.vcpus:
        specs.append(f"{server.vcpus} vCPU")
    if server.memory_mb:
        specs.append(f"{server.memory_mb // 1024}GB RAM" if server.memory_mb >= 1024
                     else f"{server.memory_mb}MB RAM")
    if server.disk_gb:
        specs.append(f"{server.disk_gb}GB disk")
    return {
        "id": str(server.id),
        "name": server.name,
        "status": server.status,
        "region": server.region_slug or "-",
        "size": server.size_slug or "-",
        "ipv4": server.ipv4 or "-",
        "specs": ", ".join(specs) or "-",
    }


def sync_to_fleet(client: BinaryLaneClient, store, vsite: str,
                  actor: str = "nsctl") -> Dict[str, Any]:
    """
    Upsert a vnode for every BinaryLane server into a vsite.

    Vnodes are matched by name; existing ones are moved into the vsite
    and get their address, status and provider id refreshed. Raises
    ProviderError when the server list cannot be fetched, leaving the
    store untouched.
    """
    vsite_row = store.get_vsite(vsite)
    if not vsite_row:
        raise ValidationError(f"VSite '{vsite}' not found. Create it with: nsctl addvsite {vsite}")

    servers = client.list_servers(strict=True)
    created, updated = [], []
    with store.transaction():
        for server in servers:
            fields = {
                "ip_address": server.ipv4,
                "provider_id": str(server.id),
                "status": "active" if server.status == "active" else server.status,
                "is_active": server.status == "active",
            }
            if store.get_vnode(server.name):
                store.update_vnode(server.name, vsite_id=vsite_row["id"], **fields)
                updated.append(server.name)
            else:
                store.add_vnode(server.name, vsite=vsite, role="compute", **fields)
                created.append(server.name)

    summary = {"servers": len(servers), "created": created, "updated": updated}
    logger.info(f"BinaryLane sync into {vsite}: {len(created)} created, {len(updated)} updated")
    store.log_event(AuditRecord(
        action="bl-sync", target=vsite, actor=actor,
        detail=f"{len(created)} created, {len(updated)} updated",
        context={"servers": len(servers)},
    ))
    return summary
