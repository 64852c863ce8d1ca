"""
NetServa Fleet Layer — inventory and ambient services

Provides:
- Fleet Store (FleetStore) — SQLite source of truth for venues, vsites,
  vnodes, vhosts, vconfs and credentials
- Configuration (load_config, NetServaConfig) — YAML plus env overrides
- Audit trail (AuditRecord) — schema-validated event records
- Fleet tree (build_tree, render_tree) — hierarchy view
- BinaryLane API (BinaryLaneClient) — provider inventory sync
"""

from .errors import (
    NetServaError, NotFoundError, ConflictError, ValidationError,
    RemoteExecutionError, ConfigurationError, VaultError,
)
from .config import NetServaConfig, load_config
from .audit import AuditRecord
from .store import FleetStore
from .tree import build_tree, render_tree, tree_stats
from .binarylane import BinaryLaneClient, ServerInfo, ActionResult, sync_to_fleet

__all__ = [
    'NetServaError', 'NotFoundError', 'ConflictError', 'ValidationError',
    'RemoteExecutionError', 'ConfigurationError', 'VaultError',
    'NetServaConfig', 'load_config',
    'AuditRecord',
    'FleetStore',
    'build_tree', 'render_tree', 'tree_stats',
    'BinaryLaneClient', 'ServerInfo', 'ActionResult', 'sync_to_fleet',
]
