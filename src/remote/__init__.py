"""
NetServa Remote Layer — command execution on vnodes

Provides:
- SSH Exec Bridge (SSHExecBridge) — one paramiko connection per vnode
- Remote Executor (RemoteExecutor) — heredoc scripts in a single round trip
"""

from .ssh_bridge import SSHExecBridge, ExecResult
from .executor import RemoteExecutor, HostTarget, SequenceResult

__all__ = [
    'SSHExecBridge', 'ExecResult',
    'RemoteExecutor', 'HostTarget', 'SequenceResult',
]
