"""Exception hierarchy shared by the fleet, remote and vhost packages."""

from __future__ import annotations


class NetServaError(Exception):
    """Base class for every NetServa failure."""


class NotFoundError(NetServaError):
    """A vnode, vhost, vconf or credential does not exist."""


class ConflictError(NetServaError):
    """The record already exists or is still referenced."""


class ValidationError(NetServaError):
    """Input was rejected before anything was touched."""


class RemoteExecutionError(NetServaError):
    """A remote script returned non-zero or never reported an exit code."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class ConfigurationError(NetServaError):
    """Settings were unreadable or platform variables could not be generated."""


class VaultError(NetServaError):
    """The credential vault is locked or the ciphertext is unreadable."""


class ProviderError(NetServaError):
    """A hosting provider API was unreachable or answered with an error."""
