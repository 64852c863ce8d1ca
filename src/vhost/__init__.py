"""
NetServa VHost Layer — provisioning and configuration of virtual hosts

Provides:
- Platform variables (VhostConfiguration, OsType)
- Configuration generation (ConfigurationService)
- Provisioning scripts (BashScriptBuilder)
- Lifecycle (VhostManagementService) — addvhost, chvhost, delvhost
- VConfs (VconfService), validation and repair, permission repair
- Mailboxes and aliases (VmailService) and the credential vault (Vault)
"""

from .platform import OsType, VhostConfiguration
from .configuration import ConfigurationService
from .scripts import BashScriptBuilder
from .management import VhostManagementService, VhostResult
from .vconf import VconfService
from .validation import VhostValidationService, ValidationReport, RepairResult
from .permissions import PermissionsService, PermissionsResult
from .vmail import VmailService, VmailResult, AliasResult
from .vpass import Vault

__all__ = [
    'OsType', 'VhostConfiguration',
    'ConfigurationService',
    'BashScriptBuilder',
    'VhostManagementService', 'VhostResult',
    'VconfService',
    'VhostValidationService', 'ValidationReport', 'RepairResult',
    'PermissionsService', 'PermissionsResult',
    'VmailService', 'VmailResult', 'AliasResult',
    'Vault',
]
