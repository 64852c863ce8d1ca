"""Wiring of the store, executor and services behind each nsctl run."""

import logging
from dataclasses import dataclass
from typing import Optional

from fleet.config import NetServaConfig, load_config
from fleet.store import FleetStore
from remote.executor import RemoteExecutor
from vhost.configuration import ConfigurationService
from vhost.management import VhostManagementService
from vhost.permissions import PermissionsService
from vhost.scripts import BashScriptBuilder
from vhost.validation import VhostValidationService
from vhost.vconf import VconfService
from vhost.vmail import VmailService
from vhost.vpass import Vault

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: NetServaConfig
    store: FleetStore
    executor: RemoteExecutor
    config_service: ConfigurationService
    builder: BashScriptBuilder
    vhosts: VhostManagementService
    vconfs: VconfService
    validator: VhostValidationService
    permissions: PermissionsService
    vault: Vault
    vmail: VmailService

    @classmethod
    def assemble(cls, config: NetServaConfig, store: FleetStore,
                 executor: RemoteExecutor, actor: str = "nsctl") -> "Runtime":
        config_service = ConfigurationService(store, executor, defaults=config)
        builder = BashScriptBuilder()
        vault = Vault(store, key=config.vault_key, actor=actor)
        return cls(
            config=config,
            store=store,
            executor=executor,
            config_service=config_service,
            builder=builder,
            vhosts=VhostManagementService(store, config_service, executor, builder, actor=actor),
            vconfs=VconfService(store, config_service, executor, actor=actor),
            validator=VhostValidationService(store, executor, actor=actor, builder=builder),
            permissions=PermissionsService(store, executor, builder, actor=actor),
            vault=vault,
            vmail=VmailService(store, executor, vault, actor=actor),
        )

    def close(self):
        self.executor.close()
        self.store.close()


def build_runtime(config_path: Optional[str] = None) -> Runtime:
    config = load_config(config_path)
    store = FleetStore(str(config.db_path))
    executor = RemoteExecutor(store, config)
    logger.debug(f"Runtime ready (db={config.db_path})")
    return Runtime.assemble(config, store, executor)
