"""Durable tenant and binding records kept in Vault's generic backend.

Layout under the broker state mount::

    cf/broker/<instance_id>               -> TenantRecord
    cf/broker/<instance_id>/<binding_id>  -> BindingRecord (includes the live token)

This store is the source of truth; the in-memory registries are caches that
are rebuilt from it on startup.
"""

from __future__ import annotations

import logging

from vault_broker import paths
from vault_broker.models import BindingRecord, TenantRecord, decode_record, encode_record
from vault_broker.vault import VaultClient

logger = logging.getLogger(__name__)


class BrokerStore:
    """Read/write access to the broker's durable records."""

    def __init__(self, vault: VaultClient) -> None:
        self._vault = vault

    # -- Tenants -------------------------------------------------------------

    async def list_tenants(self) -> list[str]:
        """Return the instance IDs that have records (or binding directories)."""
        keys = await self._vault.list(paths.tenant_dir())
        return sorted({key.strip("/") for key in keys if key.strip("/")})

    async def read_tenant(self, instance_id: str) -> TenantRecord | None:
        path = paths.tenant_record_path(instance_id)
        data = await self._vault.read(path)
        if not data:
            return None
        return decode_record(TenantRecord, data, path)

    async def write_tenant(self, record: TenantRecord) -> None:
        path = paths.tenant_record_path(record.instance_id)
        logger.debug("Storing instance metadata at %s", path)
        await self._vault.write(path, encode_record(record))

    async def delete_tenant(self, instance_id: str) -> None:
        path = paths.tenant_record_path(instance_id)
        logger.debug("Deleting instance metadata at %s", path)
        await self._vault.delete(path)

    # -- Bindings ------------------------------------------------------------

    async def list_bindings(self, instance_id: str) -> list[str]:
        keys = await self._vault.list(paths.binding_dir(instance_id))
        return sorted({key.strip("/") for key in keys if key.strip("/")})

    async def read_binding(self, instance_id: str, binding_id: str) -> BindingRecord | None:
        path = paths.binding_record_path(instance_id, binding_id)
        data = await self._vault.read(path)
        if not data:
            return None
        return decode_record(BindingRecord, data, path)

    async def write_binding(self, record: BindingRecord) -> None:
        path = paths.binding_record_path(record.instance_id, record.binding_id)
        logger.debug("Storing binding metadata at %s", path)
        await self._vault.write(path, encode_record(record))

    async def delete_binding(self, instance_id: str, binding_id: str) -> None:
        path = paths.binding_record_path(instance_id, binding_id)
        logger.debug("Deleting binding metadata at %s", path)
        await self._vault.delete(path)
