"""Idempotent management of the Vault mount table.

Mount changes are rare and broker-internal, so a single process-wide lock
serialises them across tenants.  Each call reads the current table once and
applies only the difference; an already-present mount (or an already-absent
one on removal) is skipped silently.  The first failing mount aborts the call
and mounts applied earlier in the same call are left in place -- callers
converge by simply repeating the call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping

from vault_broker.vault import VaultClient

logger = logging.getLogger(__name__)


def normalize_mount_path(path: str) -> str:
    """Strip leading and trailing separators so ``/cf/x/`` and ``cf/x`` compare equal."""
    return path.strip("/")


def format_mounts(mounts: Mapping[str, str]) -> str:
    """Render ``{path: type}`` as a stable ``path=type, ...`` string for logs."""
    return ", ".join(f"{path}={mounts[path]}" for path in sorted(mounts))


class MountManager:
    """Serialised, delta-applying view of the Vault mount table."""

    def __init__(self, vault: VaultClient) -> None:
        self._vault = vault
        self._lock = asyncio.Lock()

    async def ensure_mounts(self, mounts: Mapping[str, str]) -> list[str]:
        """Mount every ``path -> type`` in *mounts* that is not mounted yet.

        Returns
        -------
        list[str]
            Normalised paths that were actually mounted by this call.
        """
        created: list[str] = []
        async with self._lock:
            existing = await self._current_paths()
            for raw_path, backend_type in mounts.items():
                path = normalize_mount_path(raw_path)
                if path in existing:
                    continue
                logger.info("Mounting %s backend at %s", backend_type, path)
                await self._vault.mount(path, backend_type)
                existing.add(path)
                created.append(path)
        return created

    async def remove_mounts(self, mount_paths: Iterable[str]) -> list[str]:
        """Unmount every path in *mount_paths* that is currently mounted.

        Returns
        -------
        list[str]
            Normalised paths that were actually unmounted by this call.
        """
        removed: list[str] = []
        async with self._lock:
            existing = await self._current_paths()
            for raw_path in mount_paths:
                path = normalize_mount_path(raw_path)
                if path not in existing:
                    continue
                logger.info("Unmounting backend at %s", path)
                await self._vault.unmount(path)
                existing.discard(path)
                removed.append(path)
        return removed

    async def _current_paths(self) -> set[str]:
        table = await self._vault.list_mounts()
        return {normalize_mount_path(path) for path in table}
