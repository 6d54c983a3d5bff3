"""In-memory registries of provisioned tenants and live bindings.

Both maps are caches of the durable store, rebuilt on startup.  Each is
guarded by its own lock, held only for the map operation itself and never
across a network call.

The binding registry additionally owns the link between a binding and its
renewal task: a binding is present here exactly while the scheduler holds a
task for it.  Bindings are keyed by ``<instance_id>/<binding_id>``, the same
shape as their durable record path, so two instances that reuse a binding ID
never share an entry or a renewal task.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime

from vault_broker import paths
from vault_broker.models import BindingRecord, TenantRecord
from vault_broker.renewal import Lease, RenewalScheduler

logger = logging.getLogger(__name__)

PersistCallback = Callable[[BindingRecord], Awaitable[None]]


class TenantRegistry:
    """``instance_id -> TenantRecord`` map."""

    def __init__(self) -> None:
        self._tenants: dict[str, TenantRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tenants)

    def __contains__(self, instance_id: object) -> bool:
        with self._lock:
            return instance_id in self._tenants

    def get(self, instance_id: str) -> TenantRecord | None:
        with self._lock:
            return self._tenants.get(instance_id)

    def put(self, record: TenantRecord) -> None:
        with self._lock:
            self._tenants[record.instance_id] = record

    def remove(self, instance_id: str) -> TenantRecord | None:
        with self._lock:
            return self._tenants.pop(instance_id, None)

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._tenants)

    def clear(self) -> None:
        with self._lock:
            self._tenants.clear()


class BindingRegistry:
    """``<instance_id>/<binding_id> -> BindingRecord`` map whose entries each own a renewal task.

    Parameters
    ----------
    scheduler:
        Scheduler that runs one renewal task per binding key.
    persist:
        Optional coroutine called with the advanced record after every
        successful renewal, so the durable copy tracks the latest lease.
    """

    def __init__(self, scheduler: RenewalScheduler, persist: PersistCallback | None = None) -> None:
        self._scheduler = scheduler
        self._persist = persist
        self._bindings: dict[str, BindingRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._bindings

    @property
    def scheduler(self) -> RenewalScheduler:
        return self._scheduler

    def get(self, instance_id: str, binding_id: str) -> BindingRecord | None:
        with self._lock:
            return self._bindings.get(paths.binding_key(instance_id, binding_id))

    def find(self, binding_id: str) -> list[BindingRecord]:
        """Every registered binding with *binding_id*, whatever its instance."""
        with self._lock:
            return [rec for rec in self._bindings.values() if rec.binding_id == binding_id]

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._bindings)

    def for_instance(self, instance_id: str) -> list[BindingRecord]:
        with self._lock:
            return [rec for rec in self._bindings.values() if rec.instance_id == instance_id]

    def add(self, record: BindingRecord) -> datetime:
        """Register *record* and start renewing it; returns the first renewal deadline."""
        key = paths.binding_key(record.instance_id, record.binding_id)
        with self._lock:
            self._bindings[key] = record
        lease = Lease(
            token=record.client_token,
            accessor=record.accessor,
            lease_duration_seconds=record.lease_duration_seconds,
            issued_at=record.issued_at,
        )
        return self._scheduler.schedule(
            key,
            lease,
            on_renewed=self._renewed_hook(key),
            on_dropped=self._on_dropped,
        )

    async def remove(self, instance_id: str, binding_id: str) -> BindingRecord | None:
        """Cancel the binding's renewal task, then drop it from the map.

        Only the entry of *instance_id* is touched; a binding with the same ID
        under another instance keeps renewing.
        """
        key = paths.binding_key(instance_id, binding_id)
        await self._scheduler.cancel(key)
        with self._lock:
            return self._bindings.pop(key, None)

    async def close(self, grace_seconds: float = 5.0) -> None:
        """Stop every renewal task and forget all bindings."""
        await self._scheduler.shutdown(grace_seconds)
        with self._lock:
            self._bindings.clear()

    # -- Scheduler hooks -----------------------------------------------------

    def _renewed_hook(self, key: str) -> Callable[[Lease], Awaitable[None]]:
        async def _on_renewed(lease: Lease) -> None:
            with self._lock:
                current = self._bindings.get(key)
                if current is None:
                    return
                updated = current.renewed(lease.lease_duration_seconds, lease.issued_at)
                self._bindings[key] = updated
            if self._persist is not None:
                await self._persist(updated)

        return _on_renewed

    async def _on_dropped(self, key: str) -> None:
        with self._lock:
            record = self._bindings.pop(key, None)
        if record is not None:
            logger.warning(
                "Dropped binding %s for instance %s: lease expired at %s",
                record.binding_id,
                record.instance_id,
                record.expires_at.isoformat(),
                extra={"instance_id": record.instance_id, "binding_id": record.binding_id},
            )
