"""Tenant and binding lifecycle manager.

:class:`LifecycleManager` owns every piece of mutable broker state: the
tenant and binding registries, both renewal schedulers and the mount
manager.  One instance exists per process and is created by the application
lifespan; nothing here is a module-level singleton.

Durable records in Vault are the source of truth.  ``start()`` rebuilds the
in-memory registries from them and restarts renewal for every binding before
the manager accepts calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from vault_broker import paths
from vault_broker.config import BrokerSettings
from vault_broker.errors import (
    BindingConflictError,
    BindingNotFoundError,
    BrokerError,
    BrokerNotReadyError,
    InstanceConflictError,
    InstanceNotFoundError,
    RecordDecodeError,
)
from vault_broker.models import BindingRecord, TenantRecord
from vault_broker.mounts import MountManager, format_mounts
from vault_broker.policy import generate_policy
from vault_broker.registry import BindingRegistry, TenantRegistry
from vault_broker.renewal import Clock, Lease, RenewalScheduler, utcnow
from vault_broker.saga import Saga, Step
from vault_broker.store import BrokerStore
from vault_broker.vault import VaultClient, VaultError

logger = logging.getLogger(__name__)

BROKER_TOKEN_KEY = "broker-token"


def _ids(instance_id: str, binding_id: str | None = None, **fields: str) -> dict[str, str]:
    """``extra`` mapping that puts OSB IDs on a log record as structured fields."""
    ids = {"instance_id": instance_id, **fields}
    if binding_id is not None:
        ids["binding_id"] = binding_id
    return ids


@dataclass(frozen=True)
class BindResult:
    """Outcome of :meth:`LifecycleManager.bind`."""

    credentials: dict[str, Any]
    created: bool


class LifecycleManager:
    """Provision, bind, unbind and deprovision tenants against Vault.

    Parameters
    ----------
    vault:
        Client authenticated with the broker's own token.  The manager does
        not close it; whoever built it does.
    settings:
        Broker settings (role period, renewal tuning, advertised address).
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(self, vault: VaultClient, settings: BrokerSettings, *, clock: Clock = utcnow) -> None:
        self._vault = vault
        self._settings = settings
        self._clock = clock
        self._store = BrokerStore(vault)
        self._mounts = MountManager(vault)
        self._tenants = TenantRegistry()
        self._bindings = BindingRegistry(self._new_scheduler(), persist=self._persist_binding)
        self._token_renewer = self._new_scheduler()
        self._binds_in_flight: set[str] = set()
        self._running = False

    # -- State ---------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def tenants(self) -> TenantRegistry:
        return self._tenants

    @property
    def bindings(self) -> BindingRegistry:
        return self._bindings

    @property
    def token_renewer(self) -> RenewalScheduler:
        return self._token_renewer

    def get_tenant(self, instance_id: str) -> TenantRecord | None:
        return self._tenants.get(instance_id)

    def get_binding(self, instance_id: str, binding_id: str) -> BindingRecord | None:
        return self._bindings.get(instance_id, binding_id)

    async def ready(self) -> bool:
        """Whether the manager is running and Vault answers its health endpoint."""
        return self._running and await self._vault.health_check()

    # -- Start / stop --------------------------------------------------------

    async def start(self) -> None:
        """Mount the state backend, recover tenants and bindings, then accept calls.

        Raises
        ------
        BrokerError
            If Vault cannot be read.  Records that fail to decode are skipped
            and do not fail startup.
        """
        if self._running:
            logger.debug("Broker is already running")
            return

        logger.info("Starting broker")
        state_mount = {paths.STATE_MOUNT: paths.GENERIC_MOUNT_TYPE}
        logger.debug("Creating mounts %s", format_mounts(state_mount))
        try:
            await self._mounts.ensure_mounts(state_mount)
        except VaultError as exc:
            raise self._fail("create mounts", exc) from exc

        try:
            await self._recover()
        except BaseException:
            await self._bindings.close(self._settings.shutdown_grace_seconds)
            self._tenants.clear()
            raise
        self._running = True

        if self._settings.vault_renew:
            await self._start_token_renewal()

    async def stop(self) -> None:
        """Cancel every renewal task and forget the cached state."""
        if not self._running:
            return
        logger.info("Stopping broker")
        self._running = False
        grace = self._settings.shutdown_grace_seconds
        await self._bindings.close(grace)
        await self._token_renewer.shutdown(grace)
        self._tenants.clear()

    # -- Tenants -------------------------------------------------------------

    async def provision(self, instance_id: str, organization_id: str, space_id: str) -> bool:
        """Create (or converge) the policy, token role, mounts and record for a tenant.

        Returns
        -------
        bool
            ``True`` for a new tenant, ``False`` when an identical tenant was
            already registered.  The steps are re-applied either way.

        Raises
        ------
        InstanceConflictError
            If *instance_id* is registered with a different org or space.
        SagaStepError
            If a step fails.  Steps already applied are left in place.
        """
        self._ensure_running()
        policy = generate_policy(instance_id, space_id, organization_id)
        record = TenantRecord(instance_id=instance_id, organization_id=organization_id, space_id=space_id)

        existing = self._tenants.get(instance_id)
        if existing is not None and existing != record:
            raise InstanceConflictError(
                f"instance {instance_id} already exists for organization "
                f"{existing.organization_id} and space {existing.space_id}"
            )

        logger.info(
            "Provisioning instance %s in organization %s, space %s",
            instance_id,
            organization_id,
            space_id,
            extra=_ids(instance_id),
        )
        name = paths.policy_name(instance_id)
        mounts = paths.tenant_mounts(instance_id, organization_id, space_id)
        saga = Saga(
            f"provision {instance_id}",
            [
                Step(f"create policy {name}", lambda: self._vault.write_policy(name, policy)),
                Step(
                    f"create token role {name}",
                    lambda: self._vault.write_role(
                        paths.role_name(instance_id),
                        allowed_policies=[name],
                        period=self._settings.token_role_period_seconds,
                        renewable=True,
                    ),
                ),
                Step(f"create mounts {format_mounts(mounts)}", lambda: self._mounts.ensure_mounts(mounts)),
                Step(
                    f"store instance info at {paths.tenant_record_path(instance_id)}",
                    lambda: self._store.write_tenant(record),
                ),
            ],
        )
        await saga.run()

        self._tenants.put(record)
        return existing is None

    async def update(self, instance_id: str) -> None:
        """Accepted no-op: the broker has a single plan and nothing to change."""
        self._ensure_running()
        logger.info("Updating service for instance %s", instance_id, extra=_ids(instance_id))

    def last_operation(self, instance_id: str) -> str:
        """Every operation completes synchronously, so the answer is always ``succeeded``."""
        self._ensure_running()
        logger.info("Returning last operation for instance %s", instance_id)
        return "succeeded"

    async def deprovision(self, instance_id: str) -> None:
        """Remove the tenant's private mounts, role, policy and record.

        Shared organization and space mounts are left in place.

        Raises
        ------
        InstanceNotFoundError
            If *instance_id* is not registered.
        SagaStepError
            If a step fails.  Steps already applied are left in place.
        """
        self._ensure_running()
        tenant = self._tenants.get(instance_id)
        if tenant is None:
            raise InstanceNotFoundError(instance_id)

        remaining = self._bindings.for_instance(instance_id)
        if remaining:
            logger.warning(
                "Deprovisioning instance %s with %d live binding(s); their tokens lose all access",
                instance_id,
                len(remaining),
                extra=_ids(instance_id),
            )

        logger.info("Deprovisioning instance %s", instance_id, extra=_ids(instance_id))
        name = paths.policy_name(instance_id)
        private_mounts = paths.instance_private_mounts(instance_id)
        saga = Saga(
            f"deprovision {instance_id}",
            [
                Step(f"remove mounts {', '.join(private_mounts)}", lambda: self._mounts.remove_mounts(private_mounts)),
                Step(f"delete token role {name}", lambda: self._vault.delete_role(paths.role_name(instance_id))),
                Step(f"delete policy {name}", lambda: self._vault.delete_policy(name)),
                Step(
                    f"delete instance info at {paths.tenant_record_path(instance_id)}",
                    lambda: self._store.delete_tenant(instance_id),
                ),
            ],
        )
        await saga.run()

        self._tenants.remove(instance_id)

    # -- Bindings ------------------------------------------------------------

    async def bind(self, instance_id: str, binding_id: str) -> BindResult:
        """Issue a renewable token for *binding_id* and start renewing it.

        Raises
        ------
        InstanceNotFoundError
            If the tenant is not registered.  Nothing is issued or written.
        BindingConflictError
            If *binding_id* belongs to another instance or is being created
            concurrently.
        BrokerError
            If Vault fails.  A token whose record cannot be stored is revoked.
        """
        self._ensure_running()
        paths.validate_id(binding_id, "binding_id")
        tenant = self._tenants.get(instance_id)
        if tenant is None:
            raise InstanceNotFoundError(instance_id)

        existing = self._bindings.get(instance_id, binding_id)
        if existing is not None:
            logger.info(
                "Binding %s for instance %s already exists",
                binding_id,
                instance_id,
                extra=_ids(instance_id, binding_id),
            )
            return BindResult(existing.credentials(self._settings.vault_advertise_addr), created=False)

        others = self._bindings.find(binding_id)
        if others:
            raise BindingConflictError(
                f"binding {binding_id} already exists for instance {others[0].instance_id}"
            )

        if binding_id in self._binds_in_flight:
            raise BindingConflictError(f"binding {binding_id} is already being created")
        self._binds_in_flight.add(binding_id)
        try:
            record = await self._issue(tenant, binding_id)
        finally:
            self._binds_in_flight.discard(binding_id)

        deadline = self._bindings.add(record)
        logger.info(
            "Bound %s for instance %s (accessor %s), next renewal at %s",
            binding_id,
            instance_id,
            record.accessor,
            deadline.isoformat(),
            extra=_ids(instance_id, binding_id, accessor=record.accessor),
        )
        return BindResult(record.credentials(self._settings.vault_advertise_addr), created=True)

    async def unbind(self, instance_id: str, binding_id: str) -> None:
        """Revoke the binding's token, stop its renewal and delete its record.

        The steps run in that order.  Renewal is stopped, and its task awaited,
        before the record is deleted so that a renewal in flight cannot
        persist the record back after the delete.

        The durable record is authoritative: revocation is attempted even if
        the binding is not in the registry, and an already-revoked accessor
        is not an error, so a failed unbind can simply be retried.

        Raises
        ------
        BindingNotFoundError
            If no durable record exists for the binding.
        """
        self._ensure_running()
        logger.info(
            "Unbinding %s for instance %s", binding_id, instance_id, extra=_ids(instance_id, binding_id)
        )
        path = paths.binding_record_path(instance_id, binding_id)

        record = await self._read_binding_for_unbind(instance_id, binding_id)
        if record is None:
            raise BindingNotFoundError(instance_id, binding_id)

        logger.debug("Revoking accessor %s for path %s", record.accessor, path)
        try:
            await self._vault.revoke_accessor(record.accessor)
        except VaultError as exc:
            if not exc.is_invalid_accessor:
                raise self._fail(f"revoke accessor {record.accessor}", exc) from exc
            logger.info("Accessor %s was already revoked", record.accessor)

        await self._bindings.remove(instance_id, binding_id)

        logger.debug("Deleting binding info at %s", path)
        try:
            await self._store.delete_binding(instance_id, binding_id)
        except VaultError as exc:
            raise self._fail(f"delete binding info at {path}", exc) from exc

    # -- Internal ------------------------------------------------------------

    def _new_scheduler(self) -> RenewalScheduler:
        return RenewalScheduler(
            self._vault,
            retry_seconds=self._settings.renewal_retry_seconds,
            max_jitter_seconds=self._settings.renewal_jitter_seconds,
            clock=self._clock,
        )

    def _ensure_running(self) -> None:
        if not self._running:
            raise BrokerNotReadyError()

    def _fail(self, step: str, exc: Exception) -> BrokerError:
        error = BrokerError(f"failed to {step}: {exc}")
        logger.error("%s", error)
        return error

    async def _issue(self, tenant: TenantRecord, binding_id: str) -> BindingRecord:
        instance_id = tenant.instance_id
        role = paths.role_name(instance_id)
        try:
            auth = await self._vault.create_token(
                role,
                policies=[paths.policy_name(instance_id)],
                metadata={"cf-instance-id": instance_id, "cf-binding-id": binding_id},
                display_name=paths.display_name(binding_id),
                renewable=True,
            )
        except VaultError as exc:
            raise self._fail(f"create token with role {role}", exc) from exc

        if auth.lease_duration <= 0:
            await self._revoke_quietly(auth.accessor)
            raise self._fail(
                f"create token with role {role}",
                ValueError("token has no lease duration and cannot be renewed"),
            )

        record = BindingRecord(
            binding_id=binding_id,
            instance_id=instance_id,
            organization_id=tenant.organization_id,
            space_id=tenant.space_id,
            client_token=auth.client_token,
            accessor=auth.accessor,
            lease_duration_seconds=auth.lease_duration,
            issued_at=self._clock(),
        )

        path = paths.binding_record_path(instance_id, binding_id)
        try:
            await self._store.write_binding(record)
        except VaultError as exc:
            await self._revoke_quietly(auth.accessor)
            raise self._fail(f"store binding info at {path}", exc) from exc
        return record

    async def _revoke_quietly(self, accessor: str) -> None:
        try:
            await self._vault.revoke_accessor(accessor)
        except VaultError as exc:
            logger.error("Failed to revoke orphaned token (accessor %s): %s", accessor, exc)

    async def _read_binding_for_unbind(self, instance_id: str, binding_id: str) -> BindingRecord | None:
        path = paths.binding_record_path(instance_id, binding_id)
        try:
            return await self._store.read_binding(instance_id, binding_id)
        except VaultError as exc:
            raise self._fail(f"read binding info for {path}", exc) from exc
        except RecordDecodeError:
            cached = self._bindings.get(instance_id, binding_id)
            if cached is None:
                raise
            logger.warning("Binding info at %s is corrupt; using the cached copy to unbind", path)
            return cached

    async def _persist_binding(self, record: BindingRecord) -> None:
        await self._store.write_binding(record)

    async def _recover(self) -> None:
        logger.debug("Restoring instances and bindings")
        try:
            instance_ids = await self._store.list_tenants()
        except VaultError as exc:
            raise self._fail("list instances", exc) from exc

        for instance_id in instance_ids:
            await self._recover_tenant(instance_id)
            try:
                binding_ids = await self._store.list_bindings(instance_id)
            except VaultError as exc:
                raise self._fail(f"list binds for instance {instance_id}", exc) from exc
            for binding_id in binding_ids:
                await self._recover_binding(instance_id, binding_id)

        logger.info("Restored %d binds and %d instances", len(self._bindings), len(self._tenants))

    async def _recover_tenant(self, instance_id: str) -> None:
        logger.info("Restoring info for instance %s", instance_id)
        try:
            record = await self._store.read_tenant(instance_id)
        except VaultError as exc:
            raise self._fail(f"restore instance data for {instance_id}", exc) from exc
        except RecordDecodeError as exc:
            logger.error("Skipping instance %s: %s", instance_id, exc)
            return
        if record is None:
            logger.info("Instance %s has no stored info", instance_id)
            return
        self._tenants.put(record)

    async def _recover_binding(self, instance_id: str, binding_id: str) -> None:
        logger.info("Restoring bind for instance %s for binding %s", instance_id, binding_id)
        try:
            record = await self._store.read_binding(instance_id, binding_id)
        except VaultError as exc:
            raise self._fail(f"restore bind {binding_id}", exc) from exc
        except RecordDecodeError as exc:
            logger.error("Skipping binding %s: %s", binding_id, exc)
            return
        if record is None:
            logger.info("Binding %s for instance %s has no stored info", binding_id, instance_id)
            return
        self._bindings.add(record)

    async def _start_token_renewal(self) -> None:
        """Keep the broker's own token alive; failures here are logged, never fatal."""
        try:
            info = await self._vault.lookup_self()
        except VaultError as exc:
            logger.error("renew-token: failed to lookup client vault token: %s", exc)
            return
        if "expire_time" in info and info["expire_time"] is None:
            logger.info("renew-token: vault token will never expire so doesn't need to be renewed")
            return

        token = self._settings.vault_token.get_secret_value()
        try:
            auth = await self._vault.renew_self(token)
        except VaultError as exc:
            logger.error("renew-token: failed to renew client vault token: %s", exc)
            return
        if auth.lease_duration <= 0:
            logger.info("renew-token: vault token has no lease duration, not renewing")
            return

        lease = Lease(
            token=token,
            accessor=auth.accessor,
            lease_duration_seconds=auth.lease_duration,
            issued_at=self._clock(),
        )
        self._token_renewer.schedule(BROKER_TOKEN_KEY, lease)
