"""Namespace layout for tenants, bindings, and broker state inside Vault.

Every name the broker creates in Vault is derived here so that provisioning,
deprovisioning, binding, and recovery agree on the exact same paths.
"""

from __future__ import annotations

NAMESPACE_PREFIX = "cf"

# Generic backend holding the broker's own durable records.
STATE_MOUNT = f"{NAMESPACE_PREFIX}/broker"

GENERIC_MOUNT_TYPE = "generic"
TRANSIT_MOUNT_TYPE = "transit"


def validate_id(value: str, field: str) -> str:
    """Return *value* if it is usable as a path segment, else raise ``ValueError``."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} must be a non-empty string")
    if "/" in value:
        raise ValueError(f"{field} must not contain '/': {value!r}")
    return value


def policy_name(instance_id: str) -> str:
    """Name of the ACL policy (and token role) owned by *instance_id*."""
    return f"{NAMESPACE_PREFIX}-{instance_id}"


def role_name(instance_id: str) -> str:
    return policy_name(instance_id)


def display_name(binding_id: str) -> str:
    """Token display name recorded by Vault for audit purposes."""
    return f"{NAMESPACE_PREFIX}-bind-{binding_id}"


def secret_path(scope_id: str) -> str:
    """Generic secret mount for an instance, space, or organization."""
    return f"{NAMESPACE_PREFIX}/{scope_id}/secret"


def transit_path(instance_id: str) -> str:
    return f"{NAMESPACE_PREFIX}/{instance_id}/transit"


def tenant_mounts(instance_id: str, organization_id: str, space_id: str) -> dict[str, str]:
    """All mounts a provisioned tenant needs, keyed by path."""
    return {
        secret_path(organization_id): GENERIC_MOUNT_TYPE,
        secret_path(space_id): GENERIC_MOUNT_TYPE,
        secret_path(instance_id): GENERIC_MOUNT_TYPE,
        transit_path(instance_id): TRANSIT_MOUNT_TYPE,
    }


def instance_private_mounts(instance_id: str) -> list[str]:
    """Mounts owned solely by *instance_id*; shared org/space mounts are excluded."""
    return [secret_path(instance_id), transit_path(instance_id)]


def tenant_record_path(instance_id: str) -> str:
    return f"{STATE_MOUNT}/{instance_id}"


def binding_record_path(instance_id: str, binding_id: str) -> str:
    return f"{STATE_MOUNT}/{instance_id}/{binding_id}"


def binding_key(instance_id: str, binding_id: str) -> str:
    """Registry and renewal key for a binding; unique across instances like its record path."""
    return f"{instance_id}/{binding_id}"


def binding_dir(instance_id: str) -> str:
    return f"{STATE_MOUNT}/{instance_id}/"


def tenant_dir() -> str:
    return f"{STATE_MOUNT}/"
