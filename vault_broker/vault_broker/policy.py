"""Isolation policy rendering.

Each tenant gets a Vault ACL policy scoped to three namespaces:

* its own instance namespace -- full CRUD + list,
* its space's shared namespace -- full CRUD + list,
* its organization's shared namespace -- read + list only.

The bare namespace roots are list-only so clients can enumerate what exists
without reading it.  Rendering is a pure function of its inputs; the output
is byte-for-byte stable and covered by a golden file.
"""

from __future__ import annotations

from string import Template

from vault_broker.paths import NAMESPACE_PREFIX, validate_id

SERVICE_POLICY_TEMPLATE = Template(
    """
path "$prefix/$instance_id" {
  capabilities = ["list"]
}

path "$prefix/$instance_id/*" {
  capabilities = ["create", "read", "update", "delete", "list"]
}

path "$prefix/$space_id" {
  capabilities = ["list"]
}

path "$prefix/$space_id/*" {
  capabilities = ["create", "read", "update", "delete", "list"]
}

path "$prefix/$org_id" {
  capabilities = ["list"]
}

path "$prefix/$org_id/*" {
  capabilities = ["read", "list"]
}
"""
)


def generate_policy(instance_id: str, space_id: str, org_id: str) -> str:
    """Render the ACL policy document for one tenant.

    Raises
    ------
    ValueError
        If any identifier is empty or contains a path separator.
    """
    return SERVICE_POLICY_TEMPLATE.substitute(
        prefix=NAMESPACE_PREFIX,
        instance_id=validate_id(instance_id, "instance_id"),
        space_id=validate_id(space_id, "space_id"),
        org_id=validate_id(org_id, "org_id"),
    )
