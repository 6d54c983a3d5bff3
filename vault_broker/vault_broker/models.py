"""Durable records for tenants and bindings.

Both records are stored in Vault's generic backend wrapped in a single
``json`` field holding the serialized model, e.g.::

    {"json": "{\"instance_id\": \"...\", ...}"}

Decoding is strict: a missing ``json`` key, a non-string value, or a payload
that does not validate raises :class:`~vault_broker.errors.RecordDecodeError`.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vault_broker import paths
from vault_broker.errors import RecordDecodeError

_RecordT = TypeVar("_RecordT", bound=BaseModel)


class TenantRecord(BaseModel):
    """A provisioned service instance and the org/space it belongs to."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    organization_id: str
    space_id: str


class BindingRecord(BaseModel):
    """One issued, renewable credential bound to a tenant.

    ``issued_at`` is the instant the current lease started: token creation
    for a fresh binding, or the last successful renewal afterwards.
    """

    model_config = ConfigDict(frozen=True)

    binding_id: str
    instance_id: str
    organization_id: str
    space_id: str
    client_token: str = Field(repr=False)
    accessor: str
    lease_duration_seconds: int = Field(gt=0)
    issued_at: datetime

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.lease_duration_seconds)

    def renewed(self, lease_duration_seconds: int, at: datetime) -> BindingRecord:
        """Return a copy whose lease restarts at *at* with the given duration."""
        return self.model_copy(update={"lease_duration_seconds": lease_duration_seconds, "issued_at": at})

    def credentials(self, vault_address: str) -> dict[str, Any]:
        """Credential payload handed to the bound application."""
        return {
            "address": vault_address,
            "auth": {
                "accessor": self.accessor,
                "token": self.client_token,
            },
            "backends": {
                "generic": paths.secret_path(self.instance_id),
                "transit": paths.transit_path(self.instance_id),
            },
            "backends_shared": {
                "organization": paths.secret_path(self.organization_id),
                "space": paths.secret_path(self.space_id),
            },
        }


def encode_record(record: BaseModel) -> dict[str, str]:
    """Wrap *record* for storage in the generic backend."""
    return {"json": record.model_dump_json()}


def decode_record(model: type[_RecordT], data: dict[str, Any], path: str) -> _RecordT:
    """Unwrap and validate a stored record of type *model* read from *path*."""
    if "json" not in data:
        raise RecordDecodeError(path, "missing 'json' key")
    raw = data["json"]
    if not isinstance(raw, str):
        raise RecordDecodeError(path, f"json data is {type(raw).__name__}, not str")
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        raise RecordDecodeError(path, str(exc)) from exc
