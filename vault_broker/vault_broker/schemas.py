"""Pydantic models for the Open Service Broker API request and response bodies.

Field names follow the OSB API v2 wire format, so these models are dumped
with ``by_alias=True`` where the wire name is not a valid identifier.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class PlanMetadata(BaseModel):
    displayName: str  # noqa: N815
    bullets: list[str] = Field(default_factory=list)


class ServicePlan(BaseModel):
    id: str
    name: str
    description: str
    free: bool = True
    metadata: PlanMetadata | None = None


class ServiceMetadata(BaseModel):
    displayName: str  # noqa: N815
    imageUrl: str | None = None  # noqa: N815
    longDescription: str | None = None  # noqa: N815
    providerDisplayName: str | None = None  # noqa: N815
    documentationUrl: str | None = None  # noqa: N815
    supportUrl: str | None = None  # noqa: N815


class Service(BaseModel):
    id: str
    name: str
    description: str
    bindable: bool = True
    tags: list[str] = Field(default_factory=list)
    plan_updateable: bool = False
    plans: list[ServicePlan]
    metadata: ServiceMetadata | None = None


class Catalog(BaseModel):
    services: list[Service]


# ---------------------------------------------------------------------------
# Service instances and bindings
# ---------------------------------------------------------------------------


class ProvisionRequest(BaseModel):
    """Body of ``PUT /v2/service_instances/{instance_id}``."""

    model_config = ConfigDict(extra="allow")

    service_id: str = ""
    plan_id: str = ""
    organization_guid: str
    space_guid: str
    parameters: dict[str, Any] | None = None


class UpdateRequest(BaseModel):
    """Body of ``PATCH /v2/service_instances/{instance_id}``."""

    model_config = ConfigDict(extra="allow")

    service_id: str = ""
    plan_id: str | None = None
    parameters: dict[str, Any] | None = None


class BindRequest(BaseModel):
    """Body of ``PUT .../service_bindings/{binding_id}``; the broker only needs the path IDs."""

    model_config = ConfigDict(extra="allow")

    service_id: str = ""
    plan_id: str = ""
    app_guid: str | None = None
    bind_resource: dict[str, Any] | None = None
    parameters: dict[str, Any] | None = None


class BindResponse(BaseModel):
    credentials: dict[str, Any]


class LastOperationResponse(BaseModel):
    state: str
    description: str | None = None


class ErrorResponse(BaseModel):
    description: str
