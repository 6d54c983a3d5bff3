"""Open Service Broker API v2 endpoints.

Broker errors raised by the lifecycle manager are turned into OSB error
bodies by the exception handlers registered in :mod:`vault_broker.main`.
The two "gone" cases (deprovisioning an unknown instance, unbinding an
unknown binding) are answered here with ``410 {}`` as the OSB API requires.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from vault_broker.catalog import build_catalog
from vault_broker.dependencies import ManagerDep, SettingsDep
from vault_broker.errors import BindingNotFoundError, InstanceNotFoundError
from vault_broker.schemas import BindRequest, BindResponse, LastOperationResponse, ProvisionRequest, UpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v2", tags=["osb"])


@router.get("/catalog")
async def catalog(settings: SettingsDep) -> dict[str, Any]:
    logger.info("Listing services")
    return build_catalog(settings).model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Service instances
# ---------------------------------------------------------------------------


@router.put("/service_instances/{instance_id}")
async def provision(instance_id: str, body: ProvisionRequest, manager: ManagerDep) -> JSONResponse:
    """Provision a tenant: ``201`` when new, ``200`` when an identical one exists."""
    created = await manager.provision(instance_id, body.organization_guid, body.space_guid)
    return JSONResponse(status_code=201 if created else 200, content={})


@router.patch("/service_instances/{instance_id}")
async def update(instance_id: str, body: UpdateRequest, manager: ManagerDep) -> dict[str, Any]:
    await manager.update(instance_id)
    return {}


@router.delete("/service_instances/{instance_id}")
async def deprovision(instance_id: str, manager: ManagerDep) -> JSONResponse:
    try:
        await manager.deprovision(instance_id)
    except InstanceNotFoundError:
        return JSONResponse(status_code=410, content={})
    return JSONResponse(status_code=200, content={})


@router.get("/service_instances/{instance_id}/last_operation", response_model_exclude_none=True)
async def last_operation(instance_id: str, manager: ManagerDep) -> LastOperationResponse:
    return LastOperationResponse(state=manager.last_operation(instance_id))


# ---------------------------------------------------------------------------
# Service bindings
# ---------------------------------------------------------------------------


@router.put("/service_instances/{instance_id}/service_bindings/{binding_id}")
async def bind(instance_id: str, binding_id: str, body: BindRequest, manager: ManagerDep) -> JSONResponse:
    """Issue credentials: ``201`` for a new binding, ``200`` for an existing one."""
    result = await manager.bind(instance_id, binding_id)
    return JSONResponse(
        status_code=201 if result.created else 200,
        content=BindResponse(credentials=result.credentials).model_dump(),
    )


@router.delete("/service_instances/{instance_id}/service_bindings/{binding_id}")
async def unbind(instance_id: str, binding_id: str, manager: ManagerDep) -> JSONResponse:
    try:
        await manager.unbind(instance_id, binding_id)
    except BindingNotFoundError:
        return JSONResponse(status_code=410, content={})
    return JSONResponse(status_code=200, content={})
