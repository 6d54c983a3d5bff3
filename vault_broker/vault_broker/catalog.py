"""Service catalog advertised to the platform."""

from __future__ import annotations

from vault_broker.config import BrokerSettings
from vault_broker.schemas import Catalog, PlanMetadata, Service, ServiceMetadata, ServicePlan


def plan_id(settings: BrokerSettings) -> str:
    """The single plan's ID: ``<service_id>.<plan_name>``."""
    return f"{settings.service_id}.{settings.plan_name}"


def build_catalog(settings: BrokerSettings) -> Catalog:
    """Build the one-service, one-free-plan catalog from *settings*.

    Optional metadata URLs that are unset are omitted from the output.
    """
    plan = ServicePlan(
        id=plan_id(settings),
        name=settings.plan_name,
        description=settings.plan_description,
        free=True,
        metadata=PlanMetadata(
            displayName=settings.plan_metadata_name,
            bullets=list(settings.plan_bullets),
        ),
    )
    service = Service(
        id=settings.service_id,
        name=settings.service_name,
        description=settings.service_description,
        bindable=True,
        tags=list(settings.service_tags),
        plan_updateable=False,
        plans=[plan],
        metadata=ServiceMetadata(
            displayName=settings.display_name,
            imageUrl=settings.image_url or None,
            longDescription=settings.long_description or None,
            providerDisplayName=settings.provider_display_name or None,
            documentationUrl=settings.documentation_url or None,
            supportUrl=settings.support_url or None,
        ),
    )
    return Catalog(services=[service])
