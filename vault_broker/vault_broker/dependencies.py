"""FastAPI dependency injection for settings and the lifecycle manager.

Both objects live on ``app.state``: settings are attached when the app is
created, the manager once the lifespan has started it.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from vault_broker.config import BrokerSettings
from vault_broker.errors import BrokerNotReadyError
from vault_broker.lifecycle import LifecycleManager


def get_settings(request: Request) -> BrokerSettings:
    """Return the settings the application was created with."""
    settings: BrokerSettings = request.app.state.settings
    return settings


SettingsDep = Annotated[BrokerSettings, Depends(get_settings)]


def get_manager(request: Request) -> LifecycleManager:
    """Return the running :class:`LifecycleManager`.

    Raises
    ------
    BrokerNotReadyError
        If the lifespan has not (yet) started a manager.
    """
    manager: LifecycleManager | None = getattr(request.app.state, "manager", None)
    if manager is None:
        raise BrokerNotReadyError()
    return manager


ManagerDep = Annotated[LifecycleManager, Depends(get_manager)]
