"""FastAPI application entry-point for the Vault service broker.

Run with ``uvicorn --factory vault_broker.main:create_app`` or
``vault-broker serve``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vault_broker import __version__
from vault_broker.config import BrokerSettings, load_settings
from vault_broker.errors import (
    BindingConflictError,
    BindingNotFoundError,
    BrokerError,
    BrokerNotReadyError,
    InstanceConflictError,
    InstanceNotFoundError,
    collapse_newlines,
)
from vault_broker.lifecycle import LifecycleManager
from vault_broker.middleware.auth import BasicAuthMiddleware
from vault_broker.middleware.json_formatter import JSONFormatter
from vault_broker.middleware.logging import RequestLoggingMiddleware
from vault_broker.routers import health, osb
from vault_broker.vault import VaultClient

logger = logging.getLogger(__name__)

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Process setup
# ---------------------------------------------------------------------------


def configure_logging(settings: BrokerSettings) -> None:
    """Install a single stream handler on the root logger.

    Plain text by default; one JSON object per line when
    ``STRUCTURED_LOGGING`` is enabled.
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())
    if settings.structured_logging:
        logger.info("Structured JSON logging enabled")


def build_vault_client(settings: BrokerSettings) -> VaultClient:
    """Create the client the broker uses for every Vault call."""
    return VaultClient(
        settings.vault_addr,
        settings.vault_token.get_secret_value(),
        namespace=settings.vault_namespace or None,
        timeout=settings.vault_timeout,
        verify=settings.vault_verify,
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: BrokerSettings | None = None, vault_client: VaultClient | None = None) -> FastAPI:
    """Construct and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Broker settings.  When omitted they are loaded from the environment
        (and CredHub, if configured) and process logging is configured from
        them; callers that pass settings keep their own logging setup.
    vault_client:
        Client to use instead of building one from *settings*.  A client
        passed in is not closed on shutdown.
    """
    if settings is None:
        settings = load_settings()
        configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the lifecycle manager before serving; stop it on shutdown.

        A failed startup recovery aborts the process: serving requests
        without the recovered state would lose track of live credentials.
        """
        client = vault_client if vault_client is not None else build_vault_client(settings)
        manager = LifecycleManager(client, settings)
        try:
            await manager.start()
        except BaseException:
            if vault_client is None:
                await client.close()
            raise
        app.state.manager = manager
        logger.info("Broker started against %s", settings.vault_addr)

        yield

        app.state.manager = None
        await manager.stop()
        if vault_client is None:
            await client.close()
        logger.info("Broker shutdown complete")

    app = FastAPI(
        title="Vault Service Broker",
        description="Open Service Broker API for HashiCorp Vault.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.manager = None

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(
        BasicAuthMiddleware,
        username=settings.security_user_name,
        password=settings.security_user_password.get_secret_value(),
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(osb.router)
    app.include_router(health.router)

    # -- Exception handlers --------------------------------------------------

    def _error(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"description": collapse_newlines(message)})

    @app.exception_handler(BrokerNotReadyError)
    async def not_ready_handler(request: Request, exc: BrokerNotReadyError) -> JSONResponse:
        return _error(503, exc.message)

    @app.exception_handler(InstanceNotFoundError)
    @app.exception_handler(BindingNotFoundError)
    async def not_found_handler(request: Request, exc: BrokerError) -> JSONResponse:
        return _error(404, exc.message)

    @app.exception_handler(InstanceConflictError)
    @app.exception_handler(BindingConflictError)
    async def conflict_handler(request: Request, exc: BrokerError) -> JSONResponse:
        logger.warning("Conflict on %s: %s", request.url.path, exc)
        return _error(409, exc.message)

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
        return _error(500, exc.message)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(part) for part in err.get("loc", ())) for err in exc.errors())
        return _error(400, f"invalid request: {fields}")

    return app
