"""Command-line entry point: ``vault-broker``.

Human-readable status goes to *stderr* via Rich; the ``policy`` and
``catalog`` commands write their artefact to *stdout* so it can be piped.
"""

from __future__ import annotations

import json

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from vault_broker import __version__
from vault_broker.catalog import build_catalog
from vault_broker.config import BrokerSettings, load_settings
from vault_broker.credhub import CredHubError
from vault_broker.policy import generate_policy

app = typer.Typer(
    name="vault-broker",
    help="Open Service Broker for HashiCorp Vault.",
    no_args_is_help=True,
)
console = Console(stderr=True)


def _load_settings_or_exit() -> BrokerSettings:
    try:
        return load_settings()
    except ValidationError as exc:
        for err in exc.errors():
            console.print(f"[red]Configuration error:[/red] {err['msg']}")
        raise typer.Exit(code=2) from exc
    except CredHubError as exc:
        console.print(f"[red]CredHub error:[/red] {exc}")
        raise typer.Exit(code=2) from exc


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Interface to bind (default: HOST or 0.0.0.0)."),
    port: int | None = typer.Option(None, "--port", help="Port to listen on (default: PORT or 8000)."),
) -> None:
    """Run the broker HTTP server."""
    import uvicorn

    from vault_broker.main import configure_logging, create_app

    settings = _load_settings_or_exit()
    configure_logging(settings)
    bind_host = host or settings.host
    bind_port = port or settings.port

    console.print(
        Panel.fit(
            f"vault-broker {__version__}\n"
            f"Listening on http://{bind_host}:{bind_port}\n"
            f"Vault at {settings.vault_addr} (advertised as {settings.vault_advertise_addr})",
            title="Vault Service Broker",
        )
    )

    config = uvicorn.Config(
        create_app(settings),
        host=bind_host,
        port=bind_port,
        log_level=settings.log_level.lower(),
        access_log=False,
        log_config=None,
    )
    uvicorn.Server(config).run()


@app.command()
def policy(
    instance_id: str = typer.Argument(..., help="Service instance ID."),
    space_id: str = typer.Argument(..., help="Space GUID."),
    org_id: str = typer.Argument(..., help="Organization GUID."),
) -> None:
    """Print the ACL policy a service instance would receive."""
    try:
        document = generate_policy(instance_id, space_id, org_id)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=2) from exc
    typer.echo(document, nl=False)


@app.command()
def catalog() -> None:
    """Print the service catalog as JSON."""
    settings = _load_settings_or_exit()
    typer.echo(json.dumps(build_catalog(settings).model_dump(exclude_none=True), indent=2))


@app.command()
def version() -> None:
    """Print the broker version."""
    typer.echo(__version__)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
