"""CLI for tokensync — serve the API, check configuration, upsert credentials."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click

from tokensync import __version__
from tokensync.config import ConfigError, TokenSyncConfig, load_config
from tokensync.core.logging import configure_logging
from tokensync.reconcile import UpsertResponse, upsert_credential
from tokensync.services import build_services, close_services

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    default="INFO",
    show_default=True,
    help="Root log level.",
)
@click.option(
    "--log-format",
    envvar="LOG_FORMAT",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Log output format.",
)
def cli(log_level: str, log_format: str) -> None:
    """tokensync — OAuth token exchange and credential reconciliation."""
    configure_logging(level=log_level, fmt=log_format.lower())


def _load_or_exit() -> TokenSyncConfig:
    try:
        return load_config()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=int, default=3000, show_default=True, help="Bind port.")
@click.option(
    "--cors-origin",
    "cors_origins",
    multiple=True,
    help="Allowed CORS origin (repeatable).",
)
def serve(host: str, port: int, cors_origins: tuple[str, ...]) -> None:
    """Run the HTTP API (token upsert and OAuth endpoints)."""
    import uvicorn

    from tokensync.api.app import create_app

    # Fail fast on bad configuration instead of inside the lifespan handler.
    _load_or_exit()

    app = create_app(cors_origins=list(cors_origins))
    config = uvicorn.Config(app, host=host, port=port, log_config=None)
    click.echo(f"tokensync listening on http://{host}:{port}")
    uvicorn.Server(config).run()


@cli.command("check-config")
def check_config() -> None:
    """Validate the environment configuration and print a summary."""
    config = _load_or_exit()

    click.echo(f"{'Document store':<20} {config.store.backend}")
    click.echo(f"{'Tokens collection':<20} {config.store.tokens_collection_id}")
    click.echo(f"{'Identities':<20} {config.store.identities_collection_id or '(disabled)'}")
    if config.provider is not None:
        click.echo(f"{'OAuth provider':<20} {config.provider.name}")
        click.echo(f"{'Redirect URI':<20} {config.provider.redirect_uri}")
    else:
        click.echo(f"{'OAuth provider':<20} (disabled)")
    click.echo(f"{'Dashboard URL':<20} {config.dashboard_url or '(none)'}")


async def _run_upsert(config: TokenSyncConfig, raw: str) -> UpsertResponse:
    services = await build_services(config)
    try:
        return await upsert_credential(services.engine, raw)
    finally:
        await close_services(services)


@cli.command()
@click.argument("payload")
def upsert(payload: str) -> None:
    """Create or update a credential from a JSON PAYLOAD.

    Pass ``-`` to read the payload from stdin.  The structured result is
    printed as JSON; the exit status is non-zero when the upsert failed.
    """
    config = _load_or_exit()
    raw = click.get_text_stream("stdin").read() if payload == "-" else payload

    result = asyncio.run(_run_upsert(config, raw))
    click.echo(json.dumps(result.to_wire()))
    if not result.success:
        sys.exit(1)
