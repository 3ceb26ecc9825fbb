from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer

from relaysync.config import get_settings
from relaysync.domain.models import ConnectionDescriptor
from relaysync.errors import ConfigurationError, StoreError
from relaysync.infrastructure.repository import PostgresRepository
from relaysync.reporter import print_report
from relaysync.synchronizer import synchronize
from relaysync.utils.logging import configure_logging

app = typer.Typer(help="Synchronize mail relay definitions into Postfix configuration files.")


def _masked(connection: ConnectionDescriptor) -> str:
    port = f":{connection.port}" if connection.port else ""
    return f"{connection.scheme}://{connection.user}:***@{connection.host}{port}/{connection.database}"


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    try:
        store = _masked(ConnectionDescriptor.parse(settings.db_uri))
    except ConfigurationError as exc:
        store = f"<invalid: {exc}>"
    typer.echo(
        f"DB={store} | output={settings.output_dir} hostname={settings.hostname} | "
        f"prerender={settings.prerender_aliases} include_disabled={settings.include_disabled} "
        f"page={settings.page_size} hwm={settings.write_high_water_mark}"
    )


@app.command()
def sync(
    prerender: Optional[bool] = typer.Option(
        None,
        "--prerender/--live",
        help="Pre-render the alias map from the store instead of a live-query map.",
    ),
    include_disabled: Optional[bool] = typer.Option(
        None,
        "--include-disabled/--exclude-disabled",
        help="Keep disabled and soft-deleted relays in a pre-rendered alias map.",
    ),
    output_dir: Optional[Path] = typer.Option(
        None, "--output-dir", "-o", help="Override the Postfix configuration directory."
    ),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Override myhostname."),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    """
    Regenerate main.cf and the lookup maps from the relay store.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.json_logs)
    overrides = {}
    if output_dir is not None:
        overrides["output_dir"] = output_dir
    if hostname is not None:
        overrides["hostname"] = hostname
    if overrides:
        settings = settings.model_copy(update=overrides)

    try:
        report = asyncio.run(
            synchronize(settings, prerender=prerender, include_disabled=include_disabled)
        )
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2)
    except StoreError as exc:
        typer.echo(f"Store error: {exc}", err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(report.as_dict(), indent=2))
    else:
        print_report(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db() -> None:
    """
    Create the users, domains and relays tables if they are missing.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.json_logs)

    async def _run() -> None:
        connection = ConnectionDescriptor.parse(settings.db_uri)
        async with await PostgresRepository.connect(connection) as repository:
            await repository.ensure_schema()

    try:
        asyncio.run(_run())
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=2)
    except StoreError as exc:
        typer.echo(f"Store error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo("Schema ready.")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
