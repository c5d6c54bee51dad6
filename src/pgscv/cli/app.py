"""Typer CLI for the pgscv metrics agent."""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from pgscv.config import PgscvConfig
from pgscv.errors import ConfigError
from pgscv.logging_setup import setup_logging
from pgscv.models.enums import ServiceType

app = typer.Typer(
    name="pgscv",
    help="Metrics agent for PostgreSQL, Pgbouncer, Patroni and the host they run on.",
    no_args_is_help=True,
)
console = Console(stderr=True)

ConfigOption = Annotated[
    Optional[Path], typer.Option("--config", "-c", help="Path to pgscv.toml")
]
LogLevelOption = Annotated[str, typer.Option("--log-level", help="Logging level")]


def _config(path: Path | None) -> PgscvConfig:
    try:
        return PgscvConfig.load(path)
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(1) from exc


def _discover_once(config: PgscvConfig):
    from pgscv.core import health
    from pgscv.core.agent import DiscoveryLoop
    from pgscv.core.repository import ServiceRepository

    repo = ServiceRepository()
    repo.add_system_service(config.project_id)
    if config.services:
        repo.add_services_from_config(config.services, config.project_id, health.check_service)
    loop = DiscoveryLoop(repo, config)
    loop.lookup_services()
    loop.setup_services()
    return repo


@app.command()
def run(
    config_path: ConfigOption = None,
    log_level: LogLevelOption = "INFO",
) -> None:
    """Run the agent: discover services and serve or push their metrics."""
    from pgscv.core.agent import run_agent

    setup_logging(log_level)
    config = _config(config_path)

    stop = threading.Event()

    def _handle(signum, frame):  # noqa: ARG001
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    console.print(f"[dim]Starting pgscv in {config.runtime_mode.value} mode...[/dim]")
    run_agent(config, stop)
    console.print("[dim]Stopped.[/dim]")


@app.command()
def discover(
    config_path: ConfigOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Scan running processes once and list the services found."""
    setup_logging(log_level)
    config = _config(config_path)
    repo = _discover_once(config)

    from rich.table import Table

    table = Table(title="Discovered Services")
    table.add_column("Service ID", style="bold")
    table.add_column("Type")
    table.add_column("Connection")

    for service in sorted(repo.list_services(), key=lambda s: s.service_id):
        target = service.conn.conninfo or service.conn.base_url or "-"
        table.add_row(service.service_id, service.service_type.value, target)
    console.print(table)


@app.command()
def collect(
    config_path: ConfigOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Discover services, run one collection round and print the exposition text."""
    from prometheus_client import CollectorRegistry, generate_latest

    from pgscv.core.agent import Orchestrator

    setup_logging(log_level)
    config = _config(config_path)
    repo = _discover_once(config)

    registry = CollectorRegistry()
    registry.register(Orchestrator(repo))
    typer.echo(generate_latest(registry).decode("utf-8"), nl=False)


@app.command()
def catalog(
    service_type: Annotated[
        Optional[ServiceType], typer.Option("--type", "-t", help="Only this service type")
    ] = None,
) -> None:
    """List the statistic descriptors known to the agent."""
    from rich.table import Table

    from pgscv.core.catalog import global_stat_catalog

    descs = [
        d for d in global_stat_catalog()
        if service_type is None or d.stat_type is service_type
    ]
    if not descs:
        console.print("[dim]No descriptors.[/dim]")
        return

    table = Table(title="Stat Catalog")
    table.add_column("Name", style="bold")
    table.add_column("Type")
    table.add_column("Oneshot")
    table.add_column("Interval", justify="right")
    table.add_column("Metrics", justify="right")

    for d in descs:
        interval = int(d.schedule.interval.total_seconds())
        table.add_row(
            d.name,
            d.stat_type.value,
            "yes" if d.collect_oneshot else "no",
            f"{interval}s" if interval else "-",
            str(len(d.metric_names())),
        )
    console.print(table)


def main() -> None:
    """Entry point for the pgscv CLI."""
    app()


if __name__ == "__main__":
    main()
