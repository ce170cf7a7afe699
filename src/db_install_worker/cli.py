"""Typer CLI for the install worker."""

from __future__ import annotations

from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from db_install_worker.config.loader import load_worker_config
from db_install_worker.config.models import WorkerConfig
from db_install_worker.logging_config import configure_logging
from db_install_worker.observability.health import Status, check_worker_health
from db_install_worker.provisioning.errors import ProvisioningError
from db_install_worker.provisioning.playbooks import PLAYBOOKS, DBType
from db_install_worker.provisioning.validator import parse_request

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="db-install-worker", help="Database install worker CLI")

ConfigOption = typer.Option(None, "--config", "-c", help="Worker config YAML")


def _load(config_path: str | None) -> WorkerConfig:
    if config_path is not None and not Path(config_path).exists():
        console.print(f"[red]Config file not found: {config_path}[/red]")
        raise typer.Exit(1)
    try:
        return load_worker_config(config_path)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid config:[/red] {exc}")
        raise typer.Exit(1) from exc


@app.command()
def run(config_path: str | None = ConfigOption) -> None:
    """Consume install requests until SIGINT/SIGTERM."""
    from db_install_worker.service.worker import BrokerUnavailableError, Worker

    config = _load(config_path)
    configure_logging(config.log_level, json_output=config.log_json)
    try:
        Worker(config).start()
    except BrokerUnavailableError as exc:
        logger.critical("worker.startup_failed", error=str(exc))
        raise typer.Exit(1) from exc


@app.command()
def validate(config_path: str | None = ConfigOption) -> None:
    """Validate the worker configuration and show the playbook table."""
    config = _load(config_path)
    console.print("[green]Valid[/green]")
    console.print(f"  kafka:     {config.kafka.bootstrap_servers}")
    console.print(f"  group:     {config.kafka.group_id}")
    console.print(f"  requests:  {config.topics.request}")
    console.print(f"  statuses:  {config.topics.status}")
    console.print(f"  command:   {' '.join(config.ansible.command)}")
    console.print(f"  timeout:   {config.ansible.timeout_seconds:g}s")
    console.print(f"  inventory: {config.ansible.inventory_dir}")

    table = Table(title="Playbooks")
    table.add_column("db_type", style="cyan")
    table.add_column("Playbook")
    table.add_column("Present")
    for db_type in DBType:
        path = Path(config.ansible.playbook_dir) / PLAYBOOKS[db_type]
        present = "[green]yes[/green]" if path.is_file() else "[red]no[/red]"
        table.add_row(db_type.value, str(path), present)
    console.print(table)


@app.command()
def health(config_path: str | None = ConfigOption) -> None:
    """Check Kafka, the ansible executable, and the playbook files."""
    config = _load(config_path)
    result = check_worker_health(config)

    table = Table(title="Worker Health")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    for c in result.components:
        style = "green" if c.status == Status.HEALTHY else "red"
        table.add_row(c.name, f"[{style}]{c.status}[/{style}]", c.detail)

    console.print(table)
    if not result.healthy:
        raise typer.Exit(1)


@app.command()
def submit(
    request_path: str = typer.Argument(..., help="Request JSON file"),
    config_path: str | None = ConfigOption,
    skip_validation: bool = typer.Option(
        False, "--skip-validation", help="Publish even if the request is invalid"
    ),
) -> None:
    """Publish an install request to the request topic."""
    from db_install_worker.streaming.producer import create_producer, produce_message

    path = Path(request_path)
    if not path.exists():
        console.print(f"[red]Request file not found: {path}[/red]")
        raise typer.Exit(1)
    raw = path.read_bytes()
    key: bytes | None = None
    if not skip_validation:
        try:
            key = str(parse_request(raw).id).encode()
        except ProvisioningError as exc:
            console.print(f"[red]Invalid request:[/red] {exc}")
            raise typer.Exit(1) from exc

    config = _load(config_path)
    producer = create_producer(config.kafka, client_id="db-install-submit")
    undelivered = produce_message(producer, config.topics.request, raw, key=key)
    if undelivered:
        console.print("[red]Request was not delivered[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Submitted[/green] to {config.topics.request}")
