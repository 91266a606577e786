"""Command Line Interface for FHIR-Vault.

Runs the HTTP server and exposes the store's lifecycle and query operations
directly against the configured ledger.

Security Impact:
    - Documents are validated by the same PatientValidator the API uses
    - Database credentials come from the configuration manager, never flags
"""

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from fhir_vault import __version__
from fhir_vault.domain.ports import LedgerPort, ResourceStoreError, StorageError
from fhir_vault.domain.query import gender, primary_family
from fhir_vault.infrastructure.logging_config import setup_logging
from fhir_vault.infrastructure.settings import settings
from fhir_vault.main import create_ledger, create_mutation_engine, create_query_engine

app = typer.Typer(
    name="fhir-vault",
    help="FHIR-Vault: versioned FHIR Patient store",
    add_completion=False
)
console = Console()


@contextmanager
def open_ledger() -> Iterator[LedgerPort]:
    """Create the configured ledger, initialize its schema and close it afterwards."""
    if settings.db_config.db_type == "memory":
        console.print(
            "[yellow]![/yellow] The memory ledger is discarded when this command exits; "
            "set FV_DB_TYPE=duckdb or postgresql to keep changes"
        )
    try:
        ledger = create_ledger(settings.db_config)
    except (ValueError, StorageError) as e:
        console.print(f"[red]✗[/red] Failed to create ledger: {str(e)}")
        raise typer.Exit(code=1)

    try:
        result = ledger.initialize_schema()
        if not result.is_success():
            console.print(f"[red]✗[/red] {result.error}")
            raise typer.Exit(code=1)
        yield ledger
    except ResourceStoreError as e:
        console.print(f"[red]✗[/red] {type(e).__name__}: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        ledger.close()


def parse_params(params: List[str]) -> dict[str, list[str]]:
    """Turn ``KEY=VALUE`` arguments into a parameter mapping (repeats accumulate).

    Raises:
        typer.BadParameter: If an argument has no ``=``
    """
    parsed: dict[str, list[str]] = {}
    for item in params:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{item}'")
        parsed.setdefault(key, []).append(value)
    return parsed


def _load_document(file: Path) -> dict:
    try:
        with open(file, "r") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        console.print(f"[red]✗[/red] {file} is not valid JSON: {str(e)}")
        raise typer.Exit(code=1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: FV_BIND_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default: FV_BIND_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development)"),
) -> None:
    """Run the FHIR HTTP API."""
    setup_logging(use_json=settings.json_logs, log_level=settings.log_level)
    bind_host = host or settings.bind_host
    bind_port = port or settings.bind_port
    console.print(f"[bold blue]FHIR-Vault[/bold blue] listening on http://{bind_host}:{bind_port}/fhir")
    uvicorn.run("fhir_vault.api.main:app", host=bind_host, port=bind_port, reload=reload)


@app.command("init-db")
def init_db() -> None:
    """Create the ledger tables and indexes."""
    with open_ledger():
        console.print(f"[green]✓[/green] Schema ready on {settings.db_config.describe()}")


@app.command()
def info() -> None:
    """Display configuration and backend status."""
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{settings.app_name} {settings.app_version}")
    info_table.add_row("Ledger:", settings.db_config.describe())
    info_table.add_row("Default page size:", str(settings.default_count))
    info_table.add_row("Bind:", f"{settings.bind_host}:{settings.bind_port}")
    info_table.add_row("Log level:", settings.log_level)

    ledger = create_ledger(settings.db_config)
    try:
        reachable = ledger.ping()
    finally:
        ledger.close()
    info_table.add_row("Status:", "[green]reachable[/green]" if reachable.is_success() else f"[red]{reachable.error}[/red]")

    console.print(info_table)


@app.command()
def create(
    file: Path = typer.Argument(..., help="Patient JSON document", exists=True, dir_okay=False),
) -> None:
    """Create a Patient from a JSON file."""
    document = _load_document(file)
    with open_ledger() as ledger:
        resource = create_mutation_engine(ledger).create(document)
    console.print(f"[green]✓[/green] Created Patient/{resource.id} (version {resource.version})")


@app.command()
def update(
    resource_id: str = typer.Argument(..., help="Patient id"),
    file: Path = typer.Argument(..., help="Replacement Patient JSON document", exists=True, dir_okay=False),
    if_match: Optional[int] = typer.Option(None, "--if-match", help="Only update if this is the current version"),
) -> None:
    """Replace a Patient with the contents of a JSON file."""
    document = _load_document(file)
    with open_ledger() as ledger:
        resource = create_mutation_engine(ledger).update(resource_id, document, if_match_version=if_match)
    console.print(f"[green]✓[/green] Updated Patient/{resource.id} to version {resource.version}")


@app.command()
def show(
    resource_id: str = typer.Argument(..., help="Patient id"),
    version: Optional[int] = typer.Option(None, "--version", "-v", help="Show a historical version"),
) -> None:
    """Print a Patient (or one of its versions) as JSON."""
    with open_ledger() as ledger:
        engine = create_query_engine(ledger, settings.default_count)
        if version is None:
            rendered = engine.read(resource_id).to_fhir()
        else:
            rendered = engine.vread(resource_id, version).to_fhir()
    console.print_json(json.dumps(rendered))


@app.command()
def search(
    params: Optional[List[str]] = typer.Argument(None, help="Search parameters as KEY=VALUE"),
    include_deleted: bool = typer.Option(False, "--include-deleted", help="Also list soft-deleted Patients"),
) -> None:
    """Search Patients, e.g. ``fhir-vault search gender=female _sort=-birthdate``."""
    with open_ledger() as ledger:
        result = create_query_engine(ledger, settings.default_count).search(
            parse_params(params or []),
            include_deleted=include_deleted
        )

    table = Table(show_header=True, header_style="bold")
    table.add_column("Id", style="cyan")
    table.add_column("Family")
    table.add_column("Gender")
    table.add_column("Birth date")
    table.add_column("Version", justify="right")
    table.add_column("Last updated")
    for resource in result.items:
        table.add_row(
            resource.id,
            primary_family(resource.document) or "",
            gender(resource.document) or "",
            resource.document.get("birthDate", ""),
            str(resource.version),
            resource.updated_at.isoformat(),
            style="dim" if resource.is_deleted else None,
        )
    console.print(table)
    console.print(f"{len(result.items)} of {result.total} match(es), offset {result.offset}")


@app.command()
def history(
    resource_id: str = typer.Argument(..., help="Patient id"),
    offset: int = typer.Option(0, "--offset", min=0),
    count: Optional[int] = typer.Option(None, "--count", min=0),
) -> None:
    """List every version of a Patient, newest first."""
    with open_ledger() as ledger:
        result = create_query_engine(ledger, settings.default_count).history(resource_id, offset=offset, count=count)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Version", justify="right", style="cyan")
    table.add_column("Recorded at")
    table.add_column("Change")
    for entry in result.items:
        change = "delete" if entry.is_deletion else ("create" if entry.version == 1 else "update")
        table.add_row(str(entry.version), entry.created_at.isoformat(), change)
    console.print(table)
    console.print(f"{len(result.items)} of {result.total} version(s)")


@app.command()
def delete(resource_id: str = typer.Argument(..., help="Patient id")) -> None:
    """Soft-delete a Patient. Its history stays readable."""
    with open_ledger() as ledger:
        version = create_mutation_engine(ledger).delete(resource_id)
    console.print(f"[green]✓[/green] Deleted Patient/{resource_id} (version {version})")


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """FHIR-Vault: versioned FHIR Patient store."""
    if version:
        console.print(f"FHIR-Vault v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
