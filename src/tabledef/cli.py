"""
Command-line interface for tabledef.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from functools import wraps
from pathlib import Path
from typing import AsyncIterator, Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import DatabaseConnection, TabledefConfig
from .database.connection import ConnectionPool
from .exceptions import ConfigurationError, TabledefError
from .logging_setup import configure_logging
from .schema.naming import derive_physical_name
from .schema.reconciler import ConsistencyReport, ReconciliationStatus
from .service import TableDefinitionService


console = Console()


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TabledefError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(0)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {e}")
            if "--debug" in sys.argv:
                console.print_exception()
            sys.exit(1)
    return wrapper


def _load_config(path: str, debug: bool = False) -> TabledefConfig:
    config = TabledefConfig.from_yaml(path)
    configure_logging(config.logging, debug=debug or config.debug)
    return config


@asynccontextmanager
async def _open_service(config: TabledefConfig) -> AsyncIterator[TableDefinitionService]:
    pool = ConnectionPool(config.require_database().to_connection_config())
    await pool.initialize()
    try:
        yield TableDefinitionService(pool, config.schema_management)
    finally:
        await pool.close()


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Configuration file path",
)


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """tabledef: user-defined tables backed by real PostgreSQL tables."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="tabledef-config.yaml",
    help="Output configuration file path",
)
@handle_errors
def init(output: str):
    """Initialize a new tabledef configuration file."""
    if Path(output).exists():
        if not click.confirm(f"Configuration file {output} already exists. Overwrite?"):
            return

    _create_default_config().to_yaml(output)
    console.print(f"[green]✓[/green] Configuration file created: {output}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Edit the configuration file with your database details")
    console.print(f"2. Run: tabledef validate-config -c {output}")
    console.print(f"3. Run: tabledef setup -c {output}")


@main.command()
@config_option
@handle_errors
def validate_config(config: str):
    """Validate configuration file."""
    console.print(f"Validating configuration: {config}")

    try:
        tabledef_config = TabledefConfig.from_yaml(config)
        tabledef_config.require_database()
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] Configuration error: {e}")
        sys.exit(1)

    console.print("[green]✓[/green] Configuration is valid")
    _display_config_summary(tabledef_config)


@main.command()
@config_option
@click.pass_context
@handle_errors
def setup(ctx, config: str):
    """Create the metadata schema and tables."""
    tabledef_config = _load_config(config, ctx.obj.get("debug", False))

    async def run_setup():
        async with _open_service(tabledef_config) as service:
            connection = await service.pool.test_connection()
            if connection["status"] != "connected":
                return connection, None
            return connection, await service.metadata.setup_metadata_schema()

    connection, results = asyncio.run(run_setup())
    if results is None:
        console.print(f"[red]✗[/red] Connection failed: {connection['error']}")
        sys.exit(1)

    console.print(
        f"[green]✓[/green] Connected to {connection['database']} as {connection['user']}"
    )
    for table in results["tables_created"]:
        console.print(f"[green]✓[/green] {table}")
    for error in results["errors"]:
        console.print(f"[red]✗[/red] {error}")
    if results["errors"]:
        sys.exit(1)


@main.command("physical-name")
@click.argument("name")
@click.option("--owner", "-o", type=int, required=True, help="Owner id")
def physical_name(name: str, owner: int):
    """Print the physical table name derived from a logical NAME."""
    console.print(derive_physical_name(name, owner))


@main.command()
@config_option
@click.option("--owner", "-o", type=int, default=None, help="Only this owner's tables")
@click.pass_context
@handle_errors
def tables(ctx, config: str, owner: Optional[int]):
    """List physical tables that follow the naming scheme."""
    tabledef_config = _load_config(config, ctx.obj.get("debug", False))

    async def run_listing():
        async with _open_service(tabledef_config) as service:
            return await service.reconciler.list_physical_tables(owner)

    names = asyncio.run(run_listing())
    listing = Table(title="Physical Tables")
    listing.add_column("Table", style="cyan")
    for name in names:
        listing.add_row(name)
    console.print(listing)
    console.print(f"{len(names)} tables")


@main.command()
@config_option
@click.option("--owner", "-o", type=int, required=True, help="Owner id")
@click.pass_context
@handle_errors
def check(ctx, config: str, owner: int):
    """Compare an owner's logical tables with their physical tables."""
    tabledef_config = _load_config(config, ctx.obj.get("debug", False))

    async def run_check():
        async with _open_service(tabledef_config) as service:
            integrity = await service.metadata.check_metadata_integrity()
            if not integrity["is_healthy"]:
                return integrity, [], []
            reports = [
                await service.reconciler.check_table(table)
                for table in await service.metadata.list_tables(owner)
            ]
            orphans = await service.reconciler.find_orphaned_tables(owner)
            return integrity, reports, orphans

    integrity, reports, orphans = asyncio.run(run_check())
    if not integrity["is_healthy"]:
        if "error" in integrity:
            console.print(f"[red]✗[/red] Metadata check failed: {integrity['error']}")
        for component in integrity.get("missing_components", []):
            console.print(f"[red]✗[/red] Missing metadata {component}")
        console.print(f"Run: tabledef setup -c {config}")
        sys.exit(1)

    _display_reports(reports)
    for orphan in orphans:
        console.print(f"[yellow]Orphaned physical table:[/yellow] {orphan}")

    if orphans or any(not r.is_consistent for r in reports):
        sys.exit(1)
    console.print("[green]✓[/green] All tables are consistent")


@main.command()
@config_option
@click.option("--owner", "-o", type=int, required=True, help="Owner id")
@click.option("--no-recreate", is_flag=True, help="Do not recreate missing physical tables")
@click.option("--drop-orphans", is_flag=True, help="Drop physical tables without a logical table")
@click.option("--dry-run", is_flag=True, help="Show the DDL without executing it")
@click.pass_context
@handle_errors
def reconcile(ctx, config: str, owner: int, no_recreate: bool, drop_orphans: bool, dry_run: bool):
    """Repair an owner's physical tables from the metadata store."""
    tabledef_config = _load_config(config, ctx.obj.get("debug", False))
    if dry_run:
        tabledef_config.schema_management.mode = "dry_run"

    async def run_reconcile():
        async with _open_service(tabledef_config) as service:
            return await service.reconciler.reconcile_owner(
                owner, recreate_missing=not no_recreate, drop_orphans=drop_orphans
            )

    result = asyncio.run(run_reconcile())
    _display_reports(result.reports)

    prefix = "Would recreate" if dry_run else "Recreated"
    for name in result.recreated_tables:
        console.print(f"[green]{prefix}:[/green] {name}")
    prefix = "Would drop" if dry_run else "Dropped"
    for name in result.dropped_tables:
        console.print(f"[green]{prefix}:[/green] {name}")
    for name in result.orphaned_tables:
        if name not in result.dropped_tables:
            console.print(f"[yellow]Orphaned:[/yellow] {name}")
    for error in result.errors:
        console.print(f"[red]✗[/red] {error}")

    console.print(f"Status: {result.status.value}")
    if result.status == ReconciliationStatus.FAILED:
        sys.exit(1)


def _create_default_config() -> TabledefConfig:
    """Create a default configuration with environment placeholders."""
    return TabledefConfig(
        database=DatabaseConnection(
            host="${POSTGRES_HOST}",
            port=5432,
            database="${POSTGRES_DB}",
            user="${POSTGRES_USER}",
            password="${POSTGRES_PASSWORD}",
        ),
    )


def _display_config_summary(config: TabledefConfig):
    """Display a summary of the configuration."""
    summary = Table(title="Configuration Summary")
    summary.add_column("Setting", style="cyan")
    summary.add_column("Value", style="green")

    db = config.database
    summary.add_row("Database", f"{db.host}:{db.port}/{db.database}")
    summary.add_row("Mode", config.schema_management.mode)
    summary.add_row("Physical schema", config.schema_management.physical_schema)
    summary.add_row("Metadata schema", config.schema_management.metadata_schema)
    summary.add_row("Log level", config.logging.level)
    console.print(summary)


def _display_reports(reports):
    report_table = Table(title="Consistency")
    report_table.add_column("Logical", style="cyan")
    report_table.add_column("Physical", style="magenta")
    report_table.add_column("Status", style="green")
    report_table.add_column("Details", style="yellow")

    for report in reports:
        report_table.add_row(
            report.logical_name,
            report.physical_name,
            "ok" if report.is_consistent else ("missing" if not report.exists else "drift"),
            _report_details(report),
        )
    console.print(report_table)


def _report_details(report: ConsistencyReport) -> str:
    details = []
    if report.missing_columns:
        details.append("missing: " + ", ".join(report.missing_columns))
    if report.unexpected_columns:
        details.append("unexpected: " + ", ".join(report.unexpected_columns))
    for column, (expected, actual) in report.type_mismatches.items():
        details.append(f"{column}: {expected} != {actual}")
    if report.nullability_mismatches:
        details.append("nullability: " + ", ".join(report.nullability_mismatches))
    return "; ".join(details)


if __name__ == "__main__":
    main()
