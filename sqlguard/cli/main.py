"""Command Line Interface for SQL Guard."""

import csv
import io
import json
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config.settings import get_settings
from ..errors import DatabaseConnectionError, QueryBlockedError, QueryExecutionError
from ..pipeline import ExecutionPipeline, ExecutionResult, get_pipeline

# Initialize CLI app
app = typer.Typer(
    name="sqlguard",
    help="Execute SQL behind a configurable safety policy.",
    add_completion=False
)

# Rich console for beautiful output
console = Console()

MAX_DISPLAY_ROWS = 50


def setup_logging(debug: bool = False) -> None:
    """Set up logging configuration."""
    settings = get_settings()
    level = logging.DEBUG if debug or settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(settings.log_file),
            logging.StreamHandler(sys.stdout) if debug else logging.NullHandler()
        ]
    )


def initialize_pipeline() -> Optional[ExecutionPipeline]:
    """Build the pipeline; configuration errors are reported, not raised."""
    try:
        return get_pipeline()
    except Exception as e:
        console.print(f"[red]Initialization failed: {e}[/red]")
        return None


def display_query_result(result: ExecutionResult, output_format: str = "table") -> None:
    """Display execution results in the specified format."""
    if not result.columns:
        console.print(f"[green]Statement executed. Rows affected: {result.rows_affected}[/green]")
    elif result.row_count == 0:
        console.print("[yellow]No results found.[/yellow]")
    elif output_format.lower() == "json":
        data = [dict(zip(result.columns, row)) for row in result.rows]
        console.print(json.dumps(data, indent=2, default=str))
    elif output_format.lower() == "csv":
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(result.columns)
        writer.writerows(result.rows)
        console.print(output.getvalue())
    else:  # table format (default)
        table = Table(show_header=True, header_style="bold magenta")
        for column in result.columns:
            table.add_column(column)
        for row in result.rows[:MAX_DISPLAY_ROWS]:
            table.add_row(*[str(val) if val is not None else "" for val in row])
        console.print(table)

        if result.row_count > MAX_DISPLAY_ROWS:
            console.print(f"[yellow]Showing first {MAX_DISPLAY_ROWS} of {result.row_count} results[/yellow]")

    console.print(f"[dim]Executed in {result.duration_ms:.1f} ms ({result.classification.query_type.value})[/dim]")


@app.command()
def execute(
    statement: str = typer.Argument(..., help="SQL statement to execute"),
    database: Optional[str] = typer.Option(None, "--database", "-D", help="Target database"),
    output_format: Optional[str] = typer.Option(None, "--format", "-f", help="Output format: table, json, csv"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging")
) -> None:
    """Execute a SQL statement if the security policy allows it."""
    setup_logging(debug)

    pipeline = initialize_pipeline()
    if pipeline is None:
        raise typer.Exit(1)

    try:
        result = pipeline.execute_statement(statement, database)
    except QueryBlockedError as e:
        console.print(Panel(e.message, title="Blocked by security policy", border_style="yellow"))
        raise typer.Exit(2)
    except DatabaseConnectionError as e:
        console.print(f"[red]Cannot reach database: {e.message}[/red]")
        raise typer.Exit(1)
    except QueryExecutionError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    finally:
        pipeline.connection_manager.close()

    display_query_result(result, output_format or pipeline.settings.default_output_format)


@app.command()
def check(
    statement: str = typer.Argument(..., help="SQL statement to classify"),
) -> None:
    """Classify a statement without touching the database."""
    pipeline = initialize_pipeline()
    if pipeline is None:
        raise typer.Exit(1)

    classification = pipeline.classify(statement)
    color = "green" if classification.allowed else "yellow"
    console.print(f"[{color}]{'Allowed' if classification.allowed else 'Blocked'}[/{color}] "
                  f"({classification.query_type.value}, {classification.statement_count} statement(s))")
    console.print(classification.reason)
    if not classification.allowed:
        raise typer.Exit(2)


@app.command()
def stats(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent queries to include"),
) -> None:
    """Show performance statistics collected in this process.

    Metrics live in memory only and are never persisted, so a fresh
    `sqlguard stats` process always reports empty counters. Figures appear
    only when the app is invoked inside a process that already ran statements.
    """
    pipeline = initialize_pipeline()
    if pipeline is None:
        raise typer.Exit(1)

    report = {
        "stats": pipeline.monitor.get_stats(),
        "queries": pipeline.monitor.get_query_stats(limit),
        "pool": pipeline.monitor.get_pool_stats(),
    }
    console.print(json.dumps(report, indent=2, default=str))


@app.command()
def health() -> None:
    """Test the database connection and report pool health."""
    setup_logging(False)

    pipeline = initialize_pipeline()
    if pipeline is None:
        raise typer.Exit(1)

    console.print("Testing database connection...")
    manager = pipeline.connection_manager
    try:
        ok = manager.test_connection()
        pipeline.monitor.record_pool_metrics(manager.pool_stats())
        connection_health = manager.health()
        pool_health = pipeline.monitor.assess_pool_health()
    finally:
        manager.close()

    if ok:
        console.print("[green]✓ Database connection successful![/green]")
    else:
        console.print("[red]✗ Database connection failed![/red]")

    console.print(json.dumps({"connection": connection_health, "pool_health": pool_health.to_dict()},
                             indent=2, default=str))
    if not ok:
        raise typer.Exit(1)


@app.command()
def config() -> None:
    """Show the active configuration with credentials redacted."""
    settings = get_settings()

    table = Table(show_header=True, header_style="bold magenta", title="SQL Guard Configuration")
    table.add_column("Setting")
    table.add_column("Value")
    for key, value in settings.connection_summary().items():
        table.add_row(key, str(value))
    console.print(table)

    for warning in settings.configuration_warnings():
        console.print(f"[yellow]⚠ {warning}[/yellow]")


@app.command()
def version() -> None:
    """Show version information."""
    from .. import __version__
    console.print(f"SQL Guard v{__version__}")


if __name__ == "__main__":
    app()
