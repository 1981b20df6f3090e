"""Command line interface for crates-dump."""

import logging
import sys
from datetime import datetime
from typing import Optional, Tuple

import click
import duckdb
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import ConfigManager
from .errors import CratesDumpError
from .loader import DB_FRESH, DumpLoader, DumpLoaderBuilder
from .schema import quote_identifier
from . import __version__


def format_timestamp(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def format_size(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.2f} MB"


def report_error(ctx: click.Context, action: str, error: Exception) -> None:
    """Print an error the way every command does and exit with status 1."""
    click.echo(f"Error {action}: {error}", err=True)
    if ctx.obj["verbose"] and error.__cause__ is not None:
        click.echo(f"Details: {error.__cause__!r}", err=True)
    ctx.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "-c", type=click.Path(exists=True), help="Path to configuration file"
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--resource", "-r", help="Dump URL or local .tar.gz path")
@click.option("--target", "-t", type=click.Path(file_okay=False), help="Directory for extracted tables")
@click.option(
    "--table",
    "tables",
    multiple=True,
    help="Table to load (repeatable, default: all dump tables)",
)
@click.option("--minimal", is_flag=True, help="Only load crates, dependencies and versions")
@click.option(
    "--preload/--no-preload",
    default=None,
    help="Materialize CSV views into native tables",
)
@click.option("--offline", is_flag=True, help="Never download, use the cached dump")
@click.pass_context
def cli(
    ctx: click.Context,
    config: Optional[str],
    verbose: bool,
    resource: Optional[str],
    target: Optional[str],
    tables: Tuple[str, ...],
    minimal: bool,
    preload: Optional[bool],
    offline: bool,
):
    """crates-dump - query the crates.io database dump with SQL.

    Downloads the dump, extracts the requested tables and exposes them
    in a local DuckDB database.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = Console()

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )

    try:
        loader_config = ConfigManager(config).config
        builder = DumpLoaderBuilder(loader_config)

        if resource:
            builder.resource(resource)
        if target:
            builder.target_path(target)
        if minimal:
            builder.minimal()
        if tables:
            builder.tables(list(tables))
        if preload is not None:
            builder.preload(preload)
        if offline:
            builder.cache(loader_config.cache.model_copy(update={"offline": True}))

        ctx.obj["loader"] = builder.build()
    except CratesDumpError as e:
        report_error(ctx, "initializing crates-dump", e)


@cli.command()
@click.pass_context
def update(ctx: click.Context):
    """Download the dump if needed and extract the requested tables."""
    console = ctx.obj["console"]
    loader: DumpLoader = ctx.obj["loader"]

    try:
        with console.status("Updating dump..."):
            loader.update()
    except CratesDumpError as e:
        report_error(ctx, "updating dump", e)

    if loader.extracted:
        console.print(f"[green]Extracted {len(loader.extracted)} table(s) into {loader.target_path}[/green]")
    else:
        console.print("[dim]Extracted tables are up to date.[/dim]")


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Rebuild the database even if it is fresh")
@click.option("--no-update", is_flag=True, help="Skip refreshing the extracted tables")
@click.pass_context
def load(ctx: click.Context, force: bool, no_update: bool):
    """Build the database from the extracted tables if it is missing or stale."""
    console = ctx.obj["console"]
    loader: DumpLoader = ctx.obj["loader"]

    try:
        with console.status("Loading dump..."):
            if not no_update:
                loader.update()
            state = loader.database_state()
            conn = loader.open_db(force=force)
            conn.close()
    except CratesDumpError as e:
        report_error(ctx, "loading dump", e)

    if force or state != DB_FRESH:
        console.print(f"[green]Database built at {loader.sqlite_path()}[/green]")
    else:
        console.print(f"[dim]Database {loader.sqlite_path()} is up to date.[/dim]")


@cli.command()
@click.argument("sql")
@click.option("--limit", "-n", type=int, default=50, help="Maximum rows to display (default: 50)")
@click.pass_context
def query(ctx: click.Context, sql: str, limit: int):
    """Run an SQL query against the loaded database."""
    console = ctx.obj["console"]
    loader: DumpLoader = ctx.obj["loader"]

    try:
        conn = loader.open_db()
    except CratesDumpError as e:
        report_error(ctx, "opening database", e)

    try:
        result = conn.execute(sql)
        if result.description is None:
            console.print("[green]OK[/green]")
            return

        columns = [column[0] for column in result.description]
        rows = result.fetchmany(limit)
    except duckdb.Error as e:
        report_error(ctx, "running query", e)
    finally:
        conn.close()

    table = Table(show_header=True, header_style="bold blue")
    for column in columns:
        table.add_column(column, style="cyan" if column == columns[0] else None)
    for row in rows:
        table.add_row(*("NULL" if value is None else str(value) for value in row))

    console.print(table)
    console.print(f"[dim]{len(rows)} row(s)[/dim]")


@cli.command()
@click.pass_context
def tables(ctx: click.Context):
    """List the tables and views in the database."""
    console = ctx.obj["console"]
    loader: DumpLoader = ctx.obj["loader"]

    try:
        conn = loader.open_db()
    except CratesDumpError as e:
        report_error(ctx, "opening database", e)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Name", style="cyan")
    table.add_column("Kind")
    table.add_column("Rows", justify="right")

    try:
        objects = conn.execute(
            """
            SELECT table_name, table_type
            FROM information_schema.tables
            WHERE table_schema = current_schema()
            ORDER BY table_name
            """
        ).fetchall()
        for name, kind in objects:
            count = conn.execute(f"SELECT count(*) FROM {quote_identifier(name)}").fetchone()[0]
            table.add_row(name, "view" if kind == "VIEW" else "table", f"{count:,}")
    except duckdb.Error as e:
        report_error(ctx, "listing tables", e)
    finally:
        conn.close()

    console.print(table)


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show freshness of the cached dump, extracted tables and database."""
    console = ctx.obj["console"]
    loader: DumpLoader = ctx.obj["loader"]

    try:
        info = loader.status()
    except CratesDumpError as e:
        report_error(ctx, "getting status", e)

    console.print("[bold cyan]Dump Status[/bold cyan]")
    console.print()
    console.print(f"[dim]Resource:[/dim] {info['resource']}")
    console.print(f"[dim]Cached archive:[/dim] {info['cached_archive'] or 'not cached'}")
    console.print(f"[dim]Archive time:[/dim] {format_timestamp(info['archive_created_at'])}")
    console.print(f"[dim]Extracted up to date:[/dim] {info['extracted_fresh']}")
    console.print(f"[dim]Database:[/dim] {info['database']} ({info['database_state']})")
    console.print(f"[dim]Preload:[/dim] {info['preload']}")
    console.print()

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Table", style="cyan")
    table.add_column("Extracted")
    table.add_column("Size", justify="right")
    table.add_column("Modified")

    for entry in info["tables"]:
        table.add_row(
            entry["table"],
            "yes" if entry["exists"] else "[red]no[/red]",
            format_size(entry["size_bytes"]) if entry["exists"] else "-",
            format_timestamp(entry["mtime"]),
        )

    console.print(table)


# === Cache management commands ===


@cli.group()
def cache():
    """Cache management commands.

    Manage downloaded dump archives.
    """
    pass


@cache.command("status")
@click.pass_context
def cache_status(ctx: click.Context):
    """Show cached archives."""
    console = ctx.obj["console"]
    loader: DumpLoader = ctx.obj["loader"]

    info = loader.cache.get_cache_info()

    console.print("[bold cyan]Cache Status[/bold cyan]")
    console.print()
    console.print(f"[dim]Directory:[/dim] {info['cache_dir']}")
    console.print(f"[dim]TTL:[/dim] {info['ttl_hours']:g}h")
    console.print(f"[dim]Offline:[/dim] {info['offline']}")
    console.print()

    if not info["entries"]:
        console.print("[dim]No cached archives.[/dim]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Resource", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Cached at")
    table.add_column("Expired")

    for entry in info["entries"]:
        table.add_row(
            entry["resource"],
            format_size(entry["size_bytes"]),
            entry["cached_at"].strftime("%Y-%m-%d %H:%M:%S"),
            "yes" if entry["expired"] else "no",
        )

    console.print(table)


@cache.command("clear")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def cache_clear(ctx: click.Context, yes: bool):
    """Delete all cached archives."""
    loader: DumpLoader = ctx.obj["loader"]

    if not yes:
        if not click.confirm("This will delete all cached archives. Continue?"):
            click.echo("Cancelled.")
            return

    try:
        removed = loader.cache.clear()
    except CratesDumpError as e:
        report_error(ctx, "clearing cache", e)

    click.echo(f"Cache cleared ({removed} file(s) removed).")


def main():
    """Entry point for the CLI application."""
    cli()


if __name__ == "__main__":
    sys.exit(main())
