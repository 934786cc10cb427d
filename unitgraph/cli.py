"""Typer-based CLI for UnitGraph."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.syntax import Syntax
from rich.table import Table

from . import __version__, config, config_manager
from .clusterer import cluster_units
from .commands import DIRECTIONS, CommandDispatcher
from .errors import UnitGraphError
from .ingest import ingest_file
from .loader import resolve_dependencies, topological_sort
from .models import IngestProgress
from .storage import UnitStore

console = Console()

app = typer.Typer(
    help="UnitGraph: index source into units, cluster them and run dependency bundles.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

config_app = typer.Typer(help="Show or change settings.", no_args_is_help=True)
app.add_typer(config_app, name="config")


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"UnitGraph v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    db: Path = typer.Option(config.DB_PATH, "--db", help="Path to the unit database."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging."),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """UnitGraph: function-level code graph with on-demand bundle execution."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db": db}


def _open_store(ctx: typer.Context) -> UnitStore:
    return UnitStore(ctx.obj["db"])


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code=1)


def _parse_json(value: Optional[str], label: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{label} must be valid JSON: {exc}")


@app.command("ingest")
def ingest(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Source file to index."),
    source_name: Optional[str] = typer.Option(None, "--source", "-s", help="Provenance tag (defaults to the file name)."),
    reset: bool = typer.Option(False, "--reset", help="Clear the store before ingesting."),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Worker processes."),
    chunk_lines: Optional[int] = typer.Option(None, "--chunk-lines", min=1, help="Lines per worker chunk."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds before a stalled worker aborts the run."),
):
    """Extract units from a source file and merge them into the store."""
    with _open_store(ctx) as store:
        if reset:
            store.clear()
        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total} lines"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task(f"Scanning {path.name}", total=None)

            def _on_progress(update: IngestProgress) -> None:
                progress.update(task, completed=update.processed_lines, total=update.total_lines)

            try:
                result = ingest_file(
                    store,
                    path,
                    original_source=source_name,
                    chunk_lines=chunk_lines,
                    max_workers=workers,
                    timeout=timeout,
                    on_progress=_on_progress,
                )
            except UnitGraphError as exc:
                _fail(exc.message)

    typer.echo(f"Ingested '{path}'.")
    typer.echo(f"Units: {result.units_count} | Edges: {result.dependencies_count}")
    skipped = result.stats.unmatched + result.stats.unnamed
    if skipped:
        typer.echo(f"Skipped candidates: {skipped} (unmatched {result.stats.unmatched}, unnamed {result.stats.unnamed})")


@app.command("cluster")
def cluster(
    ctx: typer.Context,
    max_size: Optional[int] = typer.Option(None, "--max-size", "-m", min=1, help="Cluster size bound in characters."),
):
    """Partition stored units into size-bounded clusters."""
    with _open_store(ctx) as store:
        try:
            result = cluster_units(store, max_size)
        except UnitGraphError as exc:
            _fail(exc.message)
    typer.echo(f"Clusters: {result.clusters} | Units updated: {result.units_updated}")


@app.command("show")
def show(
    ctx: typer.Context,
    unit_id: str = typer.Argument(..., help="Unit id."),
    code: bool = typer.Option(True, "--code/--no-code", help="Print the unit source."),
):
    """Show one unit."""
    with _open_store(ctx) as store:
        unit = store.get_unit(unit_id)
    if unit is None:
        _fail(f"Unit not found: {unit_id}")

    table = Table(show_header=False, box=None)
    table.add_column(style="bold cyan")
    table.add_column()
    table.add_row("Name", unit.name)
    table.add_row("Kind", unit.kind)
    table.add_row("Lines", f"{unit.start_line}-{unit.end_line}")
    table.add_row("Source", unit.original_source)
    table.add_row("Cluster", unit.cluster_id or "-")
    table.add_row("References", ", ".join(unit.static_dependencies) or "-")
    if unit.dynamic_relationships:
        table.add_row("Runtime calls", ", ".join(
            f"{r.target_id} x{r.frequency}" for r in unit.dynamic_relationships
        ))
    if unit.metadata.get("description"):
        table.add_row("Description", unit.metadata["description"])
    console.print(table)
    if code:
        console.print(Syntax(unit.code, "javascript", line_numbers=True, start_line=unit.start_line))


@app.command("cluster-show")
def cluster_show(
    ctx: typer.Context,
    cluster_id: Optional[str] = typer.Argument(None, help="Cluster id; omit to list all clusters."),
):
    """List clusters, or the units of one cluster."""
    with _open_store(ctx) as store:
        if cluster_id is None:
            clusters = store.list_clusters()
            if not clusters:
                typer.echo("No clusters yet. Run 'ug cluster' first.")
                raise typer.Exit(code=0)
            table = Table(title="Clusters")
            table.add_column("Id", style="cyan")
            table.add_column("Name")
            table.add_column("Units", justify="right")
            table.add_column("Size", justify="right")
            for c in clusters:
                size = f"[red]{c.total_size}[/red]" if c.oversized else str(c.total_size)
                table.add_row(c.id, c.name, str(len(c.unit_ids)), f"{size}/{c.max_size}")
            console.print(table)
            return
        units = store.get_units_by_cluster(cluster_id)

    if not units:
        _fail(f"No units found in cluster: {cluster_id}")
    table = Table(title=f"Cluster {cluster_id}")
    table.add_column("Id", style="cyan")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    for unit in units:
        table.add_row(unit.id, unit.kind, str(unit.code_size))
    console.print(table)


@app.command("deps")
def deps(
    ctx: typer.Context,
    unit_id: str = typer.Argument(..., help="Unit id."),
    direction: str = typer.Option("both", "--direction", "-d", help="outgoing, incoming or both."),
):
    """Show static and runtime dependencies of a unit."""
    if direction not in DIRECTIONS:
        raise typer.BadParameter(f"direction must be one of: {', '.join(DIRECTIONS)}")
    with _open_store(ctx) as store:
        response = CommandDispatcher(store).handle(
            {"command": "getDependencies", "id": unit_id, "direction": direction}
        )
    if not response["success"]:
        _fail(response["error"])

    for side, payload in response["dependencies"].items():
        console.print(f"[bold]{side.capitalize()}[/bold]")
        static = payload["static"]
        typer.echo(f"  static:  {', '.join(static) if static else 'none'}")
        dynamic = payload["dynamic"]
        if dynamic:
            key = "target_id" if side == "outgoing" else "source_id"
            typer.echo("  runtime: " + ", ".join(f"{d[key]} x{d['frequency']}" for d in dynamic))
        else:
            typer.echo("  runtime: none")


@app.command("find")
def find(
    ctx: typer.Context,
    query: Optional[str] = typer.Argument(None, help="Plain text matched against names and code."),
    filters: List[str] = typer.Option([], "--filter", "-f", help="Structured filter KEY=VALUE (repeatable)."),
):
    """Find units by text or structured filters."""
    if query and filters:
        raise typer.BadParameter("Use either a text query or --filter options, not both.")
    request_query: Any = query
    if filters:
        structured: Dict[str, str] = {}
        for item in filters:
            key, sep, value = item.partition("=")
            if not sep:
                raise typer.BadParameter(f"Filter must look like KEY=VALUE: {item}")
            structured[key.strip()] = value.strip()
        request_query = structured

    with _open_store(ctx) as store:
        response = CommandDispatcher(store).handle({"command": "findUnits", "query": request_query})
    if not response["success"]:
        _fail(response["error"])

    if not response["units"]:
        typer.echo("No matching units.")
        raise typer.Exit(code=0)
    table = Table(title=f"{response['count']} unit(s)")
    table.add_column("Id", style="cyan")
    table.add_column("Kind")
    table.add_column("Cluster")
    for unit in response["units"]:
        table.add_row(unit["id"], unit["kind"], unit["cluster_id"] or "-")
    console.print(table)


@app.command("order")
def order(
    ctx: typer.Context,
    entry_ids: List[str] = typer.Argument(..., help="Entry unit ids."),
):
    """Print the load order of the bundle needed by the entry units."""
    with _open_store(ctx) as store:
        try:
            required = resolve_dependencies(store, entry_ids)
            plan = topological_sort(store, required)
        except UnitGraphError as exc:
            _fail(exc.message)
    for position, unit_id in enumerate(plan.order, 1):
        typer.echo(f"{position:>3}. {unit_id}")
    for cycle in plan.cycles:
        console.print(f"[yellow]Cycle:[/yellow] {' -> '.join(cycle + [cycle[0]])}")


@app.command("run")
def run(
    ctx: typer.Context,
    entry_id: str = typer.Argument(..., help="Entry unit id."),
    args: Optional[str] = typer.Option(None, "--args", "-a", help="JSON value bound to 'args' in the bundle."),
    expression: Optional[str] = typer.Option(None, "--eval", "-e", help="Expression to evaluate instead of calling the entry."),
    invoke: bool = typer.Option(True, "--invoke/--no-invoke", help="Call the entry unit with args."),
):
    """Assemble and execute the bundle for one entry unit."""
    request: Dict[str, Any] = {
        "command": "previewExecution",
        "entryPointId": entry_id,
        "args": _parse_json(args, "--args"),
        "invoke": expression if expression else invoke,
    }
    with _open_store(ctx) as store:
        response = CommandDispatcher(store).handle(request)

    for entry in response.get("logs", []):
        console.print(f"[dim]console.{entry['type']}:[/dim] {' '.join(entry['args'])}")
    if not response["success"]:
        error = response["error"]
        if isinstance(error, dict):
            console.print(f"[red]{error['code']}:[/red] {error['message']}")
            if error.get("stack"):
                console.print(f"[dim]{error['stack']}[/dim]")
            raise typer.Exit(code=1)
        _fail(error)
    typer.echo(json.dumps(response["result"]))


@config_app.command("show")
def config_show():
    """Show effective settings."""
    settings = config_manager.load_settings()
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_column("Default", style="dim")
    for key, default in config_manager.DEFAULT_SETTINGS.items():
        table.add_row(key, str(settings[key]), str(default))
    console.print(table)
    console.print(f"[dim]Config file: {config_manager.CONFIG_FILE}[/dim]")


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Setting name."),
    value: str = typer.Argument(..., help="New value ('none' clears optional limits)."),
):
    """Persist one setting."""
    try:
        saved = config_manager.save_setting(key, value)
    except KeyError:
        _fail(f"Unknown setting '{key}'. Known: {', '.join(config_manager.DEFAULT_SETTINGS)}")
    except ValueError as exc:
        _fail(f"Invalid value for '{key}': {exc}")
    if not saved:
        _fail(f"Could not write {config_manager.CONFIG_FILE}")
    typer.echo(f"Set {key} = {value}")


if __name__ == "__main__":
    app()
