"""
MLS Replicator - CLI Entry Point

Command-line interface for replicating MLS data into destination stores.

Usage:
    # Sync one source
    mls-replicator sync utahRealEstate

    # Sync selected resources of every source
    mls-replicator sync --all --resource Property --resource Member

    # Find drift and fix it right away
    mls-replicator reconcile utahRealEstate --sync

    # Run the cron schedules
    mls-replicator daemon
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from mls_replicator.batches import BatchStore
from mls_replicator.config import settings
from mls_replicator.config_loader import load_config
from mls_replicator.errors import ReplicatorError
from mls_replicator.sync.orchestrator import ReplicationOrchestrator, RunResult

app = typer.Typer(
    name="mls-replicator",
    help="Replicate MLS (RESO Web API) data into databases and search indexes",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(
    None, "--config", help="User config module (defaults to REPLICATOR_CONFIG_PATH)"
)
ResourceOption = typer.Option(
    None, "--resource", "-r", help="Limit the run to these top-level resources"
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def print_banner() -> None:
    """Print the application banner."""
    console.print(Panel.fit(
        "[bold blue]MLS Replicator[/bold blue]\n"
        "[dim]RESO Web API replication, reconciliation and purge[/dim]",
        border_style="blue",
    ))
    console.print()


def _source_names(config_sources: list[str], source: Optional[str], all_sources: bool) -> list[str]:
    if all_sources:
        return config_sources
    if not source:
        console.print("[red]Error:[/red] Please specify a source name or --all")
        raise typer.Exit(1)
    return [source]


def _run_operation(
    operation: str,
    source: Optional[str],
    all_sources: bool,
    resources: Optional[list[str]],
    config_path: Optional[str],
    then_sync: bool = False,
) -> None:
    print_banner()
    config, invalid = load_config(config_path)
    names = _source_names([s.name for s in config.sources], source, all_sources)

    async def run() -> list[RunResult]:
        results = []
        async with ReplicationOrchestrator(config, invalid) as orchestrator:
            for name in names:
                if name in orchestrator.invalid_sources:
                    console.print(
                        f"[yellow]Skipping {name}: {orchestrator.invalid_sources[name]}[/yellow]"
                    )
                    continue
                console.print(f"[blue]{operation.title()}: {name}[/blue]")
                result = await orchestrator.run(name, operation, resources)
                orchestrator.print_result(result)
                results.append(result)

                if then_sync and result.success:
                    console.print(f"[blue]Sync: {name}[/blue]")
                    result = await orchestrator.run(name, "sync", resources)
                    orchestrator.print_result(result)
                    results.append(result)
        return results

    try:
        results = asyncio.run(run())
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{operation.title()} interrupted by user[/yellow]")
        raise typer.Exit(130)
    except ReplicatorError as e:
        console.print(f"\n[red]{operation.title()} failed: {e}[/red]")
        raise typer.Exit(1)

    if any(not result.success for result in results):
        raise typer.Exit(1)


@app.command()
def sync(
    source: Optional[str] = typer.Argument(None, help="Source name from the config"),
    all_sources: bool = typer.Option(False, "--all", "-a", help="Sync every valid source"),
    resource: Optional[list[str]] = ResourceOption,
    config_path: Optional[str] = ConfigOption,
) -> None:
    """
    Fetch new and changed records and apply them to every destination.

    Leftover batches of an interrupted run are applied first, and ids
    queued by a previous reconcile are fetched along with the changes.

    Examples:

        mls-replicator sync utahRealEstate

        mls-replicator sync --all -r Property
    """
    _run_operation("sync", source, all_sources, resource, config_path)


@app.command()
def purge(
    source: Optional[str] = typer.Argument(None, help="Source name from the config"),
    all_sources: bool = typer.Option(False, "--all", "-a", help="Purge every valid source"),
    resource: Optional[list[str]] = ResourceOption,
    config_path: Optional[str] = ConfigOption,
) -> None:
    """
    Delete records that no longer exist upstream.

    Nothing is deleted when the listing's count disagrees with the
    number of ids received.
    """
    _run_operation("purge", source, all_sources, resource, config_path)


@app.command()
def reconcile(
    source: Optional[str] = typer.Argument(None, help="Source name from the config"),
    all_sources: bool = typer.Option(False, "--all", "-a", help="Reconcile every valid source"),
    resource: Optional[list[str]] = ResourceOption,
    then_sync: bool = typer.Option(
        False, "--sync", "-s", help="Run a sync right away to fetch the ids found"
    ),
    config_path: Optional[str] = ConfigOption,
) -> None:
    """
    Find records missing or outdated in a destination.

    The ids found are fetched by the next sync of the resource. Queued ids
    live in memory, so outside the daemon use --sync.
    """
    _run_operation("reconcile", source, all_sources, resource, config_path, then_sync=then_sync)


@app.command()
def daemon(
    config_path: Optional[str] = ConfigOption,
    metrics_port: int = typer.Option(
        settings.metrics_port, "--metrics-port", help="Port for Prometheus metrics server"
    ),
) -> None:
    """
    Start the scheduler daemon.

    Runs the cron schedules of every valid source and exposes Prometheus
    metrics on /metrics. Use Ctrl+C to stop the daemon gracefully.
    """
    print_banner()
    console.print("[bold]Starting Replication Daemon[/bold]")
    console.print(f"  Config: {config_path or settings.config_path}")
    console.print(f"  Batch directory: {settings.batch_dir}")
    console.print(f"  Metrics server: http://0.0.0.0:{metrics_port}/metrics")
    console.print()

    from mls_replicator.scheduler import run_scheduler

    try:
        asyncio.run(run_scheduler(config_path=config_path, metrics_port=metrics_port))
    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        raise typer.Exit(130)
    except ReplicatorError as e:
        console.print(f"\n[red]Daemon failed: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def status(
    source: Optional[str] = typer.Argument(None, help="Source name (default: all)"),
    config_path: Optional[str] = ConfigOption,
) -> None:
    """
    Show record counts and the newest timestamp per destination.
    """
    print_banner()
    config, invalid = load_config(config_path)

    async def run_status() -> None:
        async with ReplicationOrchestrator(config, invalid) as orchestrator:
            names = [source] if source else orchestrator.source_names
            for name in names:
                rows = await orchestrator.get_status(name)

                table = Table(title=name, show_header=True, header_style="bold")
                table.add_column("Resource", style="cyan")
                table.add_column("Destination")
                table.add_column("Count", justify="right", style="green")
                table.add_column("Most Recent")
                table.add_column("Pending Batches", justify="right")
                for row in rows:
                    table.add_row(
                        row["resource"],
                        row["destination"],
                        f"{row['count']:,}",
                        row["most_recent"].isoformat() if row["most_recent"] else "-",
                        str(row["pending_batches"]),
                    )
                console.print(table)
                console.print()

    console.print("[bold]Configuration:[/bold]")
    console.print(f"  Config: {config_path or settings.config_path}")
    console.print(f"  Batch directory: {settings.batch_dir}")
    console.print()

    try:
        asyncio.run(run_status())
    except ReplicatorError as e:
        console.print(f"[red]Could not read status: {e}[/red]")
        raise typer.Exit(1)


@app.command("validate-config")
def validate_config(config_path: Optional[str] = ConfigOption) -> None:
    """
    Load the user config and check every source.

    Exits non-zero when any source is invalid.
    """
    print_banner()
    try:
        config, invalid = load_config(config_path)
    except ReplicatorError as e:
        console.print(f"[red]Config could not be loaded: {e}[/red]")
        raise typer.Exit(1)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Source", style="cyan")
    table.add_column("Platform")
    table.add_column("Resources")
    table.add_column("Destinations")
    table.add_column("Status")
    for source in config.sources:
        table.add_row(
            source.name,
            source.platform_adapter_name,
            ", ".join(r.name for r in source.all_resources()),
            ", ".join(f"{d.name} ({d.type})" for d in source.destinations),
            f"[red]{invalid[source.name]}[/red]" if source.name in invalid else "[green]OK[/green]",
        )
    console.print(table)

    if invalid:
        raise typer.Exit(1)


@app.command()
def batches(
    source: Optional[str] = typer.Argument(None, help="Source name (default: all)"),
) -> None:
    """
    List batches waiting to be applied.
    """
    print_banner()
    store = BatchStore()
    if source:
        sources = [source]
    elif store.root.is_dir():
        sources = sorted(path.name for path in store.root.iterdir() if path.is_dir())
    else:
        sources = []

    table = Table(show_header=True, header_style="bold")
    table.add_column("Source", style="cyan")
    table.add_column("Resource")
    table.add_column("Type")
    table.add_column("Batch")
    table.add_column("Seq", justify="right")

    total = 0
    for source_name in sources:
        for resource_name in store.list_resources(source_name):
            for batch_file in store.list(source_name, resource_name):
                table.add_row(
                    source_name,
                    resource_name,
                    batch_file.batch_type,
                    batch_file.batch_id,
                    str(batch_file.seq),
                )
                total += 1

    if not total:
        console.print("[green]No pending batches[/green]")
        return
    console.print(table)
    console.print(f"[bold]Pending batches:[/bold] {total:,}")


@app.command("metrics")
def show_metrics() -> None:
    """
    Show current metrics (for debugging without Prometheus).
    """
    print_banner()
    from mls_replicator.metrics import metrics

    console.print("[bold]Current Metrics:[/bold]")
    console.print()

    data = metrics.get_simple_metrics()
    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("HTTP Requests", f"{data['http_requests_total']:,}")
    table.add_row("HTTP Errors", f"{data['http_errors_total']:,}")
    table.add_row("Avg Request Duration", f"{data['http_avg_duration_seconds']:.3f}s")
    table.add_row("Batches Written", f"{data['batches_written_total']:,}")
    table.add_row("Batches Applied", f"{data['batches_applied_total']:,}")
    table.add_row("Records Upserted", f"{data['records_upserted_total']:,}")
    table.add_row("Records Purged", f"{data['records_purged_total']:,}")
    table.add_row("Reconcile IDs", f"{data['reconcile_ids_total']:,}")
    table.add_row("Runs", f"{data['runs_total']:,}")
    table.add_row("Run Errors", f"{data['run_errors_total']:,}")
    table.add_row("Active Runs", f"{data['active_runs']}")
    console.print(table)

    if data["records_by_resource"]:
        console.print()
        console.print("[bold]Records by Resource:[/bold]")
        for resource_name, count in sorted(data["records_by_resource"].items()):
            console.print(f"  {resource_name}: {count:,}")


@app.command("circuit-breakers")
def show_circuit_breakers() -> None:
    """
    Show circuit breaker status for all sources.
    """
    print_banner()
    from mls_replicator.circuit_breaker import circuit_breakers

    statuses = asyncio.run(circuit_breakers.get_all_status())

    if not statuses:
        console.print("[yellow]No circuit breakers active (no requests made yet)[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Source", style="cyan")
    table.add_column("State")
    table.add_column("Failures")
    table.add_column("Successes")
    table.add_column("Timeout")

    for status in statuses:
        state_style = {
            "closed": "green",
            "open": "red",
            "half_open": "yellow",
        }.get(status["state"], "white")
        table.add_row(
            status["name"],
            f"[{state_style}]{status['state']}[/{state_style}]",
            str(status["failure_count"]),
            str(status["success_count"]),
            f"{status['remaining_timeout']:.1f}s" if status["remaining_timeout"] else "-",
        )
    console.print(table)


if __name__ == "__main__":
    app()
