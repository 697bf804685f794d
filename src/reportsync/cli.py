"""Operator CLI for inspecting and managing the offline report queue."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from .config import ConfigurationManager, SyncConfig
from .connectivity import ManualConnectivity
from .exceptions import (
    ConfigurationError,
    ImportValidationError,
    ItemNotFoundError,
    QueueStoreError,
)
from .models import ItemStatus, QueueItem
from .service import OfflineQueueService
from .transport import HttpIngestionTransport

console = Console()
app = typer.Typer(help="Offline report queue management commands")

WorkspaceOption = typer.Option(None, "--workspace", "-w", help="Workspace directory")
ConfigOption = typer.Option(None, "--config", "-c", help="Configuration file (YAML)")
FormatOption = typer.Option("table", "--format", help="Output format: table, json, or yaml")

STATUS_STYLES = {
    ItemStatus.PENDING: "yellow",
    ItemStatus.PROCESSING: "blue",
    ItemStatus.FAILED: "red",
    ItemStatus.COMPLETED: "green",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Manage the offline report queue."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(workspace: Optional[Path], config_path: Optional[Path]) -> SyncConfig:
    if config_path is None and workspace is not None:
        config_path = Path(workspace).expanduser() / "config.yaml"
    try:
        config = ConfigurationManager(config_path).load()
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    if workspace is not None:
        config.workspace = Path(workspace).expanduser()
    return config


def _load_service(
    workspace: Optional[Path], config_path: Optional[Path], **kwargs: Any
) -> OfflineQueueService:
    return OfflineQueueService.from_config(_load_config(workspace, config_path), **kwargs)


def _emit(data: Any, format_output: str) -> bool:
    """Print structured output; returns False when a table is wanted."""
    if format_output == "json":
        typer.echo(json.dumps(data, indent=2, default=str))
        return True
    if format_output == "yaml":
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
        return True
    return False


def _require_item(service: OfflineQueueService, item_id: str) -> QueueItem:
    try:
        return service.require_item(item_id)
    except ItemNotFoundError:
        console.print(f"[red]Item not found: {item_id}[/red]")
        raise typer.Exit(1)


def _format_timestamp(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.strftime("%Y-%m-%d %H:%M:%S")


@app.command("stats")
def stats_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
    format_output: str = FormatOption,
) -> None:
    """Show queue counts by status."""
    service = _load_service(workspace, config_path)
    stats = service.get_queue_stats()

    if _emit(stats.to_dict(), format_output):
        return

    table = Table(title="Offline Queue")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    for name, value in stats.to_dict().items():
        table.add_row(name.replace("_", " ").title(), str(value))
    console.print(table)


@app.command("list")
def list_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
    status: Optional[ItemStatus] = typer.Option(None, "--status", "-s", help="Only show items in this status"),
    format_output: str = FormatOption,
) -> None:
    """List queued reports, oldest first."""
    service = _load_service(workspace, config_path)
    items = service.get_queue()
    if status is not None:
        items = [item for item in items if item.status == status]

    if _emit([item.to_record() for item in items], format_output):
        return

    if not items:
        console.print("[green]Offline queue is empty[/green]")
        return

    table = Table(title=f"Queued Reports ({len(items)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Created")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Last Error", style="red")
    for item in items:
        style = STATUS_STYLES[item.status]
        table.add_row(
            item.id,
            _format_timestamp(item.created_at),
            f"[{style}]{item.status.value}[/{style}]",
            str(item.retry_count),
            (item.last_error or "")[:60],
        )
    console.print(table)


@app.command("health")
def health_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
    format_output: str = FormatOption,
) -> None:
    """Check queue health against the configured thresholds."""
    service = _load_service(workspace, config_path)
    report = service.get_health()

    if _emit(report, format_output):
        return

    overall = report["status"]
    style = "green" if overall == "healthy" else "yellow"
    console.print(f"\n[{style}]Overall Status: {overall.upper()}[/{style}]\n")
    if report["issues"]:
        for issue in report["issues"]:
            console.print(f"  [yellow]⚠ {issue}[/yellow]")
    else:
        console.print("  [green]✓ No issues detected[/green]")


@app.command("retry-failed")
def retry_failed_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reset failed reports to pending with a fresh retry budget."""
    service = _load_service(workspace, config_path)
    count = service.retry_failed_items()
    console.print(f"[green]Reset {count} failed item(s) for retry[/green]")


@app.command("retry")
def retry_command(
    item_id: str = typer.Argument(..., help="Queue item id"),
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reset a single failed report to pending."""
    service = _load_service(workspace, config_path)
    item = _require_item(service, item_id)
    if not service.retry_item(item_id):
        console.print(f"[red]Cannot retry item in status '{item.status.value}'[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Queued {item_id} for retry[/green]")


@app.command("clear-failed")
def clear_failed_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every failed report from the queue."""
    service = _load_service(workspace, config_path)
    failed = service.get_queue_stats().failed
    if failed == 0:
        console.print("[green]No failed items to clear[/green]")
        return
    if not yes and not typer.confirm(f"Delete {failed} failed item(s)?"):
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit(1)
    count = service.clear_failed_items()
    console.print(f"[green]Cleared {count} failed item(s)[/green]")


@app.command("remove")
def remove_command(
    item_id: str = typer.Argument(..., help="Queue item id"),
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Delete a single pending or failed report."""
    service = _load_service(workspace, config_path)
    item = _require_item(service, item_id)
    if not service.remove_from_queue(item_id):
        console.print(f"[red]Cannot remove item in status '{item.status.value}'[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Removed {item_id}[/green]")


@app.command("add")
def add_command(
    payload: str = typer.Argument(..., help="Report payload as a JSON object"),
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Queue a report for later delivery."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON payload: {e}[/red]")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        console.print("[red]Payload must be a JSON object[/red]")
        raise typer.Exit(1)

    service = _load_service(workspace, config_path)
    try:
        item_id = service.add_to_queue(data)
    except QueueStoreError as e:
        console.print(f"[red]Failed to queue report: {e}[/red]")
        raise typer.Exit(1)
    typer.echo(item_id)


@app.command("export")
def export_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
) -> None:
    """Export the queue as versioned JSON."""
    service = _load_service(workspace, config_path)
    data = service.export_queue()
    if output is None:
        typer.echo(data)
        return
    output.write_text(data, encoding="utf-8")
    console.print(f"[green]Exported {len(service.get_queue())} item(s) to {output}[/green]")


@app.command("import")
def import_command(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Exported queue file"),
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Merge an exported queue file into the queue."""
    service = _load_service(workspace, config_path)
    try:
        added = service.import_queue(source.read_bytes())
    except ImportValidationError as e:
        console.print(f"[red]Import failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Imported {added} item(s)[/green]")


@app.command("sync")
def sync_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
    url: Optional[str] = typer.Option(None, "--url", help="Ingestion service base URL (overrides config)"),
    format_output: str = FormatOption,
) -> None:
    """Run one sync pass against the ingestion service."""
    config = _load_config(workspace, config_path)
    base_url = url or config.transport.base_url
    if not base_url:
        console.print("[red]No ingestion service URL configured (use --url)[/red]")
        raise typer.Exit(1)

    transport = HttpIngestionTransport(
        base_url,
        timeout_seconds=config.transport.timeout_seconds,
        headers=config.transport.headers,
    )
    # An explicit sync request is attempted regardless of the probe
    service = OfflineQueueService.from_config(
        config, transport=transport, connectivity=ManualConnectivity(online=True)
    )

    async def _run() -> Dict[str, Any]:
        try:
            report = await service.run_pass()
        finally:
            await transport.aclose()
        return report.to_dict()

    report = asyncio.run(_run())

    if _emit(report, format_output):
        return

    style = "green" if report["failed"] == 0 else "yellow"
    console.print(
        f"[{style}]Attempted {report['attempted']}, delivered {report['succeeded']}, "
        f"failed {report['failed']}[/{style}]"
    )
    if report["attachment_failures"]:
        console.print(f"[yellow]{report['attachment_failures']} attachment upload(s) failed[/yellow]")
    if report["error"]:
        console.print(f"[red]Pass aborted: {report['error']}[/red]")
        raise typer.Exit(1)


@app.command("run")
def run_command(
    workspace: Optional[Path] = WorkspaceOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Run the background synchronizer until interrupted."""
    config = _load_config(workspace, config_path)
    if not config.transport.base_url:
        console.print("[red]transport.base_url must be configured to run the synchronizer[/red]")
        raise typer.Exit(1)
    service = OfflineQueueService.from_config(config)

    async def _run() -> None:
        await service.start()
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()

    console.print(f"[cyan]Synchronizing {config.storage_path()} -> {config.transport.base_url}[/cyan]")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


__all__ = ["app"]
