"""
Main CLI application using Typer.
"""

import asyncio
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Annotated, List, Optional

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..adapters.booking_repository import SqlBookingRepository
from ..adapters.feed_client import IcalFeedClient
from ..adapters.static_feed_client import StaticFeedClient
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import StaySyncError
from ..domain.exporter import BookingExporter
from ..domain.models import Booking, BookingStatus
from ..domain.normalizer import EventNormalizer
from ..services.feed_sync import FeedSyncService, SyncReport
from ..services.scheduler import FeedScheduler
from ..services.scheduling_store import SchedulingStore
from ..services.scheduling_surface import SchedulingSurface

app = typer.Typer(
    name="staysync",
    help="Synchronise property booking calendars with channel feeds",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]
FeedsDirOption = Annotated[
    Optional[Path],
    typer.Option("--feeds-dir", help="Read feeds from <resource>__<source>.ics files instead of HTTP."),
]

STATUS_STYLES = {
    BookingStatus.CONFIRMED: "green",
    BookingStatus.CONFLICTED: "bold red",
    BookingStatus.CANCELLED: "dim",
}


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging.")] = False,
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _load_config(config_file: Optional[Path]) -> AppConfig:
    config_path = config_file or get_default_config_path()
    return AppConfig.load_from_yaml(config_path)


def _build_store(config: AppConfig) -> SchedulingStore:
    repository = SqlBookingRepository.from_url(config.database_url)
    return SchedulingStore(repository, auto_revert_conflicts=config.auto_revert_conflicts)


def _build_sync_service(
    config: AppConfig,
    store: SchedulingStore,
    feeds_dir: Optional[Path],
) -> FeedSyncService:
    if feeds_dir is not None:
        client = StaticFeedClient.from_directory(feeds_dir)
    else:
        client = IcalFeedClient(
            timeout_seconds=config.sync.timeout_seconds,
            user_agent=config.sync.user_agent,
        )
    return FeedSyncService(
        feed_client=client,
        store=store,
        normalizer=EventNormalizer(timezone=config.timezone),
        timeout_seconds=config.sync.timeout_seconds,
        max_apply_attempts=config.sync.max_apply_attempts,
        skip_past_events=config.sync.skip_past_events,
    )


def _parse_day(value: str, tz: str):
    try:
        return pendulum.from_format(value, "YYYY-MM-DD", tz=tz).date()
    except ValueError as e:
        raise ValueError(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def _fail(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


def _print_reports(reports: List[SyncReport]) -> None:
    table = Table(title="Feed synchronisation", show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="bold yellow")
    table.add_column("Source")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Cancelled", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Warnings", justify="right")
    table.add_column("Status")

    for report in reports:
        status = "[green]ok[/green]" if report.ok else f"[red]{report.error}[/red]"
        table.add_row(
            report.resource_id,
            report.source_id,
            str(report.created),
            str(report.updated),
            str(report.cancelled),
            str(report.flagged),
            str(len(report.warnings)),
            status,
        )

    console.print()
    console.print(table)
    console.print()


def _print_bookings(title: str, bookings: List[Booking]) -> None:
    if not bookings:
        console.print(f"[yellow]{title}: no bookings.[/yellow]")
        return

    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Id", style="dim")
    table.add_column("Resource", style="bold yellow")
    table.add_column("Check-in")
    table.add_column("Check-out")
    table.add_column("Nights", justify="right")
    table.add_column("Origin")
    table.add_column("Status")
    table.add_column("Version", justify="right")
    table.add_column("Summary")

    for booking in bookings:
        style = STATUS_STYLES[booking.status]
        origin = str(booking.origin) + (" (pinned)" if booking.pinned else "")
        table.add_row(
            booking.id,
            booking.resource_id,
            booking.start_date.isoformat(),
            booking.end_date.isoformat(),
            str(booking.range.nights()),
            origin,
            f"[{style}]{booking.status.value}[/{style}]",
            str(booking.version),
            booking.summary,
        )

    console.print()
    console.print(table)
    console.print()


@app.command()
def resources(config_file: ConfigOption = None):
    """
    List configured resources, their feeds and when each was last synced.
    """
    try:
        config = _load_config(config_file)
        last_synced = _build_store(config).last_synced() if config.resources else {}
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    if not config.resources:
        console.print("[yellow]No resources defined in the config file.[/yellow]")
        return

    table = Table(title="Configured resources", show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="bold yellow")
    table.add_column("Name")
    table.add_column("Source")
    table.add_column("Feed URL", style="dim")
    table.add_column("Last sync")

    for resource in config.resources:
        if not resource.feeds:
            table.add_row(resource.id, resource.display_name(), "-", "-", "-")
        for feed in resource.feeds:
            synced_at = last_synced.get(feed.source_id)
            table.add_row(
                resource.id,
                resource.display_name(),
                feed.source_id,
                feed.url,
                _format_synced_at(synced_at, config.timezone),
            )

    console.print()
    console.print(table)
    console.print()


def _format_synced_at(synced_at: Optional[datetime], tz: str) -> str:
    if synced_at is None:
        return "[dim]never[/dim]"
    return pendulum.instance(synced_at).in_timezone(tz).format("YYYY-MM-DD HH:mm")


@app.command()
def export(
    resource: Annotated[str, typer.Argument(help="Resource id")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Write the .ics file here instead of stdout.")] = None,
    local_only: Annotated[bool, typer.Option("--local-only", help="Only export staff bookings.")] = False,
    config_file: ConfigOption = None,
):
    """
    Export the active bookings of a resource as an iCalendar feed.

    Examples:

        staysync export villa-1 -o villa-1.ics
        staysync export villa-1 --local-only
    """
    try:
        config = _load_config(config_file)
        resource_config = config.find_resource(resource)
        if resource_config is None:
            raise ValueError(f"Unknown resource: '{resource}'")

        store = _build_store(config)
        exporter = BookingExporter(
            calendar_name=f"staysync - {resource_config.display_name()}",
            timezone=config.timezone,
        )
        payload = exporter.export(
            store.timeline(resource),
            resource_names={resource_config.id: resource_config.display_name()},
            local_only=local_only,
        )
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    if output is None:
        typer.echo(payload.decode("utf-8"), nl=False)
        return

    output.write_bytes(payload)
    console.print(f"[green]✓ Exported {resource} to {output}[/green]")


@app.command()
def sync(
    resource: Annotated[Optional[str], typer.Argument(help="Only sync the feeds of this resource.")] = None,
    config_file: ConfigOption = None,
    feeds_dir: FeedsDirOption = None,
):
    """
    Fetch every feed once and merge it into the bookings.

    Examples:

        staysync sync
        staysync sync villa-1
        staysync sync --feeds-dir ./feeds
    """
    try:
        config = _load_config(config_file)
        feeds = config.feeds(resource)
        if not feeds:
            console.print("[yellow]No feeds configured.[/yellow]")
            return

        store = _build_store(config)
        service = _build_sync_service(config, store, feeds_dir)
        reports = asyncio.run(service.sync_all(feeds))
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    _print_reports(reports)
    if not all(report.ok for report in reports):
        raise typer.Exit(2)


@app.command()
def watch(
    config_file: ConfigOption = None,
    feeds_dir: FeedsDirOption = None,
):
    """
    Keep every feed in sync on its own schedule until interrupted.
    """
    try:
        config = _load_config(config_file)
        store = _build_store(config)
        service = _build_sync_service(config, store, feeds_dir)
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    scheduler = FeedScheduler(
        sync_service=service,
        feeds=config.feeds(),
        default_interval_seconds=config.sync.interval_seconds,
        on_report=lambda report: console.print(f"  {report.summary()}"),
    )

    async def _run() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await scheduler.run(stop_event)

    console.print(f"[bold cyan]Watching {len(scheduler.feeds)} feed(s). Press Ctrl+C to stop.[/bold cyan]")
    asyncio.run(_run())


@app.command()
def timeline(
    resource: Annotated[str, typer.Argument(help="Resource id")],
    start: Annotated[Optional[str], typer.Option("--start", help="Window start (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Window end, exclusive (YYYY-MM-DD)")] = None,
    include_cancelled: Annotated[bool, typer.Option("--all", help="Include cancelled bookings.")] = False,
    config_file: ConfigOption = None,
):
    """
    Show the bookings of a resource.
    """
    try:
        config = _load_config(config_file)
        window_start = _parse_day(start, config.timezone) if start else None
        window_end = _parse_day(end, config.timezone) if end else None
        store = _build_store(config)
        bookings = store.timeline(
            resource,
            start=window_start,
            end=window_end,
            include_cancelled=include_cancelled,
        )
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    _print_bookings(f"Bookings on {resource}", bookings)


@app.command()
def conflicts(
    resource: Annotated[Optional[str], typer.Argument(help="Resource id")] = None,
    config_file: ConfigOption = None,
):
    """
    List bookings waiting for a staff decision.
    """
    try:
        config = _load_config(config_file)
        store = _build_store(config)
        bookings = store.conflicts(resource)
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    _print_bookings("Conflicted bookings", bookings)


@app.command()
def create(
    resource: Annotated[str, typer.Argument(help="Resource id")],
    start: Annotated[str, typer.Argument(help="Check-in date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Argument(help="Check-out date (YYYY-MM-DD)")],
    summary: Annotated[str, typer.Option("--summary", "-s", help="Guest name or reference")] = "",
    config_file: ConfigOption = None,
):
    """
    Create a staff booking.
    """
    try:
        config = _load_config(config_file)
        store = _build_store(config)
        booking = store.create_local(
            resource,
            _parse_day(start, config.timezone),
            _parse_day(end, config.timezone),
            summary=summary,
        )
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Created booking {booking.id} ({booking.range})[/green]")


@app.command()
def move(
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    resource: Annotated[str, typer.Argument(help="Target resource id")],
    start: Annotated[str, typer.Argument(help="New check-in date (YYYY-MM-DD)")],
    end: Annotated[str, typer.Argument(help="New check-out date (YYYY-MM-DD)")],
    version: Annotated[Optional[int], typer.Option("--version", help="Version you last saw")] = None,
    config_file: ConfigOption = None,
):
    """
    Move a booking to new dates and/or another resource.
    """
    try:
        config = _load_config(config_file)
        surface = SchedulingSurface(_build_store(config))
        result = surface.propose_move(booking_id, resource, start, end, expected_version=version)
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    if result.accepted:
        console.print(
            f"[green]✓ Moved to {result.booking.resource_id} {result.booking.range} "
            f"(version {result.booking.version})[/green]"
        )
        return

    console.print(f"[bold red]Rejected ({result.reason.value}):[/bold red] {result.message}")
    if result.conflicting_booking_id:
        console.print(f"   Conflicting booking: {result.conflicting_booking_id}")
    if result.booking is not None:
        console.print(f"   Current state: {result.booking.resource_id} {result.booking.range} "
                      f"(version {result.booking.version})")
    raise typer.Exit(1)


@app.command()
def cancel(
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    version: Annotated[Optional[int], typer.Option("--version", help="Version you last saw")] = None,
    config_file: ConfigOption = None,
):
    """
    Cancel a booking.
    """
    try:
        config = _load_config(config_file)
        store = _build_store(config)
        expected = version if version is not None else _current_version(store, booking_id)
        store.cancel(booking_id, expected)
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Cancelled booking {booking_id}[/green]")


@app.command()
def accept_override(
    booking_id: Annotated[str, typer.Argument(help="Booking id")],
    version: Annotated[Optional[int], typer.Option("--version", help="Version you last saw")] = None,
    config_file: ConfigOption = None,
):
    """
    Confirm a conflicted booking once its counterpart has been dealt with.
    """
    try:
        config = _load_config(config_file)
        store = _build_store(config)
        expected = version if version is not None else _current_version(store, booking_id)
        booking = store.accept_override(booking_id, expected)
    except (StaySyncError, FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(f"[green]✓ Booking {booking.id} is {booking.status.value}[/green]")


def _current_version(store: SchedulingStore, booking_id: str) -> int:
    booking = store.get(booking_id)
    if booking is None:
        raise ValueError(f"Booking not found: {booking_id}")
    return booking.version


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]staysync[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
