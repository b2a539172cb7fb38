"""
Command Line Interface for the SensorTag Report service.
Provides the daemon entry point plus discovery and status commands using
click and rich.
"""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..ble.scanner import ScannerError, SensorTagScanner
from ..influxdb.client import DatabaseInitError, InfluxDBTelemetrySink
from ..service.daemon import run_daemon
from ..utils.config import Config, ConfigurationError
from ..utils.logging import PerformanceMonitor


console = Console()


def _load_config(validate: bool = True) -> Config:
    config = Config()
    if validate:
        try:
            config.validate_configuration()
        except ConfigurationError as e:
            console.print(f"[red]Configuration Error: {e}[/red]")
            sys.exit(1)
    return config


def _print_scan_results(tags: dict, duration: float):
    if not tags:
        console.print("[yellow]No SensorTags found[/yellow]")
        return

    table = Table(title="Discovered SensorTags", show_header=True, header_style="bold green")
    table.add_column("Address", style="cyan")
    table.add_column("Device ID", style="blue")
    table.add_column("Name", style="white")
    table.add_column("RSSI", style="magenta", justify="right")

    for address, (device, advertisement_data) in sorted(tags.items()):
        device_id = address.replace(":", "").replace("-", "").lower()
        name = advertisement_data.local_name or device.name or "-"
        table.add_row(address, device_id, name, f"{advertisement_data.rssi} dBm")

    console.print(table)
    console.print(f"[dim]{len(tags)} SensorTag(s) seen in {duration}s[/dim]")


def _print_configuration(config: Config):
    table = Table(title="Configuration", show_header=True, header_style="bold cyan")
    table.add_column("Section", style="cyan")
    table.add_column("Setting", style="blue")
    table.add_column("Value", style="green")

    for section, settings in config.get_summary().items():
        for key, value in settings.items():
            table.add_row(section.title(), key.replace("_", " "), str(value))

    console.print(table)


@click.group()
@click.version_option(version=__version__, prog_name="sensortag-report")
def cli():
    """SensorTag Report - stream TI SensorTag measurements into InfluxDB."""
    pass


@cli.command()
def run():
    """Run the reporter daemon."""
    asyncio.run(run_daemon())


@cli.command()
@click.option("--duration", "-d", default=10.0, type=float, help="Scan duration in seconds")
def discover(duration):
    """List SensorTags advertising nearby."""
    config = _load_config(validate=False)
    logger = logging.getLogger('sensortag.ble')
    scanner = SensorTagScanner(config, logger, PerformanceMonitor())

    console.print(f"[blue]Scanning for SensorTags for {duration} seconds...[/blue]")
    try:
        tags = asyncio.run(scanner.scan(duration))
    except ScannerError as e:
        console.print(f"[red]Scan failed: {e}[/red]")
        sys.exit(1)

    _print_scan_results(tags, duration)


@cli.command()
def status():
    """Show configuration and check the database."""
    config = _load_config()
    console.print(Panel.fit(f"[bold blue]SensorTag Report[/bold blue] v{__version__}", border_style="blue"))
    _print_configuration(config)

    sink = InfluxDBTelemetrySink(config, logging.getLogger('sensortag.influxdb'), PerformanceMonitor())
    try:
        asyncio.run(sink.ensure_database(config.db_name))
        console.print(f"[green]Database {config.db_name} reachable at {sink.url}[/green]")
    except DatabaseInitError as e:
        console.print(f"[red]Database check failed: {e}[/red]")
        sys.exit(2)
    finally:
        sink.close()


if __name__ == "__main__":
    cli()
