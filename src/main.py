"""
Volume Sentinel - Main Entry Point

Replays recorded volume samples through the surveillance engine and
prints what it found:
1. Reads samples from a CSV or JSON Lines file
2. Feeds each one into the baseline tracker and spike detector
3. Prints emitted spikes and a summary

Run with:
    python -m src.main samples.csv

Or for development:
    python -m src.main samples.jsonl --debug --show-alerts
"""

import argparse
import asyncio
import csv
import json
from pathlib import Path
from typing import Iterator, Optional

import pydantic
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .alerts.formatting import format_notification, format_summary
from .alerts.notifications import BoundedNotificationChannel, NotificationType
from .config import Settings, get_settings
from .config_validator import ConfigurationValidator
from .engine import ShardedSurveillanceEngine, VolumeSurveillanceEngine
from .schemas import RollingWindow, SpikeSeverity, VolumeSampleRecord
from .secure_logging import configure_secure_logging, get_secure_logger

logger = get_secure_logger(__name__)
console = Console()


# =============================================================================
# Sample Input
# =============================================================================

def _read_rows(path: Path) -> Iterator[dict]:
    if path.suffix.lower() in (".jsonl", ".ndjson"):
        with path.open(encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if line:
                    yield json.loads(line)
    else:
        with path.open(newline="", encoding="utf-8") as handle:
            for row in csv.DictReader(handle):
                # Empty CSV cells mean "not provided"
                yield {key: value for key, value in row.items() if value not in ("", None)}


def load_samples(path: Path) -> tuple[list[VolumeSampleRecord], int]:
    """
    Parse every row of a replay file.

    Returns:
        Valid records in file order and the number of rejected rows
    """
    records, rejected = [], 0
    for line_number, row in enumerate(_read_rows(path), start=1):
        try:
            records.append(VolumeSampleRecord.model_validate(row))
        except pydantic.ValidationError as e:
            rejected += 1
            logger.warning("replay_row_rejected", row=line_number, errors=e.error_count())
    logger.info("replay_file_loaded", path=str(path), records=len(records), rejected=rejected)
    return records, rejected


# =============================================================================
# Replay
# =============================================================================

def replay(records: list[VolumeSampleRecord], settings: Settings,
           window: Optional[RollingWindow] = None) -> VolumeSurveillanceEngine:
    engine = VolumeSurveillanceEngine(settings)
    engine.ingest_batch(records, window=window)
    return engine


async def replay_sharded(records: list[VolumeSampleRecord], settings: Settings) -> ShardedSurveillanceEngine:
    async with ShardedSurveillanceEngine(settings) as engine:
        for record in records:
            await engine.submit(record.entity_id, record.volume, record.timestamp, record.trade_count)
        await engine.join()
    return engine


# =============================================================================
# CLI Interface
# =============================================================================

def create_spike_table(notifications: list, limit: int = 25) -> Table:
    """Create a rich table listing emitted spikes."""
    table = Table(title="📈 Volume Spikes")
    table.add_column("Time", style="dim")
    table.add_column("Entity", style="cyan")
    table.add_column("Severity")
    table.add_column("Type")
    table.add_column("Volume", justify="right")
    table.add_column("Baseline", justify="right")
    table.add_column("Z", justify="right")

    colors = {
        SpikeSeverity.CRITICAL: "bold red",
        SpikeSeverity.HIGH: "red",
        SpikeSeverity.MEDIUM: "yellow",
        SpikeSeverity.LOW: "blue",
    }

    events = [n.event for n in notifications if n.notification_type == NotificationType.SPIKE_DETECTED]
    for event in events[-limit:]:
        table.add_row(
            f"{event.timestamp:%Y-%m-%d %H:%M:%S}",
            event.entity_id[:24],
            f"[{colors[event.severity]}]{event.severity.value}[/]",
            event.spike_type.value,
            f"{event.current_volume:,.2f}",
            f"{event.baseline_average:,.2f}",
            "n/a" if event.z_score is None else f"{event.z_score:.2f}",
        )
    return table


def create_status_table(stats: dict, rejected_rows: int) -> Table:
    """Create a rich table showing replay statistics."""
    table = Table(title="🛰️ Replay Status")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Rows Rejected", str(rejected_rows))
    for key, value in stats.items():
        table.add_row(key.replace("_", " ").title(), f"{value:,}" if isinstance(value, int) else str(value))
    return table


def run_config_check(settings: Settings) -> int:
    summary = ConfigurationValidator(settings).validate_all()

    table = Table(title="⚙️ Configuration Check")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Message", style="dim")
    for result in summary.results:
        if result.passed:
            status = "[green]✓ pass[/green]"
        elif result.level == "critical":
            status = "[red]✗ critical[/red]"
        else:
            status = "[yellow]! warning[/yellow]"
        table.add_row(result.check_name, status, result.message)
    console.print(table)

    if summary.is_valid:
        console.print("\n[bold green]Configuration is valid.[/bold green]\n")
        return 0
    console.print(f"\n[bold red]{summary.critical_failures} critical problem(s) found.[/bold red]\n")
    return 1


def run_replay(path: Path, window: Optional[RollingWindow], sharded: bool,
               show_alerts: bool) -> int:
    settings = get_settings()
    if not path.exists():
        console.print(f"[red]✗ File not found: {path}[/red]")
        return 1

    records, rejected = load_samples(path)
    if not records:
        console.print("[yellow]No valid samples to replay.[/yellow]")
        return 1

    console.print(Panel.fit(
        f"[bold]Replaying {len(records):,} samples[/bold]\n"
        f"Window: {(window or settings.spike.primary_window).value} | "
        f"Cooldown: {settings.spike.cooldown_ms / 1000:g}s",
        title="🛰️ Volume Sentinel",
    ))

    if sharded:
        engine = asyncio.run(replay_sharded(records, settings))
        channel = engine.sink
        stats = engine.get_stats()
    else:
        engine = replay(records, settings, window)
        channel = engine.sink
        stats = {
            "samples_ingested": engine.get_stats()["samples_ingested"],
            "spikes_emitted": engine.detector.get_stats()["spikes_emitted"],
            "spikes_suppressed": engine.detector.get_stats()["spikes_suppressed"],
            "entities_tracked": len(engine.tracker.get_tracked_entities()),
        }

    notifications = channel.drain() if isinstance(channel, BoundedNotificationChannel) else []

    if show_alerts:
        for notification in notifications:
            if notification.notification_type != NotificationType.SPIKE_ENDED:
                console.print(Panel(format_notification(notification)))

    console.print(create_spike_table(notifications))
    console.print(Panel(format_summary(engine.summary(), settings.spike.frequency_window_minutes)))
    console.print(create_status_table(stats, rejected))
    return 0


def main():
    """Main entry point with argument handling."""
    parser = argparse.ArgumentParser(
        description="Volume Sentinel - rolling baseline volume spike detector"
    )
    parser.add_argument(
        "samples",
        nargs="?",
        type=Path,
        help="CSV or JSON Lines file with entity_id, volume, timestamp, trade_count"
    )
    parser.add_argument(
        "--window", "-w",
        choices=[w.value for w in RollingWindow],
        help="Baseline window (defaults to the configured primary window)"
    )
    parser.add_argument(
        "--sharded",
        action="store_true",
        help="Replay through the sharded asyncio engine"
    )
    parser.add_argument(
        "--show-alerts", "-a",
        action="store_true",
        help="Print every alert message"
    )
    parser.add_argument(
        "--check-config", "-c",
        action="store_true",
        help="Validate configuration and exit"
    )
    parser.add_argument(
        "--debug", "-d",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON"
    )

    args = parser.parse_args()
    settings = get_settings()

    configure_secure_logging(
        log_level="DEBUG" if args.debug else settings.log_level,
        json_format=args.json_logs or settings.log_json_format,
    )

    if args.check_config:
        raise SystemExit(run_config_check(settings))

    if args.samples is None:
        parser.error("a samples file is required unless --check-config is given")

    window = RollingWindow(args.window) if args.window else None
    raise SystemExit(run_replay(args.samples, window, args.sharded, args.show_alerts))


if __name__ == "__main__":
    main()
