"""Click CLI with Rich output."""

from __future__ import annotations

import json as json_lib
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import ConfigError, load_config
from .database import cleanup_old_sessions, get_stats, init_db, list_sessions

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    if not verbose:
        logging.getLogger("iocweave").setLevel(logging.INFO)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to a TOML config file.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool):
    """iocweave — Correlate IOCs and actor profiles across threat-intel feeds."""
    _setup_logging(verbose)
    try:
        ctx.obj = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    init_db()


def _build_orchestrator(config):
    from .correlation import CorrelationEngine
    from .feeds import build_collectors
    from .orchestrator import Orchestrator

    collectors = build_collectors(config)
    engine = CorrelationEngine(config.correlation)
    return Orchestrator(collectors, engine=engine, settings=config.correlation)


@cli.command()
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for report files (defaults to the configured output_dir).",
)
@click.option("--no-save", is_flag=True, help="Do not record the run in the session history.")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON.")
@click.pass_obj
def analyze(config, output_dir: Path | None, no_save: bool, as_json: bool):
    """Collect from every active feed, correlate, and write reports."""
    from .database import save_session
    from .reports import report_to_dict, write_all

    orchestrator = _build_orchestrator(config)
    if not orchestrator.collectors:
        raise click.ClickException("No active feeds configured.")

    with err_console.status("Collecting and correlating threat intelligence..."):
        report = orchestrator.execute_full_analysis()

    out_dir = output_dir or config.output_dir
    paths = write_all(report, out_dir, config.correlation.min_confidence_threshold)

    session_id = None
    if not no_save:
        session_id = save_session(report)

    if as_json:
        data = report_to_dict(report)
        data["session_id"] = session_id
        data["report_files"] = {name: str(path) for name, path in paths.items()}
        click.echo(json_lib.dumps(data, indent=2))
        return

    _print_report(report)

    console.print("\n[bold]Reports written:[/bold]")
    for name, path in paths.items():
        console.print(f"  {name}: {path}")
    if session_id:
        console.print(f"[dim]Saved as session {session_id}[/dim]")


def _print_report(report) -> None:
    summary = Table(title="Analysis Results", show_header=False)
    summary.add_column("Metric", style="bold")
    summary.add_column("Value")
    summary.add_row("Processing time", f"{report.processing_time_ms:,}ms")
    summary.add_row("Indicators", f"{report.total_indicators:,}")
    summary.add_row("Threat actors", f"{report.total_threat_actors:,}")
    summary.add_row("Correlations", f"{len(report.correlations):,}")
    summary.add_row("Infrastructure pivots", f"{len(report.infrastructure_pivots):,}")

    if report.indicators_by_type:
        summary.add_section()
        for kind, count in sorted(
            report.indicators_by_type.items(), key=lambda kv: kv[1], reverse=True
        ):
            summary.add_row(f"  {kind}", f"{count:,}")

    if report.indicators_by_source:
        summary.add_section()
        for source, count in sorted(
            report.indicators_by_source.items(), key=lambda kv: kv[1], reverse=True
        ):
            summary.add_row(f"  Source: {source}", f"{count:,}")

    console.print(summary)

    if report.high_confidence_correlations:
        table = Table(
            title="High-Confidence Correlations", show_header=True, header_style="bold"
        )
        table.add_column("Type")
        table.add_column("Description")
        table.add_column("Confidence", justify="right")
        for c in report.high_confidence_correlations[:10]:
            table.add_row(
                c.correlation_type.value, c.description, f"{c.confidence_score:.1%}"
            )
        console.print(table)

    if report.infrastructure_pivots:
        table = Table(
            title="Infrastructure Pivots", show_header=True, header_style="bold"
        )
        table.add_column("Type")
        table.add_column("Infrastructure")
        table.add_column("Actors")
        table.add_column("Confidence", justify="right")
        for p in report.infrastructure_pivots[:10]:
            table.add_row(
                p.pivot_type.value,
                p.shared_infrastructure.value,
                ", ".join(p.threat_actors) or "—",
                f"{p.confidence_score:.1%}",
            )
        console.print(table)

    if report.error_message:
        err_console.print(f"[red bold]Error:[/red bold] {report.error_message}")


@cli.command()
@click.pass_obj
def health(config):
    """Check that every active feed is reachable."""
    orchestrator = _build_orchestrator(config)
    if not orchestrator.collectors:
        console.print("[yellow]No active feeds configured.[/yellow]")
        return

    status = orchestrator.check_health()

    table = Table(title="Feed Health", show_header=True, header_style="bold")
    table.add_column("Feed")
    table.add_column("Status")
    for name, ok in status.items():
        table.add_row(name, "[green]up[/green]" if ok else "[red]down[/red]")
    console.print(table)


@cli.command()
@click.option("--limit", default=20, show_default=True, help="Sessions to show.")
def history(limit: int):
    """List recent analysis sessions."""
    sessions = list_sessions(limit=limit)

    if not sessions:
        console.print(
            "[yellow]No sessions recorded. Run 'iocweave analyze' first.[/yellow]"
        )
        return

    table = Table(title="Analysis Sessions", show_header=True, header_style="bold")
    table.add_column("Session")
    table.add_column("Completed")
    table.add_column("Indicators", justify="right")
    table.add_column("Actors", justify="right")
    table.add_column("Correlations", justify="right")
    table.add_column("Pivots", justify="right")
    table.add_column("Error")

    for s in sessions:
        table.add_row(
            s["session_id"],
            s["completed_at"].strftime("%Y-%m-%d %H:%M"),
            str(s["total_indicators"]),
            str(s["total_actors"]),
            str(s["total_correlations"]),
            str(s["total_pivots"]),
            s["error_message"] or "—",
        )

    console.print(table)


@cli.command()
def stats():
    """Show session database statistics."""
    data = get_stats()

    if data["sessions"] == 0:
        console.print(
            "[yellow]Database is empty. Run 'iocweave analyze' first.[/yellow]"
        )
        return

    table = Table(title="Database Statistics", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")

    table.add_row("Sessions", str(data["sessions"]))
    table.add_row("Stored indicators", str(data["total_indicators"]))
    table.add_row("Last session", data["last_session"])

    if data["by_type"]:
        table.add_section()
        for kind, count in sorted(data["by_type"].items()):
            table.add_row(f"  {kind}", str(count))

    if data["by_source"]:
        table.add_section()
        for source, count in sorted(data["by_source"].items()):
            table.add_row(f"  Source: {source}", str(count))

    console.print(table)


@cli.command()
@click.option("--max-sessions", default=100, show_default=True, help="Sessions to keep.")
@click.option("--max-days", default=30, show_default=True, help="Maximum session age.")
def cleanup(max_sessions: int, max_days: int):
    """Delete old analysis sessions."""
    removed = cleanup_old_sessions(max_sessions=max_sessions, max_days=max_days)
    console.print(f"Removed {removed} session(s).")
