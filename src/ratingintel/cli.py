"""CLI entry point using Typer."""

import json
import logging
import signal
import sys
from contextlib import contextmanager

import structlog
import typer
from rich.console import Console
from rich.table import Table

from ratingintel.cancel import CancelToken
from ratingintel.config import settings

app = typer.Typer(
    name="ratingintel",
    help="Rating Intelligence - Analyst rating ingestion and buy-side recommendations.",
)
console = Console()

# Configure structured logging (stderr, so command output stays parseable)
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level.upper(), logging.INFO)),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)


@contextmanager
def _cancel_on_interrupt(cancel: CancelToken):
    """Turn Ctrl-C into a cooperative cancel so the run record is closed."""
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum, frame):
        console.print("\n[yellow]Cancelling...[/yellow]")
        cancel.cancel()

    try:
        signal.signal(signal.SIGINT, handler)
        installed = True
    except ValueError:
        # Not on the main thread; leave SIGINT alone
        installed = False
    try:
        yield cancel
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous)


def _summary_table(title: str, rows: list[tuple[str, object]]) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for metric, value in rows:
        table.add_row(metric, str(value))
    return table


def _print_ingestion(summary) -> None:
    rows = [
        ("Pages", summary.pages),
        ("Fetched", summary.fetched),
        ("Stored", summary.stored),
        ("Duplicates", summary.duplicates),
        ("Rejected", summary.rejected),
        ("Sub-batches", summary.sub_batches),
        ("Failed sub-batches", summary.failed_sub_batches),
    ]
    for reason, count in sorted(summary.rejection_reasons.items()):
        rows.append((f"  rejected: {reason}", count))
    console.print(_summary_table("Ingestion Results", rows))
    for error in summary.errors:
        console.print(f"[yellow]Warning:[/yellow] {error}")


@app.command()
def ingest() -> None:
    """Pull every page of analyst ratings and store new ones."""
    from ratingintel.errors import RatingIntelError, RunFailed
    from ratingintel.jobs import run_ingestion_job

    console.print("[bold blue]Ingesting analyst ratings...[/bold blue]")
    cancel = CancelToken(settings.ingest_timeout_seconds)

    try:
        with _cancel_on_interrupt(cancel):
            summary = run_ingestion_job(cancel)
    except RunFailed as e:
        _print_ingestion(e.summary)
        console.print(f"[bold red]Ingestion {e.summary.status}:[/bold red] {e}")
        raise typer.Exit(1)
    except RatingIntelError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    _print_ingestion(summary)
    console.print(f"[bold green]Ingestion {summary.describe()}[/bold green]")


@app.command()
def enrich(
    tickers: list[str] = typer.Argument(None, help="Tickers to enrich (default: every known ticker)"),
) -> None:
    """Fetch price history and sentiment for tickers."""
    from ratingintel.errors import RatingIntelError, RunFailed
    from ratingintel.jobs import run_enrichment_job

    console.print("[bold blue]Enriching tickers...[/bold blue]")
    cancel = CancelToken(settings.ingest_timeout_seconds)

    try:
        with _cancel_on_interrupt(cancel):
            summary = run_enrichment_job(tickers or None, cancel)
    except RunFailed as e:
        for ticker, error in sorted(e.summary.errors.items()):
            console.print(f"[red]{ticker}:[/red] {error}")
        console.print(f"[bold red]Enrichment {e.summary.status}:[/bold red] {e}")
        raise typer.Exit(1)
    except (RatingIntelError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    for ticker, error in sorted(summary.errors.items()):
        console.print(f"[yellow]{ticker}:[/yellow] {error}")
    console.print(f"[bold green]Enrichment {summary.describe()}[/bold green]")


@app.command()
def recommend(as_json: bool = typer.Option(False, "--json", help="Print recommendations as JSON")) -> None:
    """Show current buy-side recommendations."""
    from ratingintel.jobs import list_recommendations

    try:
        recommendations = list_recommendations()
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps([rec.model_dump(mode="json") for rec in recommendations], indent=2))
        return

    if not recommendations:
        console.print("[yellow]No recommendations right now.[/yellow]")
        return

    table = Table(title="Recommendations")
    table.add_column("Ticker", style="cyan")
    table.add_column("Company", style="white")
    table.add_column("Score", style="green")
    table.add_column("Rating", style="magenta")
    table.add_column("Target", style="green")
    table.add_column("Technical", style="white")
    table.add_column("Sentiment", style="white")
    table.add_column("Rationale", style="white")

    for rec in recommendations:
        table.add_row(
            rec.ticker,
            rec.company,
            f"{rec.score:.2f}",
            rec.latest_rating,
            f"${rec.target_price:.2f}" if rec.target_price is not None else "-",
            rec.technical_signal,
            f"{rec.sentiment_score:.2f}" if rec.sentiment_score is not None else "-",
            rec.rationale,
        )

    console.print(table)


@app.command()
def history(ticker: str = typer.Argument(..., help="Ticker symbol")) -> None:
    """Show every stored rating for one ticker, newest first."""
    from ratingintel.jobs import ticker_history

    try:
        ratings = ticker_history(ticker)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not ratings:
        console.print(f"[yellow]No ratings stored for {ticker.upper()}.[/yellow]")
        return

    table = Table(title=f"Ratings for {ticker.upper()}")
    table.add_column("Time", style="cyan")
    table.add_column("Brokerage", style="white")
    table.add_column("Action", style="magenta")
    table.add_column("Rating", style="green")
    table.add_column("Target", style="green")

    for rating in ratings:
        change = f"{rating.rating_from} -> {rating.rating_to}" if rating.rating_from else rating.rating_to
        target = f"${rating.target_to:.2f}" if rating.target_to is not None else "-"
        when = rating.event_time.isoformat(timespec="minutes")
        table.add_row(when, rating.brokerage, rating.action.value, change, target)

    console.print(table)


@app.command()
def status() -> None:
    """Show stored rating count and recent runs."""
    from ratingintel.jobs import rating_count, recent_runs

    console.print("[bold blue]Rating Intelligence Status[/bold blue]\n")

    try:
        console.print(f"[cyan]Ratings:[/cyan] {rating_count()} stored")

        runs = recent_runs(limit=5)
        if runs:
            console.print("\n[bold]Recent Runs:[/bold]")
            table = Table()
            table.add_column("Type", style="cyan")
            table.add_column("Started", style="white")
            table.add_column("Status", style="white")
            table.add_column("Stored", style="green")
            table.add_column("Error", style="red")

            for run in runs:
                table.add_row(
                    run["run_type"],
                    run["started_at"].isoformat(timespec="seconds"),
                    run["status"],
                    str(run["stats"].get("stored", run["stats"].get("enriched", "-"))),
                    run["error"] or "",
                )

            console.print(table)

    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        console.print("[yellow]Tip:[/yellow] Run 'alembic upgrade head' to set up the database.")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
