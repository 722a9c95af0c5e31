"""Command-line interface for newsdedup."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import click
import structlog
from rich.console import Console
from rich.table import Table

from newsdedup import __version__
from newsdedup.container import DependencyContainer
from newsdedup.exceptions import SourceNotFoundError
from newsdedup.observability import configure_logging, start_metrics_server
from newsdedup.protocols import FeedMetadata, SweepReport

console = Console()

T = TypeVar("T")


def _run(ctx: click.Context, action: Callable[[DependencyContainer], Awaitable[T]]) -> T:
    """Run ``action`` inside a fully initialized container."""

    async def runner() -> T:
        container = DependencyContainer(ctx.obj["config_path"])
        async with container.lifecycle():
            assert container.config is not None
            monitoring = container.config.monitoring
            if ctx.obj["log_level"]:
                monitoring = monitoring.model_copy(update={"log_level": ctx.obj["log_level"]})
            configure_logging(monitoring)
            if monitoring.prometheus_port:
                start_metrics_server(monitoring.prometheus_port)

            structlog.contextvars.bind_contextvars(run_id=str(uuid4()))
            try:
                return await action(container)
            finally:
                structlog.contextvars.clear_contextvars()

    return asyncio.run(runner())


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """newsdedup - duplicate detection for normalized news and RSS sources."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


def _print_sweep_report(report: SweepReport, dry_run: bool) -> None:
    table = Table(title="Duplicate sweep" + (" (dry run)" if dry_run else ""))
    table.add_column("Title", style="cyan", overflow="fold")
    table.add_column("Original", overflow="fold")
    table.add_column("Method", style="magenta")
    table.add_column("Similarity", justify="right")
    table.add_column("Action")
    table.add_column("Collections")

    for detail in report.details:
        table.add_row(
            detail.title,
            detail.original_title or "-",
            detail.method,
            f"{detail.similarity:.2f}",
            detail.action.value,
            ", ".join(detail.collections) or "-",
        )

    console.print(table)
    console.print(
        f"[bold]Found:[/bold] {report.duplicates_found}  "
        f"[bold]Removed:[/bold] {report.duplicates_removed}  "
        f"[bold]Errors:[/bold] {report.errors}"
    )


@cli.command()
@click.option("--apply", "apply_changes", is_flag=True, help="Actually remove duplicates (default is a dry run)")
@click.pass_context
def sweep(ctx: click.Context, apply_changes: bool) -> None:
    """Find duplicates already in the store and optionally remove them."""

    async def action(container: DependencyContainer) -> SweepReport:
        engine = await container.get_sweep_engine()
        return await engine.find_and_remove_duplicates(dry_run=not apply_changes)

    report = _run(ctx, action)
    _print_sweep_report(report, dry_run=not apply_changes)
    if report.errors:
        sys.exit(1)


@cli.command("check-source")
@click.argument("url")
@click.option("--title", help="Feed title")
@click.option("--description", help="Feed description")
@click.option("--link", help="Feed site link")
@click.pass_context
def check_source(
    ctx: click.Context, url: str, title: Optional[str], description: Optional[str], link: Optional[str]
) -> None:
    """Check whether an RSS feed URL duplicates a registered source."""
    metadata = FeedMetadata(title=title, description=description, link=link, feed_url=url)

    async def action(container: DependencyContainer) -> Any:
        engine = await container.get_source_engine()
        return await engine.check_source_for_duplicate(url, metadata)

    result = _run(ctx, action)
    style = "red" if result.is_duplicate else "green"
    console.print(f"[{style}]Duplicate: {result.is_duplicate}[/{style}] (confidence {result.confidence:.2f})")
    if result.existing_source:
        console.print(f"Existing source: {result.existing_source.link} (id {result.existing_source.id})")
    if result.reason:
        console.print(f"Reason: {result.reason}")


@cli.command("source-duplicates")
@click.argument("source_id")
@click.option("--threshold", type=float, default=None, help="Minimum confidence (default from configuration)")
@click.pass_context
def source_duplicates(ctx: click.Context, source_id: str, threshold: Optional[float]) -> None:
    """List likely duplicates of a registered source."""

    async def action(container: DependencyContainer) -> Any:
        engine = await container.get_source_engine()
        return await engine.find_potential_duplicate_sources(source_id, threshold)

    try:
        result = _run(ctx, action)
    except SourceNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    table = Table(title=f"Potential duplicates of {result.source.link}")
    table.add_column("Source", style="cyan")
    table.add_column("Link", overflow="fold")
    table.add_column("Confidence", justify="right")
    table.add_column("Reason", overflow="fold")
    for match in result.duplicates:
        table.add_row(match.source.title, match.source.link, f"{match.confidence:.2f}", match.reason)
    console.print(table)


@cli.command("source-stats")
@click.pass_context
def source_stats(ctx: click.Context) -> None:
    """Domain-grouped duplication report over public sources."""

    async def action(container: DependencyContainer) -> Any:
        engine = await container.get_source_engine()
        return await engine.get_duplication_stats()

    stats = _run(ctx, action)
    table = Table(title="Source duplication by domain")
    table.add_column("Domain", style="cyan")
    table.add_column("Sources", justify="right")
    table.add_column("Avg confidence", justify="right")
    for group in stats.duplicate_groups:
        table.add_row(group.domain, str(len(group.sources)), f"{group.avg_confidence:.2f}")
    console.print(table)
    console.print(f"Total sources: {stats.total_sources}, potential duplicates: {stats.potential_duplicates}")


@cli.command()
@click.option("--recreate", is_flag=True, help="Drop and recreate the search index first")
@click.option("--limit", default=1000, show_default=True, help="Maximum number of articles to index")
@click.pass_context
def reindex(ctx: click.Context, recreate: bool, limit: int) -> None:
    """Index stored articles into the search index."""

    async def action(container: DependencyContainer) -> Any:
        engine = await container.get_article_engine()
        if recreate:
            return await engine.recreate_index_and_sync(limit=limit)
        return await engine.sync_existing(limit=limit)

    result = _run(ctx, action)
    console.print(f"[green]Indexed {result['indexed']}[/green], errors: {result['errors']}")


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Print deduplication statistics as JSON."""

    async def action(container: DependencyContainer) -> Any:
        engine = await container.get_article_engine()
        return await engine.get_stats()

    console.print_json(json.dumps(_run(ctx, action)))


@cli.command()
@click.option("--limit", type=int, default=None, help="Maximum number of raw items to process")
@click.pass_context
def normalize(ctx: click.Context, limit: Optional[int]) -> None:
    """Run one normalization pass over pending raw items."""

    async def action(container: DependencyContainer) -> Any:
        job = await container.get_normalization_job()
        job.batch_size = limit
        return await job.run_once()

    counts = _run(ctx, action)
    table = Table(title="Normalization pass")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", justify="right")
    for outcome, count in counts.items():
        table.add_row(outcome, str(count))
    console.print(table)


@cli.command()
@click.option(
    "--format",
    "output_format",
    default="json",
    type=click.Choice(["json", "prometheus"]),
    help="Health check format",
)
@click.pass_context
def health(ctx: click.Context, output_format: str) -> None:
    """Check store and search index reachability."""

    async def action(container: DependencyContainer) -> Any:
        return await container.get_health_status()

    status = _run(ctx, action)
    if output_format == "prometheus":
        for key, value in status.items():
            if isinstance(value, bool):
                console.print(f"newsdedup_health_{key} {int(value)}")
    else:
        console.print_json(json.dumps(status))
    if not (status["store"] and status["search_index"]):
        sys.exit(1)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
