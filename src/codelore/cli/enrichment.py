"""CLI commands for enrichment queue management and monitoring."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from codelore.embeddings import SentenceTransformerEmbedder
from codelore.enrichment.cache import EnrichmentCacheManager
from codelore.enrichment.config import ConfigurationManager, EnrichmentSettings
from codelore.enrichment.exceptions import ConfigurationError, EnrichmentError
from codelore.enrichment.on_demand import OnDemandEnricher
from codelore.enrichment.pipeline import EnrichmentPipeline
from codelore.enrichment.prioritizer import EnrichmentPrioritizer
from codelore.enrichment.queue_runner import BackgroundEnrichmentQueue
from codelore.enrichment.research_agent import ResearchAgent
from codelore.enrichment.status import collect_enrichment_status
from codelore.enrichment.store import SQLiteGraphStore
from codelore.enrichment.telemetry import TelemetryRecorder
from codelore.llm import build_llm_client

console = Console()
enrichment_app = typer.Typer(help="Enrichment queue management commands")


@dataclass
class EnrichmentComponents:
    settings: EnrichmentSettings
    store: SQLiteGraphStore
    prioritizer: EnrichmentPrioritizer
    cache: EnrichmentCacheManager
    queue: BackgroundEnrichmentQueue
    on_demand: OnDemandEnricher

    def close(self) -> None:
        self.store.close()


def build_components(settings: EnrichmentSettings) -> EnrichmentComponents:
    """Wire the enrichment subsystem from settings."""
    store = SQLiteGraphStore(
        Path(settings.store.database_path).expanduser(),
        wal_mode=settings.store.wal_mode,
    )
    embedder = None
    if settings.embeddings.enabled:
        embedder = SentenceTransformerEmbedder(
            settings.embeddings.model_name, device=settings.embeddings.device
        )

    pipeline: Optional[EnrichmentPipeline] = None
    if settings.queue.enabled:
        agent = ResearchAgent(
            store,
            build_llm_client(settings.llm),
            settings.research,
            embedder=embedder,
        )
        pipeline = EnrichmentPipeline(
            store,
            agent,
            analysis_version=settings.cache.analysis_version,
            embedder=embedder,
        )

    telemetry = None
    if settings.telemetry.enabled:
        telemetry = TelemetryRecorder(Path(settings.telemetry.output_dir).expanduser())

    cache = EnrichmentCacheManager(store, settings.cache)
    return EnrichmentComponents(
        settings=settings,
        store=store,
        prioritizer=EnrichmentPrioritizer(
            store,
            settings.prioritizer,
            analysis_version=settings.cache.analysis_version,
        ),
        cache=cache,
        queue=BackgroundEnrichmentQueue(
            store,
            pipeline,
            settings.queue,
            workspace_dir=Path(settings.workspace_dir).expanduser(),
            telemetry=telemetry,
        ),
        on_demand=OnDemandEnricher(store, pipeline, cache, settings.queue),
    )


def _load_components(config: Optional[Path]) -> EnrichmentComponents:
    try:
        settings = ConfigurationManager(config).load()
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    return build_components(settings)


def _render_status_panel(status: dict) -> Panel:
    runner = status["runner"]
    cache = status["cache"]
    coverage = status.get("coverage", {})
    queue = coverage.get("queue") or runner.get("queue") or {}

    sections = []
    sections.append("[bold cyan]Runner[/bold cyan]")
    if runner["enabled"]:
        sections.append(
            f"  Processed today: {runner['processed_today']:>5} / {runner['daily_limit']}"
        )
        sections.append(f"  Remaining today: {runner['remaining_today']:>5}")
    else:
        sections.append(f"  [yellow]Disabled: {runner['disabled_reason']}[/yellow]")
    sections.append("")

    sections.append("[bold cyan]Queue[/bold cyan]")
    for key in ("pending", "processing", "complete", "failed", "retrying", "permanently_failed"):
        sections.append(f"  {key.replace('_', ' ').capitalize():<20} {queue.get(key, 0):>5}")
    sections.append("")

    sections.append("[bold cyan]Cache[/bold cyan]")
    sections.append(f"  Analysis version:    {cache['analysis_version']}")
    sections.append(f"  Valid:               {cache['valid']:>5}")
    sections.append(f"  Stale:               {cache['stale']:>5}")
    sections.append(f"  Orphaned:            {cache['orphaned']:>5}")

    if coverage:
        sections.append("")
        sections.append("[bold cyan]Coverage[/bold cyan]")
        sections.append(
            f"  Enriched:            {coverage['enriched_chunks']} / "
            f"{coverage['total_chunks']} ({coverage['enrichment_rate']})"
        )
        sections.append(f"  Hub chunks:          {coverage['hub_chunks']:>5}")

    return Panel("\n".join(sections), title="Enrichment Status", border_style="cyan")


@enrichment_app.command("status")
def status_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Enrichment config file"),
    format_output: str = typer.Option("table", "--format", help="Output format: table, json, or yaml"),
) -> None:
    """Display queue, cache and coverage status."""
    components = _load_components(config)
    try:
        status = collect_enrichment_status(
            components.queue,
            components.cache,
            components.prioritizer,
            max_retries=components.settings.queue.max_retries,
        )
    finally:
        components.close()

    if format_output == "json":
        console.print(json.dumps(status, indent=2))
    elif format_output == "yaml":
        console.print(yaml.dump(status, default_flow_style=False))
    else:
        console.print(_render_status_panel(status))


@enrichment_app.command("queue")
def queue_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Enrichment config file"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Maximum candidates to consider"),
) -> None:
    """Score unenriched chunks and queue the best of them."""
    components = _load_components(config)
    try:
        queued = components.prioritizer.select_and_queue(limit)
    finally:
        components.close()
    console.print(f"[green]Queued {queued} chunks for enrichment[/green]")


@enrichment_app.command("process-once")
def process_once_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Enrichment config file"),
) -> None:
    """Process a single batch from the queue."""
    components = _load_components(config)
    try:
        result = asyncio.run(components.queue.process_once())
    finally:
        components.close()

    if result.reason == "disabled":
        console.print("[yellow]Background enrichment is disabled[/yellow]")
        raise typer.Exit(1)
    if result.reason == "daily_limit":
        console.print("[yellow]Daily enrichment limit reached[/yellow]")
        return
    table = Table(title="Batch Result")
    table.add_column("Processed", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_row(str(result.processed), str(result.succeeded), str(result.failed))
    console.print(table)


@enrichment_app.command("invalidate-stale")
def invalidate_stale_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Enrichment config file"),
) -> None:
    """Delete outdated enrichments and re-queue their chunks."""
    components = _load_components(config)
    try:
        invalidated = components.cache.invalidate_stale()
    finally:
        components.close()
    console.print(f"[green]Invalidated {invalidated} stale enrichments[/green]")


@enrichment_app.command("cleanup")
def cleanup_command(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Enrichment config file"),
) -> None:
    """Remove orphaned enrichment data and old completed queue items."""
    components = _load_components(config)
    try:
        removed = components.cache.cleanup_orphans()
    finally:
        components.close()

    table = Table(title="Cleanup")
    table.add_column("Table", style="cyan")
    table.add_column("Removed", justify="right")
    for name, count in removed.items():
        table.add_row(name, str(count))
    console.print(table)


@enrichment_app.command("enrich")
def enrich_command(
    chunk_id: str = typer.Argument(..., help="Chunk to enrich"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Enrichment config file"),
    force: bool = typer.Option(False, "--force", help="Ignore a valid cached enrichment"),
) -> None:
    """Enrich one chunk immediately."""
    components = _load_components(config)
    try:
        enrichment = asyncio.run(components.on_demand.enrich_chunk(chunk_id, force=force))
    except EnrichmentError as e:
        console.print(f"[red]Enrichment failed: {e}[/red]")
        raise typer.Exit(1)
    finally:
        components.close()

    console.print(json.dumps(enrichment.to_dict(), indent=2))
