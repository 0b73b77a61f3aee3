"""
Ingestion CLI Commands
======================

CLI commands for the offer refresh queue: workers, enqueueing, the
scheduler tick, sources and entity housekeeping.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from catalog_ingest.core.enums import EntityType, JobKind, JobStatus
from catalog_ingest.db.engine import get_session
from catalog_ingest.errors import IngestionError
from catalog_ingest.ingestion.hashing import utc_now
from catalog_ingest.ingestion.mapper import deactivate_unseen_entities, get_source_by_slug
from catalog_ingest.ingestion.queue import enqueue, get_job, list_jobs
from catalog_ingest.ingestion.registry import get_default_registry
from catalog_ingest.ingestion.scheduler import (
    enqueue_scheduled_jobs,
    scheduled_sources,
    sync_sources,
)
from catalog_ingest.ingestion.worker import run_worker

console = Console()
ingest_app = typer.Typer(help="Ingestion pipeline commands")
sources_app = typer.Typer(help="Source management commands")
jobs_app = typer.Typer(help="Job inspection commands")
entities_app = typer.Typer(help="Ingestion entity housekeeping")

ingest_app.add_typer(sources_app, name="sources")
ingest_app.add_typer(jobs_app, name="jobs")
ingest_app.add_typer(entities_app, name="entities")

STATUS_COLORS = {
    "queued": "yellow",
    "running": "blue",
    "success": "green",
    "failed": "red",
}


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


@ingest_app.command("worker")
def start_worker(
    max_jobs: int = typer.Option(25, "--max-jobs", "-n", help="Maximum jobs to process"),
    worker_id: Optional[str] = typer.Option(None, "--worker-id", help="Lock owner identity"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the next job without claiming it"),
) -> None:
    """
    Process queued ingestion jobs, exiting when the queue is empty.

    Examples:
        catalog-ingest ingest worker
        catalog-ingest ingest worker --max-jobs 5 --dry-run
    """
    with get_session() as session:
        if dry_run:
            result = asyncio.run(run_worker(session, dry_run=True))
            if result.next_job is None:
                rprint("[yellow]No eligible jobs[/yellow]")
            else:
                job = result.next_job
                rprint(f"\n[bold]Next job:[/bold] {job.id}")
                rprint(f"  Kind: {job.kind}")
                rprint(f"  Priority: {job.priority}")
                rprint(f"  Attempts: {job.attempts}/{job.max_attempts}")
                rprint(f"  Payload: {json.dumps(job.payload, sort_keys=True)}")
            return

        rprint("[bold]Starting ingestion worker...[/bold]")
        with console.status("[bold blue]Processing jobs...[/bold blue]"):
            result = asyncio.run(run_worker(session, worker_id=worker_id, max_jobs=max_jobs))

    rprint("\n[bold]Worker finished:[/bold]")
    rprint(f"  Processed: {result.processed}")
    rprint(f"  Succeeded: [green]{result.succeeded}[/green]")
    rprint(f"  Failed: [red]{result.failed}[/red]")
    if result.failed:
        raise typer.Exit(1)


@ingest_app.command("enqueue")
def enqueue_job(
    kind: JobKind = typer.Argument(..., help="Job kind"),
    payload: str = typer.Option("{}", "--payload", "-p", help="Payload as a JSON object"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Idempotency key"),
    priority: int = typer.Option(0, "--priority", help="Higher runs first"),
    max_attempts: int = typer.Option(5, "--max-attempts", help="Attempts before permanent failure"),
) -> None:
    """
    Enqueue a job.

    Examples:
        catalog-ingest ingest enqueue offers.head_refresh.bulk -p '{"limit": 50}'
        catalog-ingest ingest enqueue offers.detail_refresh.one -p '{"offer_id": "..."}'
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        rprint(f"[red]Error:[/red] Payload is not valid JSON: {e}")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        rprint("[red]Error:[/red] Payload must be a JSON object")
        raise typer.Exit(1)

    with get_session() as session:
        try:
            result = enqueue(
                session,
                kind=kind.value,
                payload=data,
                idempotency_key=key,
                priority=priority,
                max_attempts=max_attempts,
            )
        except IngestionError as e:
            rprint(f"[red]Error:[/red] {e}")
            raise typer.Exit(1)

    if result.deduped:
        rprint(f"[yellow]Job already enqueued for key '{key}'[/yellow]")
    else:
        rprint("[green]Job enqueued successfully![/green]")
    rprint(f"Job ID: [bold]{result.id}[/bold]")


@ingest_app.command("schedule")
def schedule() -> None:
    """
    Run one scheduler tick: sync configured sources, then enqueue due jobs.

    Safe to run from cron at any frequency; jobs are deduplicated per
    cadence bucket.

    Examples:
        catalog-ingest ingest schedule
    """
    registry = get_default_registry()
    with get_session() as session:
        synced = sync_sources(session, registry)
        result = enqueue_scheduled_jobs(session)

    rprint(f"Synced sources: {', '.join(synced) or 'none'}")
    rprint("\n[bold]Scheduler tick:[/bold]")
    rprint(f"  Scanned: {result.scanned}")
    rprint(f"  Enqueued: [green]{result.enqueued}[/green]")
    rprint(f"  Deduped: {result.deduped}")
    rprint(f"  Skipped: {result.skipped}")
    if result.errors:
        rprint(f"  Errors: [red]{result.errors}[/red]")
        raise typer.Exit(1)


# Sources subcommands


@sources_app.command("list")
def list_sources(
    all_sources: bool = typer.Option(False, "--all", "-a", help="Show disabled sources too"),
) -> None:
    """
    List configured scheduled sources.

    Examples:
        catalog-ingest ingest sources list
        catalog-ingest ingest sources list --all
    """
    registry = get_default_registry()
    sources = scheduled_sources(registry)
    if not all_sources:
        sources = [s for s in sources if s.enabled]

    if not sources:
        rprint("[yellow]No sources configured[/yellow]")
        rprint("\nAdd sources to config/sources.yaml")
        return

    table = Table(title="Ingestion Sources")
    table.add_column("Slug", style="bold")
    table.add_column("Job Kind")
    table.add_column("Every")
    table.add_column("Trust")
    table.add_column("Status")

    for source in sources:
        status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"
        table.add_row(
            source.slug,
            source.job_kind,
            f"{source.schedule_every_minutes}m",
            source.default_trust,
            status,
        )

    console.print(table)


@sources_app.command("sync")
def sync_configured_sources() -> None:
    """
    Upsert configured sources into the database.

    Examples:
        catalog-ingest ingest sources sync
    """
    registry = get_default_registry()
    with get_session() as session:
        synced = sync_sources(session, registry)
    for slug in synced:
        rprint(f"  • {slug}")
    rprint(f"[green]Synced {len(synced)} sources[/green]")


# Jobs subcommands


@jobs_app.command("list")
def jobs_list(
    status: Optional[JobStatus] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum rows"),
) -> None:
    """
    List recent jobs.

    Examples:
        catalog-ingest ingest jobs list --status failed
    """
    with get_session() as session:
        jobs = list_jobs(session, status=status, limit=limit)

    if not jobs:
        rprint("[yellow]No jobs found[/yellow]")
        return

    table = Table(title="Ingestion Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Run After")
    table.add_column("Last Error")

    for job in jobs:
        table.add_row(
            job.id,
            job.kind,
            _colored(job.status.value),
            f"{job.attempts}/{job.max_attempts}",
            job.run_after.strftime("%Y-%m-%d %H:%M"),
            (job.last_error or "")[:60],
        )

    console.print(table)


@jobs_app.command("status")
def job_status(
    job_id: str = typer.Argument(..., help="Job ID to check"),
) -> None:
    """
    Show one job.

    Examples:
        catalog-ingest ingest jobs status 4f0c...
    """
    with get_session() as session:
        job = get_job(session, job_id)

    if job is None:
        rprint(f"[yellow]Job '{job_id}' not found[/yellow]")
        raise typer.Exit(1)

    rprint(f"\n[bold]Job: {job.id}[/bold]")
    rprint(f"  Kind: {job.kind}")
    rprint(f"  Status: {_colored(job.status.value)}")
    rprint(f"  Attempts: {job.attempts}/{job.max_attempts}")
    rprint(f"  Priority: {job.priority}")
    rprint(f"  Run after: {job.run_after.isoformat()}")
    if job.idempotency_key:
        rprint(f"  Idempotency key: {job.idempotency_key}")
    if job.locked_by:
        rprint(f"  Locked by: {job.locked_by} at {job.locked_at.isoformat()}")
    rprint(f"  Payload: {json.dumps(job.payload, sort_keys=True)}")
    if job.last_error:
        rprint(f"\n[bold red]Last error:[/bold red] {job.last_error}")


# Entities subcommands


@entities_app.command("prune")
def prune_entities(
    source: str = typer.Option(..., "--source", "-s", help="Source slug"),
    entity_type: EntityType = typer.Option(EntityType.OFFER, "--type", "-t", help="Entity type"),
    days: int = typer.Option(30, "--days", "-d", help="Deactivate entities unseen for this many days"),
) -> None:
    """
    Soft-deactivate entities a source has not sighted recently.

    Examples:
        catalog-ingest ingest entities prune --source offers-detail --days 30
    """
    with get_session() as session:
        source_row = get_source_by_slug(session, source)
        if source_row is None:
            rprint(f"[red]Error:[/red] Source '{source}' not found")
            raise typer.Exit(1)
        count = deactivate_unseen_entities(
            session,
            source_id=source_row.id,
            entity_type=entity_type,
            not_seen_since=utc_now() - timedelta(days=days),
        )

    rprint(f"[green]Deactivated {count} entities[/green]")
