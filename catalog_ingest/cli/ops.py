"""
Ops CLI Commands
================

Queue health, catalog freshness and recovery actions.
"""

from __future__ import annotations

from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from catalog_ingest.core.enums import RecoveryAction
from catalog_ingest.db.engine import get_session
from catalog_ingest.ingestion.registry import get_default_registry
from catalog_ingest.services.ingestion_ops import IngestionOpsService

console = Console()
ops_app = typer.Typer(help="Ingestion operations commands")


def _ops_service(session) -> IngestionOpsService:
    ops = get_default_registry().ops
    return IngestionOpsService(
        session,
        freshness_window_hours=ops.freshness_window_hours,
        freshness_slo_percent=ops.freshness_slo_percent,
    )


@ops_app.command("status")
def status(
    stale_queued_minutes: Optional[int] = typer.Option(None, "--stale-queued-minutes"),
    stuck_running_minutes: Optional[int] = typer.Option(None, "--stuck-running-minutes"),
) -> None:
    """
    Show queue health and catalog freshness.

    Examples:
        catalog-ingest ops status
    """
    ops = get_default_registry().ops
    with get_session() as session:
        snapshot = _ops_service(session).get_snapshot(
            stale_queued_minutes=stale_queued_minutes or ops.stale_queued_minutes,
            stuck_running_minutes=stuck_running_minutes or ops.stuck_running_minutes,
        )

    queue = snapshot.queue
    rprint(f"\n[bold]Queue[/bold] (generated {snapshot.generated_at:%Y-%m-%d %H:%M:%S} UTC)")
    rprint(f"  Total: {queue.total}")
    rprint(
        f"  Queued: {queue.queued}  Running: {queue.running}  "
        f"Failed: [red]{queue.failed}[/red]  Success: [green]{queue.success}[/green]"
    )
    rprint(f"  Ready now: {queue.ready_now}")
    rprint(f"  Stale queued (>{snapshot.stale_queued_minutes}m): {queue.stale_queued}")
    rprint(f"  Stuck running (>{snapshot.stuck_running_minutes}m): {queue.stuck_running}")

    freshness = snapshot.freshness
    color = "green" if freshness.meets_slo else "red"
    rprint("\n[bold]Freshness[/bold]")
    rprint(
        f"  Checked within {freshness.freshness_window_hours}h: "
        f"{freshness.active_checked_within_window}/{freshness.active_catalog_offers} "
        f"([{color}]{freshness.freshness_percent}%[/{color}], "
        f"SLO {freshness.freshness_slo_percent}%)"
    )
    rprint(f"  Never checked: {freshness.active_missing_check_timestamp}")
    rprint(f"  In stock with price: {freshness.active_in_stock_priced_offers}")
    rprint(f"  Unmapped entities: {snapshot.unmapped_entities}")

    if snapshot.recent_runs:
        table = Table(title="Recent Runs")
        table.add_column("Source", style="bold")
        table.add_column("Status")
        table.add_column("Started")
        table.add_column("Duration")
        table.add_column("Error")
        for run in snapshot.recent_runs:
            duration = f"{run.duration_ms / 1000:.1f}s" if run.duration_ms is not None else "-"
            table.add_row(
                run.source_slug,
                run.status,
                run.started_at.strftime("%Y-%m-%d %H:%M"),
                duration,
                (run.error or "")[:60],
            )
        console.print(table)

    if snapshot.recent_failed_jobs:
        rprint(f"\n[bold red]Recent failed jobs ({len(snapshot.recent_failed_jobs)}):[/bold red]")
        for job in snapshot.recent_failed_jobs[:10]:
            rprint(f"  • {job.id} {job.kind} ({job.attempts}/{job.max_attempts}): {job.last_error}")


@ops_app.command("recover")
def recover(
    action: RecoveryAction = typer.Argument(..., help="Recovery action"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum jobs (1-1000)"),
    stale_queued_minutes: Optional[int] = typer.Option(None, "--stale-queued-minutes"),
    stuck_running_minutes: Optional[int] = typer.Option(None, "--stuck-running-minutes"),
) -> None:
    """
    Apply a recovery action.

    Examples:
        catalog-ingest ops recover retry_failed_jobs --limit 50
        catalog-ingest ops recover recover_stuck_running_jobs --stuck-running-minutes 30
        catalog-ingest ops recover enqueue_freshness_refresh
    """
    ops = get_default_registry().ops
    with get_session() as session:
        result = _ops_service(session).run_recovery_action(
            action,
            limit=limit or ops.recovery_limit,
            stale_queued_minutes=stale_queued_minutes or ops.stale_queued_minutes,
            stuck_running_minutes=stuck_running_minutes or ops.stuck_running_minutes,
        )

    rprint(f"[green]{result.action.value}[/green]: {result.affected_count} jobs affected")
    if result.enqueued:
        for name, enqueued in result.enqueued.items():
            note = " (deduped)" if enqueued.deduped else ""
            rprint(f"  • {name}: {enqueued.id}{note}")
    else:
        for job_id in result.affected_job_ids[:20]:
            rprint(f"  • {job_id}")
