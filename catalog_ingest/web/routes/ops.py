"""Ops routes for ingestion queue health and recovery."""

import json

from fastapi import APIRouter, Form, HTTPException
from fastapi.responses import JSONResponse

from catalog_ingest.core.enums import RecoveryAction
from catalog_ingest.db.engine import get_session
from catalog_ingest.errors import IngestionError
from catalog_ingest.ingestion.queue import enqueue
from catalog_ingest.ingestion.registry import get_default_registry
from catalog_ingest.services.ingestion_ops import IngestionOpsService

router = APIRouter(prefix="/ops", tags=["ops"])


def _parse_int(value: str | None, field: str) -> int | None:
    """Parse an optional form integer; empty means unset, garbage is a 400."""
    if value is None or value.strip() == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be an integer")


def _ops_service(session) -> IngestionOpsService:
    ops = get_default_registry().ops
    return IngestionOpsService(
        session,
        freshness_window_hours=ops.freshness_window_hours,
        freshness_slo_percent=ops.freshness_slo_percent,
    )


@router.get("/ingestion")
async def ingestion_snapshot(
    stale_queued_minutes: int | None = None,
    stuck_running_minutes: int | None = None,
) -> JSONResponse:
    """Queue health and catalog freshness snapshot."""
    ops = get_default_registry().ops
    with get_session() as session:
        snapshot = _ops_service(session).get_snapshot(
            stale_queued_minutes=stale_queued_minutes or ops.stale_queued_minutes,
            stuck_running_minutes=stuck_running_minutes or ops.stuck_running_minutes,
        )

    return JSONResponse(snapshot.model_dump(mode="json"))


@router.post("/ingestion/recover")
async def ingestion_recover(
    action: str = Form(...),
    limit: str = Form(""),
    stale_queued_minutes: str = Form(""),
    stuck_running_minutes: str = Form(""),
) -> JSONResponse:
    """
    Apply a recovery action.

    Numeric fields are optional and clamped by the service.
    """
    try:
        recovery_action = RecoveryAction(action)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown recovery action: {action}")

    ops = get_default_registry().ops
    parsed_limit = _parse_int(limit, "limit")
    parsed_stale = _parse_int(stale_queued_minutes, "stale_queued_minutes")
    parsed_stuck = _parse_int(stuck_running_minutes, "stuck_running_minutes")

    with get_session() as session:
        result = _ops_service(session).run_recovery_action(
            recovery_action,
            limit=parsed_limit if parsed_limit is not None else ops.recovery_limit,
            stale_queued_minutes=(
                parsed_stale if parsed_stale is not None else ops.stale_queued_minutes
            ),
            stuck_running_minutes=(
                parsed_stuck if parsed_stuck is not None else ops.stuck_running_minutes
            ),
        )

    return JSONResponse(result.model_dump(mode="json"))


@router.post("/ingestion/enqueue")
async def ingestion_enqueue(
    kind: str = Form(...),
    payload: str = Form("{}"),
    idempotency_key: str = Form(""),
    priority: str = Form(""),
) -> JSONResponse:
    """Enqueue a job of a known kind with a JSON payload."""
    try:
        data = json.loads(payload or "{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="payload must be valid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="payload must be a JSON object")

    parsed_priority = _parse_int(priority, "priority")

    with get_session() as session:
        try:
            result = enqueue(
                session,
                kind=kind,
                payload=data,
                idempotency_key=idempotency_key.strip() or None,
                priority=parsed_priority or 0,
            )
        except IngestionError as e:
            raise HTTPException(status_code=400, detail=str(e))

    return JSONResponse(result.model_dump(mode="json"))
