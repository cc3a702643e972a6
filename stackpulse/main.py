from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import ORJSONResponse, StreamingResponse

from stackpulse.audit import RedeployAuditLog
from stackpulse.broadcast import StatusBroadcaster, stream_events
from stackpulse.config import settings
from stackpulse.db import SessionLocal, init_db
from stackpulse.dispatcher import RedeployDispatcher, RedeployOutcome, RedeployType
from stackpulse.maintenance import MaintenanceLock
from stackpulse.phases import PhaseStore
from stackpulse.portainer_api import PortainerApiClient, PortainerApiError
from stackpulse.schemas import (
    BulkRedeployResponse,
    MaintenanceResponse,
    MaintenanceUpdateRequest,
    RedeployLogResponse,
    RedeployResponse,
    RedeploySelectionRequest,
    SnapshotResponse,
    StackResponse,
    UpdateRunRequest,
)
from stackpulse.snapshot_cache import SnapshotCache, SnapshotUnavailableError
from stackpulse.stacks import Snapshot

logger = logging.getLogger(__name__)

portainer_api = PortainerApiClient()
phase_store = PhaseStore()
broadcaster = StatusBroadcaster(max_queue_size=settings.EVENT_SUBSCRIBER_QUEUE_SIZE)
audit_log = RedeployAuditLog(SessionLocal)
maintenance_lock = MaintenanceLock(SessionLocal)
snapshot_cache = SnapshotCache(
    client=portainer_api,
    maintenance=maintenance_lock,
    phases=phase_store,
    endpoint_id=settings.PORTAINER_ENDPOINT_ID,
    ttl_seconds=settings.STACKS_CACHE_TTL_SECONDS,
    probe_concurrency=settings.STALENESS_PROBE_CONCURRENCY,
    disabled_names=settings.redeploy_disabled_names,
)
dispatcher = RedeployDispatcher(
    client=portainer_api,
    phases=phase_store,
    broadcaster=broadcaster,
    audit=audit_log,
    snapshot_cache=snapshot_cache,
    maintenance=maintenance_lock,
    endpoint_id=settings.PORTAINER_ENDPOINT_ID,
    disabled_names=settings.redeploy_disabled_names,
)


@asynccontextmanager
async def _app_lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    maintenance_lock.load()
    try:
        yield
    finally:
        await dispatcher.aclose()
        broadcaster.close_all()


app = FastAPI(title="StackPulse", default_response_class=ORJSONResponse, lifespan=_app_lifespan)


@app.exception_handler(PortainerApiError)
async def portainer_api_error_handler(_request: Request, exc: PortainerApiError) -> ORJSONResponse:
    return ORJSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.exception_handler(SnapshotUnavailableError)
async def snapshot_unavailable_handler(_request: Request, exc: SnapshotUnavailableError) -> ORJSONResponse:
    return ORJSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
    logger.exception("Unhandled server exception", exc_info=exc)
    return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


def _serialize_snapshot(snapshot: Snapshot) -> SnapshotResponse:
    stacks = []
    for stack in snapshot.stacks:
        entry = phase_store.entry(stack.id)
        stacks.append(
            StackResponse(
                Id=stack.id,
                Name=stack.name,
                EndpointId=stack.endpoint_id,
                deploymentKind=stack.deployment_kind.value,
                updateStatus=stack.staleness.value,
                duplicateName=stack.duplicate_name,
                redeployDisabled=stack.redeploy_disabled,
                redeployPhase=entry.phase.value if entry else "none",
                redeploySequence=entry.sequence if entry else None,
            )
        )
    return SnapshotResponse(
        stacks=stacks,
        capturedAt=snapshot.captured_at,
        locked=snapshot.locked,
        pollError=snapshot.poll_error,
        epoch=phase_store.epoch,
        pollSequence=None if snapshot.locked else snapshot.sequence,
    )


def _require_unlocked() -> None:
    if maintenance_lock.locked:
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail=maintenance_lock.state.message or "Maintenance mode is active",
        )


@app.get("/api/stacks", response_model=SnapshotResponse)
async def list_stacks(force: bool = False):
    snapshot = await snapshot_cache.get_snapshot(force=force)
    return _serialize_snapshot(snapshot)


@app.put(
    "/api/stacks/redeploy-all",
    response_model=BulkRedeployResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def redeploy_all_stacks():
    _require_unlocked()
    queued = await dispatcher.start_many(None, redeploy_type=RedeployType.ALL)
    return BulkRedeployResponse(queued=[item.stack_id for item in queued])


@app.put(
    "/api/stacks/redeploy-selection",
    response_model=BulkRedeployResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def redeploy_stack_selection(payload: RedeploySelectionRequest):
    _require_unlocked()
    queued = await dispatcher.start_many(payload.stackIds, redeploy_type=RedeployType.SELECTION)
    return BulkRedeployResponse(queued=[item.stack_id for item in queued])


@app.put("/api/stacks/{stack_id}/redeploy", response_model=RedeployResponse)
async def redeploy_stack(stack_id: str):
    _require_unlocked()
    snapshot = await snapshot_cache.get_snapshot()
    if snapshot.get(stack_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Stack {stack_id} not found")
    outcome = await dispatcher.redeploy(stack_id)
    return RedeployResponse(success=outcome is RedeployOutcome.SUCCEEDED, outcome=outcome.value)


@app.get("/api/events")
async def redeploy_events(request: Request) -> StreamingResponse:
    # Subscribe before the response starts so nothing published in between is missed.
    subscription = broadcaster.subscribe()
    return StreamingResponse(
        stream_events(
            subscription,
            heartbeat_seconds=settings.EVENT_STREAM_HEARTBEAT_SECONDS,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _serialize_maintenance() -> MaintenanceResponse:
    state = maintenance_lock.state
    return MaintenanceResponse(
        active=state.active,
        locked=maintenance_lock.locked,
        updateRunning=maintenance_lock.update_running,
        message=state.message,
        activatedAt=state.activated_at,
        updatedAt=state.updated_at,
        extra=state.extra,
    )


@app.get("/api/maintenance", response_model=MaintenanceResponse)
def get_maintenance():
    return _serialize_maintenance()


@app.put("/api/maintenance", response_model=MaintenanceResponse)
def update_maintenance(payload: MaintenanceUpdateRequest):
    if payload.active and maintenance_lock.state.active:
        # Already in maintenance: only the message changes, activatedAt is kept.
        maintenance_lock.update(message=payload.message)
    elif payload.active:
        maintenance_lock.activate(message=payload.message)
    else:
        maintenance_lock.deactivate(message=payload.message)
        snapshot_cache.invalidate()
    return _serialize_maintenance()


@app.put("/api/maintenance/update-run", response_model=MaintenanceResponse)
def update_run(payload: UpdateRunRequest):
    if payload.running:
        if not maintenance_lock.begin_update():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An update run is already in progress")
    else:
        maintenance_lock.end_update()
        snapshot_cache.invalidate()
    return _serialize_maintenance()


@app.get("/api/logs/redeploys", response_model=list[RedeployLogResponse])
def list_redeploy_logs(limit: int = Query(default=100, ge=1, le=1000)):
    return [
        RedeployLogResponse(
            id=row.id,
            timestamp=row.timestamp,
            stackId=row.stack_id,
            stackName=row.stack_name,
            status=row.status,
            message=row.message,
            endpoint=row.endpoint,
            redeployType=row.redeploy_type,
        )
        for row in audit_log.list_recent(limit=limit)
    ]
