"""Sync trigger, status and inspection routes."""
import json
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel

from vtrack.models.sync import ConflictRecord
from vtrack.sync.audit import LEVELS
from vtrack.sync.orchestrator import SyncMode, SyncOrchestrator

router = APIRouter()


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """FastAPI dependency returning the app's orchestrator."""
    return request.app.state.orchestrator


class SyncTriggerRequest(BaseModel):
    mode: SyncMode = SyncMode.MANUAL


class SyncStatusResponse(BaseModel):
    state: str
    last_sync_at: Optional[datetime]
    pending: int
    failed: int
    conflicts: int
    is_syncing: bool
    last_error: Optional[str] = None
    rate_limited_until: Optional[datetime] = None


@router.post("/trigger", status_code=202)
async def trigger_sync(
    request: SyncTriggerRequest,
    background_tasks: BackgroundTasks,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Request a sync cycle. Returns immediately; the cycle runs in background.

    A request made while a cycle is running is folded into one follow-up cycle.
    """
    already_running = orchestrator.get_status().is_syncing
    background_tasks.add_task(orchestrator.request_sync, request.mode)
    return {
        "message": "Sync queued" if already_running else "Sync started",
        "mode": request.mode.value,
    }


@router.post("/stop")
def stop_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Ask the running cycle to stop at the next phase boundary."""
    return {"stopping": orchestrator.stop()}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.get_status()
    return SyncStatusResponse(**status.__dict__)


@router.get("/audit")
def export_audit(
    category: Optional[str] = None,
    level: Optional[str] = None,
    limit: Optional[int] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Export the audit trail as JSON, optionally filtered."""
    if orchestrator.audit is None:
        raise HTTPException(status_code=404, detail="Audit logging is disabled")
    if level is not None and level.upper() not in LEVELS:
        raise HTTPException(status_code=422, detail=f"Unknown level: {level}")
    document = orchestrator.export_audit_log(category=category, min_level=level, limit=limit)
    return json.loads(document)


@router.get("/conflicts", response_model=List[ConflictRecord])
def list_conflicts(
    limit: int = 50,
    cycle_id: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Most recent resolved conflicts first."""
    return orchestrator.resolver.history(limit=limit, cycle_id=cycle_id)


@router.post("/parked/retry")
def retry_parked(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Return parked change records to the queue."""
    return {"requeued": orchestrator.retry_parked()}
