"""Tracked local mutations: every write here is recorded for sync."""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from vtrack.api.routes.sync import get_orchestrator
from vtrack.models.entities import ENTITY_TYPES
from vtrack.models.sync import Priority
from vtrack.sync.errors import StorageError, ValidationError
from vtrack.sync.orchestrator import SyncOrchestrator

router = APIRouter()


def _check_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown entity type: {entity_type}")


@router.get("/{entity_type}")
def list_records(entity_type: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    _check_type(entity_type)
    return orchestrator.store.get_all(entity_type)


@router.get("/{entity_type}/{entity_id}")
def get_record(entity_type: str, entity_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    _check_type(entity_type)
    record = orchestrator.store.get(entity_type, entity_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Record not found")
    return record


@router.put("/{entity_type}/{entity_id}")
def put_record(
    entity_type: str,
    entity_id: str,
    body: Dict[str, Any],
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Create or update one entity (high priority: pushed promptly)."""
    _check_type(entity_type)
    try:
        return orchestrator.store.save(entity_type, {**body, "id": entity_id}, priority=Priority.HIGH.value)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


@router.delete("/{entity_type}/{entity_id}")
def delete_record(entity_type: str, entity_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    _check_type(entity_type)
    if not orchestrator.store.remove(entity_type, entity_id, priority=Priority.HIGH.value):
        raise HTTPException(status_code=404, detail="Record not found")
    return {"deleted": entity_id}


@router.post("/{entity_type}:import")
def import_records(
    entity_type: str,
    rows: List[Dict[str, Any]],
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Bulk import at normal priority (pushed with the next periodic cycle)."""
    _check_type(entity_type)
    try:
        saved = orchestrator.store.save_many(entity_type, rows, priority=Priority.NORMAL.value)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"imported": len(saved)}
