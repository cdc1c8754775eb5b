"""
Legacy sync endpoints (table-mutation protocol).

Push is optionally wrapped in idempotency-key replay. Plan broadcast events
are handed to a background task so they go out only after the request's
transaction has committed.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.auth import get_current_user_id, get_device_id, get_idempotency_key
from core.database import get_db
from schemas import SyncBatchRequest, SyncPushRequest
from services.broadcast import dispatch_plan_broadcast
from services.idempotency import IdempotencyStore
from services.sync_reconciler import LegacySyncReconciler

router = APIRouter(prefix="/api/sync", tags=["Sync"])
logger = logging.getLogger(__name__)

REPLAYED_HEADER = "Idempotent-Replayed"


@router.post("/pull")
def pull_sync_data(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """All live entities for the caller, grouped by kind."""
    return LegacySyncReconciler(db).pull(user_id)


@router.post("/push")
def push_sync_changes(
    payload: SyncPushRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    device_id: Optional[str] = Depends(get_device_id),
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    db: Session = Depends(get_db),
):
    """
    Apply local changes to the cloud copy.

    Per-item failures come back in `conflicts` with a 200. A retry carrying the
    same Idempotency-Key and body replays the first response verbatim.
    """
    reconciler = LegacySyncReconciler(db)
    changes = payload.changes.model_dump(by_alias=True)
    request_body = payload.model_dump(mode="json", by_alias=True)
    events: List[Dict[str, Any]] = []

    def run_push() -> Dict[str, Any]:
        outcome = reconciler.push(user_id, changes, device_id=device_id)
        events.extend(outcome.events)
        return outcome.response

    result = IdempotencyStore(db).with_idempotency(idempotency_key, user_id, request_body, run_push)

    if events:
        background_tasks.add_task(dispatch_plan_broadcast, user_id, events)

    headers = {REPLAYED_HEADER: "true"} if result.was_replayed else None
    return JSONResponse(content=result.response, headers=headers)


@router.post("/batch")
def batch_sync(
    payload: SyncBatchRequest,
    user_id: str = Depends(get_current_user_id),
    device_id: Optional[str] = Depends(get_device_id),
    db: Session = Depends(get_db),
):
    """Bidirectional reconciliation; stale client versions come back as conflicts."""
    entities = [entity.model_dump() for entity in payload.entities]
    return LegacySyncReconciler(db).batch(user_id, entities, device_id=device_id)


@router.get("/status")
def get_sync_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return LegacySyncReconciler(db).status(user_id)
