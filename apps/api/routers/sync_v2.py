"""
Sync v2 endpoints (append-only change log).

Push and pull happen in one call: the client sends its changes and the last
server version it has seen, and receives every change after that version.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user_id, get_device_id
from core.database import get_db
from schemas import SyncV2Request
from services.change_log import ChangeLogReconciler

router = APIRouter(prefix="/api/sync/v2", tags=["Sync v2"])
logger = logging.getLogger(__name__)


@router.post("")
def sync_changes(
    payload: SyncV2Request,
    user_id: str = Depends(get_current_user_id),
    device_id: Optional[str] = Depends(get_device_id),
    db: Session = Depends(get_db),
):
    changes = [change.model_dump(by_alias=True) for change in payload.changes]
    return ChangeLogReconciler(db).sync(
        user_id,
        payload.last_known_server_version,
        changes,
        device_id=device_id,
    )


@router.get("/status")
def get_sync_v2_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return ChangeLogReconciler(db).status(user_id)


@router.post("/migrate")
def migrate_to_change_log(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Seed the caller's change log from current entity state. Safe to call repeatedly."""
    return ChangeLogReconciler(db).migrate(user_id)
