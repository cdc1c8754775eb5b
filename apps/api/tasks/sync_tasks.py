"""
Sync background tasks.

- deliver_sync_broadcast: plan events handed off from a committed push
  (used when SYNC_BROADCAST_ASYNC is set).
- purge_expired_idempotency_keys: hourly sweep of expired idempotency records.
"""

from typing import Dict, List
from celery import Task
from sqlalchemy.orm import Session
from core.database import get_db_sync
from tasks import celery_app
from services.broadcast import BroadcastNotifier
from services.idempotency import IdempotencyStore
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.deliver_sync_broadcast", bind=True, ignore_result=True)
def deliver_sync_broadcast_task(self: Task, user_id: str, events: List[Dict]) -> bool:
    """
    Post plan events to the real-time fan-out service.

    Delivery is best-effort: no retries, a failed post is only logged.
    """
    delivered = BroadcastNotifier().broadcast(user_id, events)
    if not delivered:
        logger.info(f"Broadcast task {self.request.id} for user {user_id} not delivered")
    return delivered


@celery_app.task(name="tasks.purge_expired_idempotency_keys")
def purge_expired_idempotency_keys_task() -> Dict:
    """Delete idempotency records past their expiry."""
    db: Session = get_db_sync()
    try:
        deleted = IdempotencyStore(db).purge_expired()
        db.commit()
        logger.info(f"Purged {deleted} expired idempotency records")
        return {"status": "success", "deleted": deleted}
    except Exception as e:
        db.rollback()
        logger.error(f"Idempotency purge failed: {e}", exc_info=True)
        raise
    finally:
        db.close()
