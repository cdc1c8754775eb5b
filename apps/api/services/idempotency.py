"""
Idempotency keys for the legacy push path.

A client may send an Idempotency-Key header with a push. The first successful
handling stores (hash of normalized request, serialized response); a retry
with the same key and the same body replays the stored response without
re-running the push. Reusing a key for a different body is a client error.

This is a best-effort optimization: storage problems while looking up or
saving a record never fail the push itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.cache import acquire_marker, cache_key, release_marker
from core.config import settings
from core.exceptions import IdempotencyConflictError, IdempotencyInProgressError
from models import IdempotencyRecord
from services.checksum import calculate_checksum

logger = logging.getLogger(__name__)

# Top-level request fields that differ between retries of the same logical request.
VOLATILE_FIELDS = ("timestamp", "requestId", "request_id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_request_body(body: Any) -> Any:
    """Copy of body without volatile top-level fields."""
    if isinstance(body, dict):
        return {k: v for k, v in body.items() if k not in VOLATILE_FIELDS}
    return body


def compute_request_hash(body: Any) -> str:
    """Key-order-independent hash of the normalized request body."""
    return calculate_checksum(normalize_request_body(body))


@dataclass
class IdempotentResult:
    response: Dict[str, Any]
    was_replayed: bool


class IdempotencyStore:
    """Persistence of idempotency records (idempotency_keys table)."""

    def __init__(self, db: Session, ttl_seconds: Optional[int] = None):
        self.db = db
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.IDEMPOTENCY_TTL_S

    def check(self, key: str, user_id: str, request_body: Any) -> Optional[Dict[str, Any]]:
        """
        Look up a live record for (key, user_id).

        Returns the stored response for a replay, or None if there is nothing to
        replay. Raises IdempotencyConflictError if the key was used for a
        different request. Storage errors fail open (None).
        """
        request_hash = compute_request_hash(request_body)
        now = _utcnow()

        try:
            with self.db.begin_nested():
                record = (
                    self.db.query(IdempotencyRecord)
                    .filter(
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.user_id == user_id,
                        IdempotencyRecord.expires_at > now,
                    )
                    .first()
                )
                if record is None:
                    # Lazy purge of a stale record holding this key.
                    self.db.query(IdempotencyRecord).filter(
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.user_id == user_id,
                        IdempotencyRecord.expires_at <= now,
                    ).delete(synchronize_session=False)
                    return None
                stored_hash = record.request_hash
                stored_response = record.response
        except SQLAlchemyError as e:
            logger.warning(f"Idempotency lookup failed for key {key}, proceeding without replay: {e}")
            return None

        if stored_hash != request_hash:
            logger.warning(f"Idempotency key {key} reused with a different request body (user {user_id})")
            raise IdempotencyConflictError(key)

        return json.loads(stored_response)

    def save(
        self,
        key: str,
        user_id: str,
        request_body: Any,
        response: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Store the response for key. Never raises: a failed save only means a
        retry will re-run the (idempotent-by-checksum) push.
        """
        ttl = ttl if ttl is not None else self.ttl_seconds
        try:
            serialized = json.dumps(response, default=str)
            request_hash = compute_request_hash(request_body)
            expires_at = _utcnow() + timedelta(seconds=ttl)

            with self.db.begin_nested():
                record = (
                    self.db.query(IdempotencyRecord)
                    .filter(IdempotencyRecord.key == key, IdempotencyRecord.user_id == user_id)
                    .first()
                )
                if record is None:
                    record = IdempotencyRecord(key=key, user_id=user_id)
                    self.db.add(record)
                record.request_hash = request_hash
                record.response = serialized
                record.expires_at = expires_at
            return True
        except (SQLAlchemyError, TypeError, ValueError) as e:
            logger.error(f"Failed to save idempotency record for key {key}: {e}")
            return False

    def with_idempotency(
        self,
        key: Optional[str],
        user_id: str,
        request_body: Any,
        handler: Callable[[], Dict[str, Any]],
    ) -> IdempotentResult:
        """
        Run handler at most once per (key, user, body) within the TTL.

        Without a key the handler simply runs. With a key, a stored response is
        replayed instead of running the handler; otherwise the handler runs and
        its response is stored.
        """
        if not key:
            return IdempotentResult(response=handler(), was_replayed=False)

        replay = self.check(key, user_id, request_body)
        if replay is not None:
            logger.info(f"Replaying stored response for idempotency key {key} (user {user_id})")
            return IdempotentResult(response=replay, was_replayed=True)

        marker = cache_key("idempotency", user_id, key)
        claimed = None
        if settings.IDEMPOTENCY_CLAIM_ENABLED:
            claimed = acquire_marker(marker, settings.IDEMPOTENCY_CLAIM_TTL_S)
            if claimed is False:
                raise IdempotencyInProgressError(key)

        try:
            response = handler()
            # Normalize through JSON so the first response and later replays are identical.
            response = json.loads(json.dumps(response, default=str))
            self.save(key, user_id, request_body, response)
            return IdempotentResult(response=response, was_replayed=False)
        finally:
            if claimed:
                release_marker(marker)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every expired record. Returns the number of rows removed."""
        now = now or _utcnow()
        deleted = (
            self.db.query(IdempotencyRecord)
            .filter(IdempotencyRecord.expires_at <= now)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return deleted
