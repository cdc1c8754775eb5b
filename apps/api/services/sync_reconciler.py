"""
Legacy sync protocol (table-mutation model).

Clients push whole entities grouped by kind, pull the full live snapshot, or
run a bidirectional batch comparison against it. Every write goes through
EntityStore; partial failures are reported in-band as conflicts and never
abort the rest of the batch.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import SyncData, generate_id
from services.broadcast import PlanBroadcastCollector
from services.checksum import calculate_checksum, canonicalize_for_storage
from services.entity_store import ACTION_DUPLICATE_PREVENTED, EntityStore

logger = logging.getLogger(__name__)


class PushKind(NamedTuple):
    field: str  # key under "changes" in a push, and under the pull response
    entity_type: str
    stats_prefix: str  # per-kind stats keys: <prefix>Processed, <prefix>DuplicatesPrevented, <prefix>Errors

    @property
    def processed_key(self) -> str:
        return f"{self.stats_prefix}Processed"

    @property
    def duplicates_key(self) -> str:
        return f"{self.stats_prefix}DuplicatesPrevented"

    @property
    def errors_key(self) -> str:
        return f"{self.stats_prefix}Errors"


PUSH_KINDS: Tuple[PushKind, ...] = (
    PushKind("entries", "logbook_entry", "entries"),
    PushKind("goals", "goal", "goals"),
    PushKind("practicePlans", "practice_plan", "plans"),
    PushKind("planOccurrences", "plan_occurrence", "occurrences"),
    PushKind("planTemplates", "plan_template", "templates"),
    PushKind("userPreferences", "user_preferences", "preferences"),
)

PULL_FIELDS: Dict[str, str] = {kind.entity_type: kind.field for kind in PUSH_KINDS}

# Enumerated fields stored lower-case.
ENUM_FIELDS: Dict[str, Tuple[str, ...]] = {
    "logbook_entry": ("instrument", "type", "mood"),
    "goal": ("instrument",),
}

# (accepted spelling, canonical storage name)
FIELD_ALIASES: Tuple[Tuple[str, str], ...] = (
    ("userId", "user_id"),
    ("goalIds", "goal_ids"),
    ("plan_id", "planId"),
    ("deleted_at", "deletedAt"),
)

PRACTICE_PLAN = "practice_plan"
PLAN_OCCURRENCE = "plan_occurrence"

# Per-item failures that are reported as conflicts instead of failing the push.
ITEM_ERRORS = (SQLAlchemyError, ValueError, TypeError)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_sync_token() -> str:
    return generate_id("sync")


def normalize_enum_fields(entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of data with the entity type's enumerated string fields lower-cased."""
    normalized = dict(data)
    for name in ENUM_FIELDS.get(entity_type, ()):
        value = normalized.get(name)
        if isinstance(value, str) and value:
            normalized[name] = value.lower()
    return normalized


def reconcile_field_names(item: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of item with alternate spellings folded into their canonical names."""
    reconciled = dict(item)
    for alias, canonical in FIELD_ALIASES:
        if alias in reconciled:
            value = reconciled.pop(alias)
            reconciled.setdefault(canonical, value)
    return reconciled


def _item_error_reason(error: Exception) -> str:
    original = getattr(error, "orig", None)
    return str(original or error) or error.__class__.__name__


@dataclass
class PushOutcome:
    response: Dict[str, Any]
    events: List[Dict[str, Any]] = field(default_factory=list)


class LegacySyncReconciler:
    """Push / pull / batch over EntityStore."""

    def __init__(self, db: Session, store: Optional[EntityStore] = None):
        self.db = db
        self.store = store or EntityStore(db)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull(self, user_id: str) -> Dict[str, Any]:
        """All live entities for the user, grouped by kind."""
        grouped: Dict[str, List[Dict[str, Any]]] = {kind.field: [] for kind in PUSH_KINDS}

        for row in self.store.get_all(user_id):
            field_name = PULL_FIELDS.get(row.entity_type)
            if field_name is None:
                continue
            try:
                data = self._parse_payload(row)
            except (ValueError, TypeError) as e:
                logger.warning(
                    f"Skipping unparseable {row.entity_type} {row.entity_id} for user {user_id}: {e}"
                )
                continue
            grouped[field_name].append(normalize_enum_fields(row.entity_type, data))

        metadata = None
        try:
            metadata = self.store.get_sync_metadata(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Error reading sync metadata for user {user_id}: {e}")

        sync_token = metadata.last_sync_token if metadata and metadata.last_sync_token else generate_sync_token()

        return {
            **grouped,
            "syncToken": sync_token,
            "timestamp": iso_now(),
        }

    @staticmethod
    def _parse_payload(row: SyncData) -> Dict[str, Any]:
        data = row.data
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        if not isinstance(data, dict):
            raise ValueError(f"payload is {type(data).__name__}, expected object")
        return data

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        user_id: str,
        changes: Dict[str, Any],
        device_id: Optional[str] = None,
    ) -> PushOutcome:
        """
        Apply a batch of client entities.

        Returns the response body plus the plan broadcast events to send once
        the transaction has committed.
        """
        stats: Dict[str, int] = {}
        for kind in PUSH_KINDS:
            stats[kind.processed_key] = 0
            stats[kind.duplicates_key] = 0
            stats[kind.errors_key] = 0
        # Totals across kinds
        stats["duplicatesPrevented"] = 0
        stats["errors"] = 0
        conflicts: List[Dict[str, Any]] = []
        collector = PlanBroadcastCollector()

        for kind in PUSH_KINDS:
            items = changes.get(kind.field) or []
            for item in items:
                reason = self._push_item(user_id, kind, item, device_id, stats, collector)
                if reason is not None:
                    entity_id = item.get("id") if isinstance(item, dict) else None
                    conflicts.append({
                        "entityId": entity_id,
                        "entityType": kind.entity_type,
                        "reason": reason,
                    })
                    stats[kind.errors_key] += 1
                    stats["errors"] += 1

        sync_token = generate_sync_token()
        self.store.update_sync_metadata(user_id, sync_token)

        if conflicts:
            logger.warning(f"Push for user {user_id} finished with {len(conflicts)} conflicts")
        logger.info(
            f"Push for user {user_id} applied",
            extra={"extra_fields": {"user_id": user_id, "device_id": device_id, **stats}},
        )

        response = {
            "success": True,
            "syncToken": sync_token,
            "conflicts": conflicts,
            "stats": stats,
        }
        return PushOutcome(response=response, events=collector.build_events())

    def _push_item(
        self,
        user_id: str,
        kind: PushKind,
        item: Any,
        device_id: Optional[str],
        stats: Dict[str, int],
        collector: PlanBroadcastCollector,
    ) -> Optional[str]:
        """Apply one item. Returns a conflict reason, or None on success."""
        if not isinstance(item, dict):
            return "item is not an object"

        data = reconcile_field_names(item)
        entity_id = data.get("id")
        if entity_id is None or entity_id == "":
            return "missing id"
        entity_id = str(entity_id)
        if not data.get("user_id"):
            data["user_id"] = user_id

        try:
            with self.db.begin_nested():
                deleted_at = data.get("deletedAt")
                if deleted_at:
                    if self.store.soft_delete(user_id, kind.entity_type, entity_id, deleted_at):
                        stats[kind.processed_key] += 1
                        return None
                    # Never synced before: keep the tombstone so other devices see it.

                data = canonicalize_for_storage(normalize_enum_fields(kind.entity_type, data))
                checksum = calculate_checksum(data)

                previous_status = None
                if kind.entity_type == PLAN_OCCURRENCE:
                    existing = self.store.get_entity(user_id, kind.entity_type, entity_id)
                    if existing is not None and existing.deleted_at is None and isinstance(existing.data, dict):
                        previous_status = existing.data.get("status")

                result = self.store.upsert(
                    user_id=user_id,
                    entity_type=kind.entity_type,
                    entity_id=entity_id,
                    data=data,
                    checksum=checksum,
                    device_id=device_id,
                )
        except ITEM_ERRORS as e:
            logger.warning(f"Failed to apply {kind.entity_type} {entity_id} for user {user_id}: {e}")
            return _item_error_reason(e)

        if result.action == ACTION_DUPLICATE_PREVENTED:
            stats[kind.duplicates_key] += 1
            stats["duplicatesPrevented"] += 1
        stats[kind.processed_key] += 1

        if kind.entity_type == PRACTICE_PLAN:
            collector.record_plan(data, result)
        elif kind.entity_type == PLAN_OCCURRENCE:
            collector.record_occurrence(data, result, previous_status=previous_status)
        return None

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def batch(
        self,
        user_id: str,
        entities: List[Dict[str, Any]],
        device_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Bidirectional reconciliation against the live cloud snapshot.

        Last write wins by client version; a stale client version is reported
        as a conflict and nothing is written. Cloud entities the client did not
        mention are counted as downloads (the pull transmits them).

        An id repeated within one batch is compared against the row as the
        earlier item left it. A failed snapshot read fails the batch.
        """
        cloud: Dict[Tuple[str, str], Optional[SyncData]] = {
            (row.entity_type, row.entity_id): row for row in self.store.get_all(user_id, strict=True)
        }
        referenced: Set[Tuple[str, str]] = set()
        uploaded = 0
        conflicts: List[Dict[str, Any]] = []

        for entity in entities:
            entity_type = entity["type"]
            entity_id = str(entity["id"])
            client_version = int(entity.get("version") or 0)
            key = (entity_type, entity_id)
            referenced.add(key)
            cloud_row = cloud.get(key)

            try:
                with self.db.begin_nested():
                    data = canonicalize_for_storage(entity.get("data"))
                    checksum = entity.get("checksum") or calculate_checksum(data)

                    if cloud_row is None:
                        result = self.store.upsert(
                            user_id, entity_type, entity_id, data, checksum,
                            version=1, device_id=device_id,
                        )
                    elif cloud_row.checksum == checksum:
                        continue
                    elif client_version >= cloud_row.version:
                        result = self.store.upsert(
                            user_id, entity_type, entity_id, data, checksum,
                            version=client_version + 1, device_id=device_id,
                        )
                    else:
                        logger.info(
                            f"Batch conflict on {entity_type} {entity_id} for user {user_id}: "
                            f"local v{client_version} < remote v{cloud_row.version}"
                        )
                        conflicts.append({
                            "entityId": entity_id,
                            "localVersion": client_version,
                            "remoteVersion": cloud_row.version,
                        })
                        continue
            except ITEM_ERRORS as e:
                logger.warning(f"Batch failed to apply {entity_type} {entity_id} for user {user_id}: {e}")
                conflicts.append({
                    "entityId": entity_id,
                    "entityType": entity_type,
                    "reason": _item_error_reason(e),
                })
                continue

            if result.wrote:
                uploaded += 1
                cloud[key] = self.store.get_entity(user_id, entity_type, entity_id)

        new_sync_token = generate_sync_token()
        self.store.update_sync_metadata(user_id, new_sync_token)

        return {
            "uploaded": uploaded,
            "downloaded": sum(1 for key, row in cloud.items() if row is not None and key not in referenced),
            "conflicts": conflicts,
            "newSyncToken": new_sync_token,
        }

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, user_id: str) -> Dict[str, Any]:
        metadata = self.store.get_sync_metadata(user_id)
        entity_count = len(self.store.get_all(user_id))
        last_sync_time = metadata.last_sync_time if metadata else None
        return {
            "lastSyncTime": last_sync_time.isoformat() if last_sync_time else None,
            "syncToken": metadata.last_sync_token if metadata else None,
            "pendingChanges": 0,
            "deviceCount": metadata.device_count if metadata and metadata.device_count else 1,
            "entityCount": entity_count,
        }
