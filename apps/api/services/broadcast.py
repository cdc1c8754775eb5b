"""
Real-time broadcast hand-off for planning changes.

After a push commits, plan and occurrence writes are folded into one event per
plan (never one per row write) and posted to the external fan-out service.
Delivery is best-effort: failures are logged and swallowed, and the push
response never waits on more than the bounded request timeout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from core.config import settings
from services.entity_store import ACTION_CREATED, UpsertResult

logger = logging.getLogger(__name__)

PLAN_CREATED = "PLAN_CREATED"
PLAN_UPDATED = "PLAN_UPDATED"
PLAN_OCCURRENCE_COMPLETED = "PLAN_OCCURRENCE_COMPLETED"

# When several writes touch one plan in a push, the most significant kind wins.
EVENT_PRECEDENCE = {
    PLAN_UPDATED: 1,
    PLAN_OCCURRENCE_COMPLETED: 2,
    PLAN_CREATED: 3,
}

COMPLETED_STATUS = "completed"


@dataclass
class PlanBroadcastCandidate:
    plan_id: str
    event_type: str
    seqs: List[int] = field(default_factory=list)
    plan: Optional[Dict[str, Any]] = None
    occurrences: List[Dict[str, Any]] = field(default_factory=list)
    completed_occurrence: Optional[Dict[str, Any]] = None

    @property
    def seq(self) -> int:
        return max(self.seqs)

    def promote(self, event_type: str) -> None:
        if EVENT_PRECEDENCE[event_type] > EVENT_PRECEDENCE[self.event_type]:
            self.event_type = event_type

    def to_event(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "type": self.event_type,
            "planId": self.plan_id,
            "seq": self.seq,
        }
        if self.event_type == PLAN_OCCURRENCE_COMPLETED and self.completed_occurrence is not None:
            event["occurrence"] = self.completed_occurrence
        if self.plan is not None:
            event["plan"] = self.plan
        if self.occurrences:
            event["occurrences"] = self.occurrences
        return event


class PlanBroadcastCollector:
    """Accumulates plan/occurrence writes during a push, keyed by plan id."""

    def __init__(self):
        self._candidates: Dict[str, PlanBroadcastCandidate] = {}

    def __len__(self) -> int:
        return len(self._candidates)

    def _candidate(self, plan_id: str, event_type: str) -> PlanBroadcastCandidate:
        candidate = self._candidates.get(plan_id)
        if candidate is None:
            candidate = PlanBroadcastCandidate(plan_id=plan_id, event_type=event_type)
            self._candidates[plan_id] = candidate
        else:
            candidate.promote(event_type)
        return candidate

    def record_plan(self, plan: Dict[str, Any], result: UpsertResult) -> None:
        if not result.wrote or result.seq is None:
            return
        plan_id = plan.get("id")
        if not plan_id:
            return
        event_type = PLAN_CREATED if result.action == ACTION_CREATED else PLAN_UPDATED
        candidate = self._candidate(str(plan_id), event_type)
        candidate.plan = plan
        candidate.seqs.append(result.seq)

    def record_occurrence(
        self,
        occurrence: Dict[str, Any],
        result: UpsertResult,
        previous_status: Optional[str] = None,
    ) -> None:
        if not result.wrote or result.seq is None:
            return
        plan_id = occurrence.get("planId")
        if not plan_id:
            return
        became_completed = (
            occurrence.get("status") == COMPLETED_STATUS and previous_status != COMPLETED_STATUS
        )
        event_type = PLAN_OCCURRENCE_COMPLETED if became_completed else PLAN_UPDATED
        candidate = self._candidate(str(plan_id), event_type)
        candidate.occurrences.append(occurrence)
        if became_completed:
            candidate.completed_occurrence = occurrence
        candidate.seqs.append(result.seq)

    def build_events(self) -> List[Dict[str, Any]]:
        """One event per plan, carrying the highest seq touched, in seq order."""
        candidates = sorted(self._candidates.values(), key=lambda c: c.seq)
        return [c.to_event() for c in candidates]


class BroadcastNotifier:
    """Posts sequence-numbered events to the real-time fan-out endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url if url is not None else settings.SYNC_BROADCAST_URL
        self.secret = secret if secret is not None else settings.SYNC_BROADCAST_SECRET
        self.timeout = timeout if timeout is not None else settings.SYNC_BROADCAST_TIMEOUT_S

    def broadcast(self, user_id: str, events: List[Dict[str, Any]]) -> bool:
        """
        Deliver events in a single request. Returns True on a 2xx response.

        Never raises.
        """
        if not events:
            return False
        if not self.url:
            logger.debug(f"Broadcast endpoint not configured; dropping {len(events)} events for user {user_id}")
            return False

        timestamp = datetime.now(timezone.utc).isoformat()
        payload = {
            "userId": user_id,
            "events": [{**event, "timestamp": timestamp} for event in events],
        }
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Sync-Secret"] = self.secret

        try:
            response = requests.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Broadcast to {self.url} failed for user {user_id}: {e}")
            return False

        if not response.ok:
            logger.warning(
                f"Broadcast to {self.url} rejected for user {user_id}: "
                f"{response.status_code} {response.text[:200]}"
            )
            return False

        logger.info(f"Broadcast {len(events)} events for user {user_id} (max seq {max(e['seq'] for e in events)})")
        return True


def dispatch_plan_broadcast(user_id: str, events: List[Dict[str, Any]]) -> None:
    """
    Fire-and-forget delivery: inline post, or a Celery task when
    SYNC_BROADCAST_ASYNC is set. Never raises.
    """
    if not events:
        return

    if settings.SYNC_BROADCAST_ASYNC:
        try:
            from tasks.sync_tasks import deliver_sync_broadcast_task

            deliver_sync_broadcast_task.delay(user_id, events)
        except Exception as e:
            logger.warning(f"Failed to enqueue broadcast for user {user_id}: {e}")
        return

    try:
        BroadcastNotifier().broadcast(user_id, events)
    except Exception as e:
        logger.warning(f"Broadcast dispatch failed for user {user_id}: {e}", exc_info=True)
