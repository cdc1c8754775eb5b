"""
Tests for the legacy sync reconciler: push, pull, batch and status.
"""
import pytest
from sqlalchemy.exc import OperationalError

from models import SyncData
from services.broadcast import PLAN_CREATED, PLAN_OCCURRENCE_COMPLETED, PLAN_UPDATED
from services.checksum import calculate_checksum
from services.entity_store import EntityStore
from services.sync_reconciler import (
    LegacySyncReconciler,
    normalize_enum_fields,
    reconcile_field_names,
)


@pytest.fixture
def reconciler(db_session):
    return LegacySyncReconciler(db_session)


def _entry(entry_id="e1", **fields):
    entry = {"id": entry_id, "duration": 30, "instrument": "piano", "type": "practice"}
    entry.update(fields)
    return entry


class TestFieldNormalization:
    """Alias folding and enum lower-casing"""

    def test_aliases_fold_into_canonical_names(self):
        item = {"id": "o1", "plan_id": "p1", "userId": "u1", "goalIds": ["g1"], "deleted_at": "t"}
        assert reconcile_field_names(item) == {
            "id": "o1", "planId": "p1", "user_id": "u1", "goal_ids": ["g1"], "deletedAt": "t",
        }

    def test_canonical_name_wins(self):
        assert reconcile_field_names({"planId": "p1", "plan_id": "stale"}) == {"planId": "p1"}

    def test_entry_enums_lowercased(self):
        result = normalize_enum_fields("logbook_entry", {"instrument": "PIANO", "type": "Lesson", "mood": "Excited", "notes": "KEEP"})
        assert result == {"instrument": "piano", "type": "lesson", "mood": "excited", "notes": "KEEP"}

    def test_goal_only_instrument_lowercased(self):
        result = normalize_enum_fields("goal", {"instrument": "GUITAR", "type": "Repertoire"})
        assert result == {"instrument": "guitar", "type": "Repertoire"}

    def test_non_string_enum_values_untouched(self):
        assert normalize_enum_fields("logbook_entry", {"mood": None, "type": 3}) == {"mood": None, "type": 3}


class TestPush:
    """Applying client batches"""

    def test_new_entry_then_pull(self, reconciler, user_id):
        outcome = reconciler.push(user_id, {"entries": [_entry()]})
        response = outcome.response

        assert response["success"] is True
        assert response["conflicts"] == []
        assert response["stats"]["entriesProcessed"] == 1
        assert response["syncToken"].startswith("sync_")

        pulled = reconciler.pull(user_id)
        assert [entry["id"] for entry in pulled["entries"]] == ["e1"]
        assert pulled["syncToken"] == response["syncToken"]

    def test_stats_shape(self, reconciler, user_id):
        stats = reconciler.push(user_id, {}).response["stats"]
        expected = {"duplicatesPrevented": 0, "errors": 0}
        for prefix in ("entries", "goals", "plans", "occurrences", "templates", "preferences"):
            expected[f"{prefix}Processed"] = 0
            expected[f"{prefix}DuplicatesPrevented"] = 0
            expected[f"{prefix}Errors"] = 0
        assert stats == expected

    def test_stats_broken_out_per_kind(self, reconciler, user_id):
        reconciler.push(user_id, {"entries": [_entry("e1")], "goals": [{"id": "g1", "title": "Scales"}]})

        stats = reconciler.push(user_id, {
            "entries": [_entry("e1"), {"duration": 5}],
            "goals": [{"id": "g1", "title": "Scales"}, {"id": "g2", "title": "Arpeggios"}],
        }).response["stats"]

        assert stats["entriesProcessed"] == 1
        assert stats["entriesDuplicatesPrevented"] == 0
        assert stats["entriesErrors"] == 1
        assert stats["goalsProcessed"] == 2
        assert stats["goalsErrors"] == 0
        assert stats["errors"] == 1

    def test_every_kind_is_stored_under_its_type(self, reconciler, db_session, user_id):
        changes = {
            "entries": [_entry()],
            "goals": [{"id": "g1", "title": "Learn Chopin"}],
            "practicePlans": [{"id": "p1", "title": "Morning"}],
            "planOccurrences": [{"id": "o1", "planId": "p1"}],
            "planTemplates": [{"id": "t1", "name": "Scales"}],
            "userPreferences": [{"id": "prefs", "theme": "dark"}],
        }
        stats = reconciler.push(user_id, changes).response["stats"]

        assert stats["entriesProcessed"] == stats["goalsProcessed"] == stats["plansProcessed"] == 1
        assert stats["occurrencesProcessed"] == stats["templatesProcessed"] == stats["preferencesProcessed"] == 1
        types = {row.entity_type for row in db_session.query(SyncData).all()}
        assert types == {"logbook_entry", "goal", "practice_plan", "plan_occurrence", "plan_template", "user_preferences"}

    def test_user_id_defaults_to_caller(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry()]})
        row = db_session.query(SyncData).one()
        assert row.user_id == user_id
        assert row.data["user_id"] == user_id

    def test_enum_fields_stored_lowercase(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry(instrument="PIANO", mood="Satisfied")]})
        row = db_session.query(SyncData).one()
        assert row.data["instrument"] == "piano"
        assert row.data["mood"] == "satisfied"

    def test_device_attribution(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry()]}, device_id="ipad")
        assert db_session.query(SyncData).one().device_id == "ipad"

    def test_repush_updates_version(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry()]})
        reconciler.push(user_id, {"entries": [_entry(duration=45)]})
        row = db_session.query(SyncData).one()
        assert row.version == 2
        assert row.data["duration"] == 45

    def test_soft_delete_via_push(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry()]})
        response = reconciler.push(user_id, {"entries": [{"id": "e1", "deletedAt": "2026-05-01T12:00:00.000Z"}]}).response

        assert response["stats"]["entriesProcessed"] == 1
        assert reconciler.pull(user_id)["entries"] == []
        rows = EntityStore(db_session).get_all(user_id, include_deleted=True)
        assert len(rows) == 1
        assert rows[0].deleted_at == "2026-05-01T12:00:00.000Z"
        assert rows[0].data["duration"] == 30

    def test_soft_delete_alias(self, reconciler, user_id):
        reconciler.push(user_id, {"entries": [_entry()]})
        reconciler.push(user_id, {"entries": [{"id": "e1", "deleted_at": "2026-05-01T12:00:00Z"}]})
        assert reconciler.pull(user_id)["entries"] == []

    def test_delete_of_unsynced_entity_keeps_tombstone(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry("local-only", deletedAt="2026-05-01T12:00:00Z")]})
        row = db_session.query(SyncData).one()
        assert row.entity_id == "local-only"
        assert row.deleted_at == "2026-05-01T12:00:00Z"

    def test_missing_id_is_a_conflict(self, reconciler, user_id):
        response = reconciler.push(user_id, {"entries": [{"duration": 10}, _entry("e2")]}).response

        assert response["conflicts"] == [{"entityId": None, "entityType": "logbook_entry", "reason": "missing id"}]
        assert response["stats"]["errors"] == 1
        assert response["stats"]["entriesProcessed"] == 1

    def test_item_failure_does_not_abort_batch(self, reconciler, db_session, user_id, monkeypatch):
        original_upsert = reconciler.store.upsert

        def flaky_upsert(**kwargs):
            if kwargs["entity_id"] == "bad":
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return original_upsert(**kwargs)

        monkeypatch.setattr(reconciler.store, "upsert", flaky_upsert)
        response = reconciler.push(user_id, {"entries": [_entry("e1"), _entry("bad"), _entry("e3")]}).response

        assert response["success"] is True
        assert len(response["conflicts"]) == 1
        conflict = response["conflicts"][0]
        assert conflict["entityId"] == "bad"
        assert conflict["entityType"] == "logbook_entry"
        assert "disk I/O error" in conflict["reason"]
        assert response["stats"]["entriesProcessed"] == 2
        assert sorted(row.entity_id for row in db_session.query(SyncData).all()) == ["e1", "e3"]

    def test_sync_metadata_updated(self, reconciler, db_session, user_id):
        token = reconciler.push(user_id, {}).response["syncToken"]
        metadata = EntityStore(db_session).get_sync_metadata(user_id)
        assert metadata.last_sync_token == token
        assert metadata.last_sync_time is not None

    def test_tokens_change_every_push(self, reconciler, user_id):
        first = reconciler.push(user_id, {}).response["syncToken"]
        second = reconciler.push(user_id, {}).response["syncToken"]
        assert first != second


class TestPushBroadcastEvents:
    """Plan events collected during a push"""

    def test_new_plan_with_occurrence_is_one_created_event(self, reconciler, user_id):
        outcome = reconciler.push(user_id, {
            "practicePlans": [{"id": "p1", "title": "Morning"}],
            "planOccurrences": [{"id": "o1", "planId": "p1"}, {"id": "o2", "plan_id": "p1"}],
        })

        assert len(outcome.events) == 1
        event = outcome.events[0]
        assert event["type"] == PLAN_CREATED
        assert event["planId"] == "p1"
        assert event["plan"]["title"] == "Morning"
        assert [o["id"] for o in event["occurrences"]] == ["o1", "o2"]
        assert event["seq"] == 3

    def test_occurrence_update_is_plan_updated(self, reconciler, user_id):
        reconciler.push(user_id, {"practicePlans": [{"id": "p1"}], "planOccurrences": [{"id": "o1", "planId": "p1"}]})
        outcome = reconciler.push(user_id, {"planOccurrences": [{"id": "o1", "planId": "p1", "notes": "moved"}]})

        assert [e["type"] for e in outcome.events] == [PLAN_UPDATED]
        assert "plan" not in outcome.events[0]

    def test_occurrence_completion(self, reconciler, user_id):
        reconciler.push(user_id, {"practicePlans": [{"id": "p1"}], "planOccurrences": [{"id": "o1", "planId": "p1"}]})
        outcome = reconciler.push(user_id, {"planOccurrences": [{"id": "o1", "planId": "p1", "status": "completed"}]})

        event = outcome.events[0]
        assert event["type"] == PLAN_OCCURRENCE_COMPLETED
        assert event["occurrence"]["id"] == "o1"

    def test_already_completed_occurrence_is_plain_update(self, reconciler, user_id):
        reconciler.push(user_id, {"planOccurrences": [{"id": "o1", "planId": "p1", "status": "completed"}]})
        outcome = reconciler.push(user_id, {"planOccurrences": [{"id": "o1", "planId": "p1", "status": "completed", "notes": "x"}]})
        assert outcome.events[0]["type"] == PLAN_UPDATED

    def test_events_ordered_by_seq(self, reconciler, user_id):
        outcome = reconciler.push(user_id, {
            "practicePlans": [{"id": "p1"}, {"id": "p2"}],
            "planOccurrences": [{"id": "o1", "planId": "p1"}],
        })
        assert [e["planId"] for e in outcome.events] == ["p2", "p1"]
        assert [e["seq"] for e in outcome.events] == [2, 3]

    def test_entries_and_deletes_do_not_broadcast(self, reconciler, user_id):
        reconciler.push(user_id, {"practicePlans": [{"id": "p1"}]})
        outcome = reconciler.push(user_id, {
            "entries": [_entry()],
            "practicePlans": [{"id": "p1", "deletedAt": "2026-01-01T00:00:00Z"}],
        })
        assert outcome.events == []


class TestPull:
    """Snapshot reads"""

    def test_empty_pull_shape(self, reconciler, user_id):
        pulled = reconciler.pull(user_id)
        for field in ("entries", "goals", "practicePlans", "planOccurrences", "planTemplates", "userPreferences"):
            assert pulled[field] == []
        assert pulled["syncToken"].startswith("sync_")
        assert pulled["timestamp"].endswith("Z")

    def test_enum_fields_normalized_on_read(self, reconciler, db_session, user_id):
        data = {"id": "e1", "instrument": "VIOLIN", "mood": "Frustrated"}
        EntityStore(db_session).upsert(user_id, "logbook_entry", "e1", data, calculate_checksum(data))

        entry = reconciler.pull(user_id)["entries"][0]
        assert entry["instrument"] == "violin"
        assert entry["mood"] == "frustrated"

    def test_unparseable_payload_skipped(self, reconciler, db_session, user_id):
        reconciler.push(user_id, {"entries": [_entry()]})
        db_session.add(SyncData(user_id=user_id, entity_type="logbook_entry", entity_id="broken", data=[1, 2], checksum="x"))
        db_session.flush()

        assert [entry["id"] for entry in reconciler.pull(user_id)["entries"]] == ["e1"]

    def test_unknown_entity_types_not_pulled(self, reconciler, db_session, user_id):
        data = {"id": "r1"}
        EntityStore(db_session).upsert(user_id, "repertoire_item", "r1", data, calculate_checksum(data))
        pulled = reconciler.pull(user_id)
        assert all(pulled[field] == [] for field in ("entries", "goals", "practicePlans"))

    def test_pull_groups_plans(self, reconciler, user_id):
        reconciler.push(user_id, {"practicePlans": [{"id": "p1"}], "planOccurrences": [{"id": "o1", "planId": "p1"}]})
        pulled = reconciler.pull(user_id)
        assert [p["id"] for p in pulled["practicePlans"]] == ["p1"]
        assert [o["id"] for o in pulled["planOccurrences"]] == ["o1"]


class TestBatch:
    """Bidirectional reconciliation"""

    def _seed(self, db_session, user_id, entity_id, data, version=1):
        return EntityStore(db_session).upsert(
            user_id, "logbook_entry", entity_id, data, calculate_checksum(data), version=version
        )

    def test_new_entity_uploaded_at_version_one(self, reconciler, db_session, user_id):
        data = {"id": "e1", "duration": 10}
        result = reconciler.batch(user_id, [
            {"type": "logbook_entry", "id": "e1", "data": data, "checksum": calculate_checksum(data), "version": 5},
        ])

        assert result["uploaded"] == 1
        assert result["conflicts"] == []
        assert result["newSyncToken"].startswith("sync_")
        assert EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1").version == 1

    def test_stale_client_version_is_conflict(self, reconciler, db_session, user_id):
        cloud = {"id": "e1", "duration": 30}
        self._seed(db_session, user_id, "e1", cloud, version=3)

        local = {"id": "e1", "duration": 99}
        result = reconciler.batch(user_id, [
            {"type": "logbook_entry", "id": "e1", "data": local, "checksum": calculate_checksum(local), "version": 1},
        ])

        assert result["uploaded"] == 0
        assert result["conflicts"] == [{"entityId": "e1", "localVersion": 1, "remoteVersion": 3}]
        row = EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1")
        assert row.version == 3
        assert row.data == cloud

    def test_repeated_stale_entity_is_never_written(self, reconciler, db_session, user_id):
        cloud = {"id": "e1", "duration": 30}
        self._seed(db_session, user_id, "e1", cloud, version=3)
        self._seed(db_session, user_id, "e2", {"id": "e2"})

        local = {"id": "e1", "duration": 99}
        item = {"type": "logbook_entry", "id": "e1", "data": local, "checksum": calculate_checksum(local), "version": 1}
        result = reconciler.batch(user_id, [item, dict(item)])

        assert result["uploaded"] == 0
        assert result["conflicts"] == [
            {"entityId": "e1", "localVersion": 1, "remoteVersion": 3},
            {"entityId": "e1", "localVersion": 1, "remoteVersion": 3},
        ]
        assert result["downloaded"] == 1
        row = EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1")
        assert row.version == 3
        assert row.data == cloud

    def test_repeated_new_entity_written_once(self, reconciler, db_session, user_id):
        data = {"id": "e1", "duration": 10}
        item = {"type": "logbook_entry", "id": "e1", "data": data, "checksum": calculate_checksum(data), "version": 0}
        result = reconciler.batch(user_id, [item, dict(item)])

        assert result["uploaded"] == 1
        assert result["conflicts"] == []
        assert result["downloaded"] == 0
        assert EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1").version == 1

    def test_snapshot_failure_fails_the_batch(self, reconciler, db_session, user_id, monkeypatch):
        cloud = {"id": "e1", "duration": 30}
        self._seed(db_session, user_id, "e1", cloud, version=3)

        def broken_get_all(user_id, entity_type=None, include_deleted=False, strict=False):
            assert strict is True
            raise OperationalError("SELECT", {}, Exception("database unavailable"))

        monkeypatch.setattr(reconciler.store, "get_all", broken_get_all)
        local = {"id": "e1", "duration": 99}
        with pytest.raises(OperationalError):
            reconciler.batch(user_id, [
                {"type": "logbook_entry", "id": "e1", "data": local, "checksum": calculate_checksum(local), "version": 1},
            ])

        row = EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1")
        assert row.version == 3
        assert row.data == cloud

    def test_newer_client_version_wins(self, reconciler, db_session, user_id):
        self._seed(db_session, user_id, "e1", {"id": "e1", "duration": 30}, version=2)

        local = {"id": "e1", "duration": 60}
        result = reconciler.batch(user_id, [
            {"type": "logbook_entry", "id": "e1", "data": local, "checksum": calculate_checksum(local), "version": 2},
        ])

        assert result["uploaded"] == 1
        row = EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1")
        assert row.version == 3
        assert row.data == local

    def test_equal_checksum_is_noop(self, reconciler, db_session, user_id):
        data = {"id": "e1", "duration": 30}
        self._seed(db_session, user_id, "e1", data)

        result = reconciler.batch(user_id, [
            {"type": "logbook_entry", "id": "e1", "data": data, "checksum": calculate_checksum(data), "version": 0},
        ])

        assert result["uploaded"] == 0
        assert result["conflicts"] == []
        assert EntityStore(db_session).get_entity(user_id, "logbook_entry", "e1").version == 1

    def test_unreferenced_cloud_entities_counted_as_downloads(self, reconciler, db_session, user_id):
        self._seed(db_session, user_id, "e1", {"id": "e1"})
        self._seed(db_session, user_id, "e2", {"id": "e2"})
        self._seed(db_session, user_id, "e3", {"id": "e3"})

        data = {"id": "e1"}
        result = reconciler.batch(user_id, [
            {"type": "logbook_entry", "id": "e1", "data": data, "checksum": calculate_checksum(data), "version": 1},
        ])

        assert result["downloaded"] == 2

    def test_checksum_computed_when_absent(self, reconciler, db_session, user_id):
        data = {"id": "e1", "duration": 10}
        reconciler.batch(user_id, [{"type": "goal", "id": "e1", "data": data, "checksum": None, "version": 0}])
        row = EntityStore(db_session).get_entity(user_id, "goal", "e1")
        assert row.checksum == calculate_checksum(data)

    def test_updates_sync_token(self, reconciler, db_session, user_id):
        result = reconciler.batch(user_id, [])
        assert EntityStore(db_session).get_sync_metadata(user_id).last_sync_token == result["newSyncToken"]


class TestStatus:
    """Legacy status summary"""

    def test_never_synced(self, reconciler, user_id):
        assert reconciler.status(user_id) == {
            "lastSyncTime": None,
            "syncToken": None,
            "pendingChanges": 0,
            "deviceCount": 1,
            "entityCount": 0,
        }

    def test_after_push(self, reconciler, user_id):
        token = reconciler.push(user_id, {"entries": [_entry("e1"), _entry("e2")]}).response["syncToken"]
        status = reconciler.status(user_id)
        assert status["syncToken"] == token
        assert status["entityCount"] == 2
        assert status["lastSyncTime"] is not None
