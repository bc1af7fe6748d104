from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import sys
import tempfile
import threading
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from release_guard.db.base import Base
from release_guard.domain.deployment_record import DeploymentRecord
from release_guard.domain.deployment_state_machine import (
    DeploymentNotFoundError,
    DeploymentStatus,
    TransitionRuleError,
)
from release_guard.services.deployment_persistence import (
    HISTORY_SCHEMA_VERSION,
    JsonDocumentPersistence,
    SqlPersistence,
)
from release_guard.services.deployment_store import DeploymentRecordStore


class FailingPersistence:
    def load(self) -> list[DeploymentRecord]:
        return []

    def save(self, records, changed) -> None:
        raise OSError("disk full")


class JsonDeploymentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.history_path = Path(self._tmp.name) / "deployments" / "deployments.json"
        self.store = DeploymentRecordStore(JsonDocumentPersistence(self.history_path))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _append(self, revision: str, previous_id: str | None = None) -> DeploymentRecord:
        return self.store.append(
            DeploymentRecord(revision=revision, ref="refs/heads/main", initiated_by="alice", previous_id=previous_id)
        )

    def test_missing_history_file_starts_empty(self) -> None:
        self.assertEqual(self.store.list(), [])
        with self.assertRaises(DeploymentNotFoundError):
            self.store.current()

    def test_list_is_most_recent_first_with_strictly_increasing_created_at(self) -> None:
        frozen = datetime(2026, 1, 1, tzinfo=timezone.utc)
        ids = []
        for revision in ("aaaaaaa", "bbbbbbb", "ccccccc"):
            record = self.store.append(
                DeploymentRecord(revision=revision, ref="refs/heads/main", initiated_by="ci", created_at=frozen)
            )
            ids.append(record.id)

        records = self.store.list()
        self.assertEqual([item.id for item in records], list(reversed(ids)))
        created = [item.created_at for item in records]
        self.assertEqual(created, sorted(created, reverse=True))
        self.assertEqual(len(set(created)), 3)

    def test_append_rejects_unknown_previous_id(self) -> None:
        with self.assertRaises(DeploymentNotFoundError):
            self._append("aaaaaaa", previous_id="deploy-missing")
        self.assertEqual(self.store.list(), [])

    def test_success_promotes_current_and_flags_previous_release(self) -> None:
        first = self._append("aaaaaaa")
        self.store.update_status(first.id, DeploymentStatus.SUCCESS, health_check_passed=True)
        second = self._append("bbbbbbb", previous_id=first.id)

        updated = self.store.update_status(second.id, DeploymentStatus.SUCCESS, health_check_passed=True)

        self.assertEqual(self.store.current().id, second.id)
        self.assertTrue(updated.health_check_passed)
        self.assertTrue(self.store.get(first.id).rollback_eligible)
        self.assertFalse(self.store.get(second.id).rollback_eligible)
        flagged = [item.id for item in self.store.list() if item.rollback_eligible]
        self.assertEqual(flagged, [first.id])

    def test_pending_record_is_never_current(self) -> None:
        first = self._append("aaaaaaa")
        self.store.update_status(first.id, DeploymentStatus.SUCCESS, health_check_passed=True)
        self._append("bbbbbbb", previous_id=first.id)

        self.assertEqual(self.store.current().id, first.id)

    def test_current_falls_back_when_newest_success_fails_recheck(self) -> None:
        first = self._append("aaaaaaa")
        self.store.update_status(first.id, DeploymentStatus.SUCCESS, health_check_passed=True)
        second = self._append("bbbbbbb", previous_id=first.id)
        self.store.update_status(second.id, DeploymentStatus.SUCCESS, health_check_passed=True)

        self.store.update_status(second.id, DeploymentStatus.FAILED, health_check_passed=False)

        self.assertEqual(self.store.current().id, first.id)
        self.assertFalse(self.store.get(first.id).rollback_eligible)

    def test_superseded_record_cannot_be_promoted(self) -> None:
        first = self._append("aaaaaaa")
        self.store.update_status(first.id, DeploymentStatus.FAILED, health_check_passed=False)
        second = self._append("bbbbbbb")
        self.store.update_status(second.id, DeploymentStatus.SUCCESS, health_check_passed=True)

        with self.assertRaises(TransitionRuleError):
            self.store.update_status(first.id, DeploymentStatus.SUCCESS, health_check_passed=True)
        self.assertEqual(self.store.get(first.id).status, DeploymentStatus.FAILED)

    def test_rolled_back_is_terminal(self) -> None:
        record = self._append("aaaaaaa")
        self.store.update_status(record.id, DeploymentStatus.ROLLED_BACK)

        with self.assertRaises(TransitionRuleError):
            self.store.update_status(record.id, DeploymentStatus.SUCCESS)

    def test_update_unknown_id_raises_not_found(self) -> None:
        with self.assertRaises(DeploymentNotFoundError):
            self.store.update_status("deploy-missing", DeploymentStatus.FAILED)

    def test_returned_records_are_copies(self) -> None:
        record = self._append("aaaaaaa")
        record.status = DeploymentStatus.SUCCESS
        self.assertEqual(self.store.get(record.id).status, DeploymentStatus.PENDING)

    def test_history_round_trips_through_versioned_document(self) -> None:
        first = self._append("aaaaaaa")
        self.store.update_status(first.id, DeploymentStatus.SUCCESS, health_check_passed=True)
        second = self._append("bbbbbbb", previous_id=first.id)
        self.store.update_status(second.id, DeploymentStatus.FAILED, health_check_passed=False)

        document = json.loads(self.history_path.read_text(encoding="utf-8"))
        self.assertEqual(document["schema_version"], HISTORY_SCHEMA_VERSION)
        self.assertEqual([item["id"] for item in document["deployments"]], [second.id, first.id])

        reloaded = DeploymentRecordStore(JsonDocumentPersistence(self.history_path))
        self.assertEqual(
            [(item.id, item.status, item.previous_id, item.created_at) for item in reloaded.list()],
            [(item.id, item.status, item.previous_id, item.created_at) for item in self.store.list()],
        )
        self.assertEqual(reloaded.current().id, first.id)
        self.assertEqual(list(self.history_path.parent.glob("*.tmp")), [])

    def test_unreadable_history_is_quarantined_and_store_starts_empty(self) -> None:
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        self.history_path.write_text("{not json", encoding="utf-8")

        store = DeploymentRecordStore(JsonDocumentPersistence(self.history_path))

        self.assertEqual(store.list(), [])
        self.assertFalse(self.history_path.exists())
        self.assertEqual(len(list(self.history_path.parent.glob("deployments.json.corrupt-*"))), 1)

    def test_legacy_history_document_is_imported(self) -> None:
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        legacy = [
            {
                "id": "deploy-2",
                "commit": "bbbbbbbcafe",
                "ref": "refs/heads/main",
                "user": "bob",
                "timestamp": "2026-01-02T00:00:00.000Z",
                "status": "pending",
                "healthCheckPassed": False,
                "rollbackAvailable": False,
                "previousDeploymentId": "deploy-1",
            },
            {
                "id": "deploy-1",
                "commit": "aaaaaaa",
                "ref": "refs/heads/main",
                "user": "alice",
                "timestamp": "2026-01-01T00:00:00.000Z",
                "status": "success",
                "healthCheckPassed": True,
                "rollbackAvailable": False,
            },
        ]
        self.history_path.write_text(json.dumps(legacy), encoding="utf-8")

        store = DeploymentRecordStore(JsonDocumentPersistence(self.history_path))

        self.assertEqual([item.id for item in store.list()], ["deploy-2", "deploy-1"])
        self.assertEqual(store.get("deploy-2").revision, "bbbbbbb")
        self.assertEqual(store.get("deploy-2").previous_id, "deploy-1")
        self.assertEqual(store.current().id, "deploy-1")

    def test_find_stuck_reports_old_deploying_records(self) -> None:
        record = self._append("aaaaaaa")
        self.store.update_status(record.id, DeploymentStatus.DEPLOYING)
        later = datetime.now(timezone.utc) + timedelta(hours=1)

        self.assertEqual([item.id for item in self.store.find_stuck(60, now=later)], [record.id])
        self.assertEqual(self.store.find_stuck(60), [])

    def test_concurrent_appends_and_promotions_are_serialized(self) -> None:
        workers = 8
        barrier = threading.Barrier(workers)
        superseded: list[str] = []
        errors: list[BaseException] = []

        def deploy(index: int) -> None:
            try:
                barrier.wait()
                record = self._append(f"rev{index:04d}")
                try:
                    self.store.update_status(record.id, DeploymentStatus.SUCCESS, health_check_passed=True)
                except TransitionRuleError:
                    superseded.append(record.id)
            except BaseException as exc:
                errors.append(exc)

        threads = [threading.Thread(target=deploy, args=(index,)) for index in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(errors, [])
        reloaded = DeploymentRecordStore(JsonDocumentPersistence(self.history_path))
        records = reloaded.list()
        self.assertEqual(len(records), workers)
        self.assertEqual({item.id for item in records}, {item.id for item in self.store.list()})
        created = [item.created_at for item in records]
        self.assertTrue(all(newer > older for newer, older in zip(created, created[1:])))

        successes = [item for item in records if item.status == DeploymentStatus.SUCCESS]
        self.assertEqual(len(successes) + len(superseded), workers)
        self.assertEqual(reloaded.current().id, successes[0].id)
        self.assertEqual(self.store.current().id, successes[0].id)
        self.assertEqual([item.id for item in records if item.rollback_eligible], [item.id for item in successes[1:]])


class PersistenceFailureTests(unittest.TestCase):
    def test_persist_failure_is_counted_and_memory_state_kept(self) -> None:
        store = DeploymentRecordStore(FailingPersistence())

        record = store.append(DeploymentRecord(revision="aaaaaaa", ref="refs/heads/main", initiated_by="alice"))

        self.assertEqual(store.get(record.id).id, record.id)
        stats = store.stats()
        self.assertEqual(stats["persist_failures"], 1)
        self.assertEqual(stats["last_persist_error"], "disk full")


class SqlDeploymentStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)

    def tearDown(self) -> None:
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def test_history_round_trips_through_database(self) -> None:
        store = DeploymentRecordStore(SqlPersistence(self.session_factory))
        first = store.append(DeploymentRecord(revision="aaaaaaa", ref="refs/heads/main", initiated_by="alice"))
        store.update_status(first.id, DeploymentStatus.SUCCESS, health_check_passed=True)
        second = store.append(
            DeploymentRecord(revision="bbbbbbb", ref="refs/heads/main", initiated_by="bob", previous_id=first.id)
        )
        store.update_status(second.id, DeploymentStatus.SUCCESS, health_check_passed=True)

        reloaded = DeploymentRecordStore(SqlPersistence(self.session_factory))

        self.assertEqual([item.id for item in reloaded.list()], [second.id, first.id])
        self.assertEqual(reloaded.current().id, second.id)
        self.assertTrue(reloaded.get(first.id).rollback_eligible)
        self.assertEqual(reloaded.get(second.id).previous_id, first.id)

    def test_missing_table_is_treated_as_empty_history(self) -> None:
        Base.metadata.drop_all(self.engine)

        store = DeploymentRecordStore(SqlPersistence(self.session_factory))

        self.assertEqual(store.list(), [])


if __name__ == "__main__":
    unittest.main()
