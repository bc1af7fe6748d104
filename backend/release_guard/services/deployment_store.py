from __future__ import annotations

from datetime import datetime, timedelta
import logging
import threading

from release_guard.domain.deployment_record import DeploymentRecord, utcnow
from release_guard.domain.deployment_state_machine import (
    DeploymentNotFoundError,
    DeploymentStatus,
    TransitionRuleError,
    ensure_transition_allowed,
)
from release_guard.services.deployment_persistence import RecordPersistence
from release_guard.services.observability import emit_structured_log

STUCK_CANDIDATE_STATES = {DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING}
_MIN_TICK = timedelta(microseconds=1)


class DeploymentRecordStore:
    """Ordered deployment history with a derived "current release" pointer.

    Records are kept most recent first. Every mutation runs under one lock and
    is persisted before the lock is released, so concurrent webhook and
    operator calls cannot interleave a read-modify-persist sequence. Callers
    only ever receive copies.
    """

    def __init__(self, persistence: RecordPersistence) -> None:
        self._persistence = persistence
        self._lock = threading.RLock()
        self._records: list[DeploymentRecord] = list(persistence.load())
        self._index: dict[str, DeploymentRecord] = {record.id: record for record in self._records}
        self.persist_failures = 0
        self.last_persist_error: str | None = None
        emit_structured_log(
            component="deployment_store",
            event="deployment_history_loaded",
            records=len(self._records),
        )

    def append(self, record: DeploymentRecord) -> DeploymentRecord:
        with self._lock:
            if record.id in self._index:
                raise ValueError(f"duplicate_deployment_id:{record.id}")

            stored = record.copy()
            if self._records and stored.created_at <= self._records[0].created_at:
                stored.created_at = self._records[0].created_at + _MIN_TICK

            if stored.previous_id is not None:
                previous = self._index.get(stored.previous_id)
                if previous is None:
                    raise DeploymentNotFoundError(stored.previous_id)
                if previous.created_at >= stored.created_at:
                    raise ValueError(f"previous_deployment_not_older:{stored.previous_id}")

            self._records.insert(0, stored)
            self._index[stored.id] = stored
            self._persist([stored])
            return stored.copy()

    def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        health_check_passed: bool | None = None,
    ) -> DeploymentRecord:
        with self._lock:
            record = self._get_or_raise(deployment_id)
            ensure_transition_allowed(record.status, status)

            previous_current = self._current_locked()
            if (
                status == DeploymentStatus.SUCCESS
                and previous_current is not None
                and previous_current is not record
                and previous_current.created_at > record.created_at
            ):
                raise TransitionRuleError(
                    f"Deployment '{deployment_id}' is superseded by newer release '{previous_current.id}'."
                )

            changed = [record]
            status_from = record.status
            record.status = status
            if health_check_passed is not None:
                record.health_check_passed = health_check_passed

            if status == DeploymentStatus.SUCCESS:
                record.rollback_eligible = False
                if previous_current is not None and previous_current is not record:
                    previous_current.rollback_eligible = True
                    changed.append(previous_current)
            elif previous_current is record:
                restored = self._current_locked()
                if restored is not None and restored.rollback_eligible:
                    restored.rollback_eligible = False
                    changed.append(restored)

            self._persist(changed)
            emit_structured_log(
                component="deployment_store",
                event="deployment_status_updated",
                deployment_id=record.id,
                revision=record.revision,
                status_from=status_from.value,
                status_to=status.value,
                health_check_passed=record.health_check_passed,
            )
            return record.copy()

    def list(self) -> list[DeploymentRecord]:
        with self._lock:
            return [record.copy() for record in self._records]

    def get(self, deployment_id: str) -> DeploymentRecord:
        with self._lock:
            return self._get_or_raise(deployment_id).copy()

    def current(self) -> DeploymentRecord:
        with self._lock:
            record = self._current_locked()
            if record is None:
                raise DeploymentNotFoundError(None)
            return record.copy()

    def find_stuck(self, older_than_seconds: float, now: datetime | None = None) -> list[DeploymentRecord]:
        cutoff = (now or utcnow()) - timedelta(seconds=older_than_seconds)
        with self._lock:
            return [
                record.copy()
                for record in self._records
                if record.status in STUCK_CANDIDATE_STATES and record.created_at < cutoff
            ]

    def stats(self) -> dict[str, object]:
        with self._lock:
            by_status = {status.value: 0 for status in DeploymentStatus}
            for record in self._records:
                by_status[record.status.value] += 1
            current = self._current_locked()
            return {
                "total": len(self._records),
                "by_status": by_status,
                "current_id": current.id if current else None,
                "persist_failures": self.persist_failures,
                "last_persist_error": self.last_persist_error,
            }

    def _get_or_raise(self, deployment_id: str) -> DeploymentRecord:
        record = self._index.get(deployment_id)
        if record is None:
            raise DeploymentNotFoundError(deployment_id)
        return record

    def _current_locked(self) -> DeploymentRecord | None:
        for record in self._records:
            if record.status == DeploymentStatus.SUCCESS:
                return record
        return None

    def _persist(self, changed: list[DeploymentRecord]) -> None:
        try:
            self._persistence.save(self._records, changed)
        except Exception as exc:
            # The in-memory history stays authoritative; the durable copy is now behind.
            self.persist_failures += 1
            self.last_persist_error = str(exc)
            emit_structured_log(
                component="deployment_store",
                event="deployment_store_persist_failed",
                level=logging.ERROR,
                changed_ids=[record.id for record in changed],
                persist_failures=self.persist_failures,
                error=str(exc),
            )
