from __future__ import annotations

from functools import lru_cache
import logging

from release_guard.core.config import get_settings
from release_guard.domain.deployment_record import DeploymentRecord, canonical_revision
from release_guard.domain.deployment_state_machine import (
    DeploymentEvent,
    DeploymentStatus,
    STATUS_EVENTS,
    TransitionRuleError,
)
from release_guard.services.deployer import Deployer, ScriptDeployer
from release_guard.services.deployment_persistence import build_persistence
from release_guard.services.deployment_store import DeploymentRecordStore
from release_guard.services.health_prober import HealthProber
from release_guard.services.notifications import NotificationFanout, build_channels
from release_guard.services.observability import emit_structured_log
from release_guard.services.rollback_executor import RollbackExecutor, RollbackOutcome


class DeploymentOrchestrator:
    """Facade over the record store, health prober, deployer and rollback executor.

    Only confirmed health checks promote a record to current; ``start`` just
    records intent. Every status transition is broadcast to the notifier on a
    best-effort basis.
    """

    def __init__(
        self,
        store: DeploymentRecordStore,
        prober: HealthProber,
        deployer: Deployer,
        notifier: NotificationFanout,
        *,
        readiness_window_seconds: float = 10.0,
        readiness_interval_seconds: float = 1.0,
        verify_after_trigger: bool = True,
        stuck_after_seconds: float = 900,
    ) -> None:
        self.store = store
        self.prober = prober
        self.deployer = deployer
        self.notifier = notifier
        self.readiness_window_seconds = readiness_window_seconds
        self.readiness_interval_seconds = readiness_interval_seconds
        self.verify_after_trigger = verify_after_trigger
        self.stuck_after_seconds = stuck_after_seconds
        self.rollback_executor = RollbackExecutor(
            store,
            prober,
            deployer,
            readiness_window_seconds=readiness_window_seconds,
            readiness_interval_seconds=readiness_interval_seconds,
            on_transition=self._notify_transition,
        )

    def start(self, revision: str, ref: str, initiated_by: str) -> DeploymentRecord:
        current = self._current_or_none()
        record = self.store.append(
            DeploymentRecord(
                revision=canonical_revision(revision),
                ref=ref,
                initiated_by=initiated_by or "unknown",
                previous_id=current.id if current else None,
            )
        )
        emit_structured_log(
            component="orchestrator",
            event="deployment_started",
            deployment_id=record.id,
            revision=record.revision,
            ref=record.ref,
            initiated_by=record.initiated_by,
            previous_id=record.previous_id,
        )
        self._notify_transition(record, DeploymentEvent.STARTED)
        return record

    def execute(self, deployment_id: str, extra_env: dict[str, str] | None = None) -> bool:
        """Run the deploy action for a pending record and, if configured, verify it."""
        record = self.store.get(deployment_id)
        try:
            self.store.update_status(deployment_id, DeploymentStatus.DEPLOYING)
        except TransitionRuleError as exc:
            emit_structured_log(
                component="orchestrator",
                event="deployment_execute_rejected",
                level=logging.WARNING,
                deployment_id=deployment_id,
                error=str(exc),
            )
            return False

        try:
            self.deployer.deploy(
                revision=record.revision,
                ref=record.ref,
                initiated_by=record.initiated_by,
                extra_env=extra_env,
            )
        except Exception as exc:
            emit_structured_log(
                component="orchestrator",
                event="deployment_action_failed",
                level=logging.ERROR,
                deployment_id=deployment_id,
                revision=record.revision,
                error=str(exc),
            )
            self._alert("error", "Deployment Failed", f"Deploy action for {deployment_id} failed: {exc}")
            try:
                failed = self.store.update_status(deployment_id, DeploymentStatus.FAILED, health_check_passed=False)
            except TransitionRuleError:
                return False
            self._notify_transition(failed, DeploymentEvent.FAILED)
            return False

        if not self.verify_after_trigger:
            return True
        self.prober.wait_until_ready(self.readiness_window_seconds, self.readiness_interval_seconds)
        return self.health_check(deployment_id)

    def health_check(self, deployment_id: str) -> bool:
        self.store.get(deployment_id)
        healthy = self.prober.check(deployment_id)
        record = self.store.get(deployment_id)
        expected = DeploymentStatus.SUCCESS if healthy else DeploymentStatus.FAILED
        if record.status == expected:
            self._notify_transition(record, STATUS_EVENTS[expected])
        return healthy

    def rollback(self, deployment_id: str) -> bool:
        return self.rollback_with_outcome(deployment_id).success

    def rollback_with_outcome(self, deployment_id: str) -> RollbackOutcome:
        outcome = self.rollback_executor.execute(deployment_id)
        if not outcome.success:
            severity = "warning" if outcome.refused else "error"
            detail = outcome.error or outcome.reason or "unknown_error"
            self._alert(severity, "Rollback Failed", f"Failed to rollback deployment {deployment_id}: {detail}")
        return outcome

    def list_all(self) -> list[DeploymentRecord]:
        return self.store.list()

    def get(self, deployment_id: str) -> DeploymentRecord:
        return self.store.get(deployment_id)

    def current(self) -> DeploymentRecord:
        return self.store.current()

    def report_stuck(self) -> list[DeploymentRecord]:
        stuck = self.store.find_stuck(self.stuck_after_seconds)
        for record in stuck:
            emit_structured_log(
                component="orchestrator",
                event="deployment_stuck_detected",
                level=logging.WARNING,
                deployment_id=record.id,
                revision=record.revision,
                status=record.status.value,
                created_at=record.created_at,
            )
        return stuck

    def metrics(self) -> dict[str, object]:
        return {
            "store": self.store.stats(),
            "stuck_deployment_ids": [record.id for record in self.store.find_stuck(self.stuck_after_seconds)],
            "notifications": self.notifier.stats(),
        }

    def _current_or_none(self) -> DeploymentRecord | None:
        try:
            return self.store.current()
        except LookupError:
            return None

    def _notify_transition(self, record: DeploymentRecord, event: DeploymentEvent) -> None:
        try:
            self.notifier.notify_deployment(record, event)
        except Exception as exc:
            emit_structured_log(
                component="orchestrator",
                event="notification_enqueue_failed",
                level=logging.WARNING,
                deployment_id=record.id,
                lifecycle_event=event.value,
                error=str(exc),
            )

    def _alert(self, severity: str, title: str, message: str) -> None:
        try:
            self.notifier.notify_alert(severity, title, message)
        except Exception as exc:
            emit_structured_log(
                component="orchestrator",
                event="notification_enqueue_failed",
                level=logging.WARNING,
                title=title,
                error=str(exc),
            )


@lru_cache
def get_orchestrator() -> DeploymentOrchestrator:
    settings = get_settings()
    store = DeploymentRecordStore(build_persistence(settings))
    prober = HealthProber(
        store,
        url=settings.health_check_url,
        timeout_seconds=settings.health_check_timeout_seconds,
    )
    notifier = NotificationFanout(build_channels(settings), queue_size=settings.notification_queue_size)
    orchestrator = DeploymentOrchestrator(
        store,
        prober,
        ScriptDeployer.from_settings(settings),
        notifier,
        readiness_window_seconds=settings.readiness_window_seconds,
        readiness_interval_seconds=settings.readiness_interval_seconds,
        verify_after_trigger=settings.deploy_verify_after_trigger,
        stuck_after_seconds=settings.stuck_after_seconds,
    )
    orchestrator.report_stuck()
    return orchestrator
