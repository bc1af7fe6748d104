from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from release_guard.domain.deployment_record import ROLLBACK_ACTOR, DeploymentRecord, new_deployment_id
from release_guard.domain.deployment_state_machine import (
    DeploymentEvent,
    DeploymentNotFoundError,
    DeploymentStatus,
    RollbackRefusalReason,
    TransitionRuleError,
)
from release_guard.services.deployer import Deployer
from release_guard.services.deployment_store import DeploymentRecordStore
from release_guard.services.health_prober import HealthProber
from release_guard.services.observability import emit_structured_log

EXTERNAL_ACTION_FAILED = "EXTERNAL_ACTION_FAILED"
HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"

TransitionCallback = Callable[[DeploymentRecord, DeploymentEvent], None]


@dataclass(frozen=True)
class RollbackOutcome:
    deployment_id: str
    success: bool
    reason: str | None = None
    target_deployment_id: str | None = None
    new_deployment_id: str | None = None
    error: str | None = None

    @property
    def refused(self) -> bool:
        return self.reason in {item.value for item in RollbackRefusalReason}

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "success": self.success,
            "reason": self.reason,
            "target_deployment_id": self.target_deployment_id,
            "new_deployment_id": self.new_deployment_id,
            "error": self.error,
        }


def _ignore_transition(record: DeploymentRecord, event: DeploymentEvent) -> None:
    return None


class RollbackExecutor:
    def __init__(
        self,
        store: DeploymentRecordStore,
        prober: HealthProber,
        deployer: Deployer,
        *,
        readiness_window_seconds: float = 10.0,
        readiness_interval_seconds: float = 1.0,
        on_transition: TransitionCallback = _ignore_transition,
    ) -> None:
        self.store = store
        self.prober = prober
        self.deployer = deployer
        self.readiness_window_seconds = readiness_window_seconds
        self.readiness_interval_seconds = readiness_interval_seconds
        self.on_transition = on_transition

    def rollback(self, deployment_id: str) -> bool:
        return self.execute(deployment_id).success

    def execute(self, deployment_id: str) -> RollbackOutcome:
        refusal = self._check_preconditions(deployment_id)
        if isinstance(refusal, RollbackOutcome):
            emit_structured_log(
                component="rollback_executor",
                event="rollback_refused",
                level=logging.ERROR,
                deployment_id=deployment_id,
                reason=refusal.reason,
            )
            return refusal

        record, target = refusal
        emit_structured_log(
            component="rollback_executor",
            event="rollback_started",
            deployment_id=deployment_id,
            revision=record.revision,
            target_deployment_id=target.id,
            target_revision=target.revision,
        )

        # The status transition is the atomic claim; a concurrent rollback of the same id loses here.
        try:
            rolled_back = self.store.update_status(deployment_id, DeploymentStatus.ROLLED_BACK)
        except TransitionRuleError as exc:
            emit_structured_log(
                component="rollback_executor",
                event="rollback_refused",
                level=logging.ERROR,
                deployment_id=deployment_id,
                reason=RollbackRefusalReason.ALREADY_ROLLED_BACK.value,
                error=str(exc),
            )
            return RollbackOutcome(
                deployment_id=deployment_id,
                success=False,
                reason=RollbackRefusalReason.ALREADY_ROLLED_BACK.value,
                target_deployment_id=target.id,
            )

        new_record: DeploymentRecord | None = None
        try:
            self.on_transition(rolled_back, DeploymentEvent.ROLLED_BACK)

            self.deployer.checkout(target.revision)
            self.deployer.deploy(revision=target.revision, ref=target.ref, initiated_by=ROLLBACK_ACTOR)

            new_record = self.store.append(
                DeploymentRecord(
                    id=new_deployment_id("rollback"),
                    revision=target.revision,
                    ref=target.ref,
                    initiated_by=ROLLBACK_ACTOR,
                    status=DeploymentStatus.DEPLOYING,
                    previous_id=deployment_id,
                )
            )
            self.on_transition(new_record, DeploymentEvent.STARTED)

            self.prober.wait_until_ready(self.readiness_window_seconds, self.readiness_interval_seconds)
            healthy = self.prober.check(new_record.id)
            validated = self.store.get(new_record.id)
            self.on_transition(validated, DeploymentEvent.COMPLETED if healthy else DeploymentEvent.FAILED)
        except Exception as exc:
            # A rollback record left in deploying here is reported later by the stuck scan.
            emit_structured_log(
                component="rollback_executor",
                event="rollback_failed",
                level=logging.ERROR,
                deployment_id=deployment_id,
                target_deployment_id=target.id,
                new_deployment_id=new_record.id if new_record else None,
                error=str(exc),
            )
            return RollbackOutcome(
                deployment_id=deployment_id,
                success=False,
                reason=EXTERNAL_ACTION_FAILED,
                target_deployment_id=target.id,
                new_deployment_id=new_record.id if new_record else None,
                error=str(exc),
            )

        emit_structured_log(
            component="rollback_executor",
            event="rollback_completed" if healthy else "rollback_health_check_failed",
            level=logging.INFO if healthy else logging.ERROR,
            deployment_id=deployment_id,
            new_deployment_id=new_record.id,
            revision=target.revision,
        )
        return RollbackOutcome(
            deployment_id=deployment_id,
            success=healthy,
            reason=None if healthy else HEALTH_CHECK_FAILED,
            target_deployment_id=target.id,
            new_deployment_id=new_record.id,
        )

    def _check_preconditions(
        self, deployment_id: str
    ) -> RollbackOutcome | tuple[DeploymentRecord, DeploymentRecord]:
        def refuse(reason: RollbackRefusalReason, target_id: str | None = None) -> RollbackOutcome:
            return RollbackOutcome(
                deployment_id=deployment_id,
                success=False,
                reason=reason.value,
                target_deployment_id=target_id,
            )

        try:
            record = self.store.get(deployment_id)
        except DeploymentNotFoundError:
            return refuse(RollbackRefusalReason.DEPLOYMENT_NOT_FOUND)

        if record.status == DeploymentStatus.ROLLED_BACK:
            return refuse(RollbackRefusalReason.ALREADY_ROLLED_BACK)
        if not record.previous_id:
            return refuse(RollbackRefusalReason.NO_PREVIOUS_DEPLOYMENT)

        try:
            target = self.store.get(record.previous_id)
        except DeploymentNotFoundError:
            return refuse(RollbackRefusalReason.PREVIOUS_NOT_FOUND, record.previous_id)

        if target.status != DeploymentStatus.SUCCESS:
            return refuse(RollbackRefusalReason.PREVIOUS_NOT_SUCCESSFUL, target.id)
        return record, target
