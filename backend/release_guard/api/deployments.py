from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from release_guard.domain.deployment_record import DeploymentRecord
from release_guard.domain.deployment_state_machine import DeploymentNotFoundError
from release_guard.services.deployment_orchestrator import DeploymentOrchestrator, get_orchestrator
from release_guard.services.observability import emit_structured_log

router = APIRouter(prefix="/api/deployments", tags=["deployments"])


class DeploymentResponse(BaseModel):
    id: str
    revision: str
    ref: str
    initiated_by: str
    created_at: datetime
    status: str
    health_check_passed: bool
    rollback_eligible: bool
    previous_id: str | None


class RollbackAcceptedResponse(BaseModel):
    status: str
    deployment_id: str


class HealthCheckResponse(BaseModel):
    deployment_id: str
    healthy: bool


def to_deployment_response(record: DeploymentRecord) -> DeploymentResponse:
    return DeploymentResponse(
        id=record.id,
        revision=record.revision,
        ref=record.ref,
        initiated_by=record.initiated_by,
        created_at=record.created_at,
        status=record.status.value,
        health_check_passed=record.health_check_passed,
        rollback_eligible=record.rollback_eligible,
        previous_id=record.previous_id,
    )


def _get_or_404(orchestrator: DeploymentOrchestrator, deployment_id: str) -> DeploymentRecord:
    try:
        return orchestrator.get(deployment_id)
    except DeploymentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Deployment not found") from exc


def _run_rollback(orchestrator: DeploymentOrchestrator, deployment_id: str) -> None:
    outcome = orchestrator.rollback_with_outcome(deployment_id)
    emit_structured_log(
        component="api",
        event="rollback_finished",
        deployment_id=deployment_id,
        **{key: value for key, value in outcome.to_dict().items() if key != "deployment_id"},
    )


@router.get("", response_model=list[DeploymentResponse])
def list_deployments(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> list[DeploymentResponse]:
    return [to_deployment_response(item) for item in orchestrator.list_all()]


@router.get("/current", response_model=DeploymentResponse)
def get_current_deployment(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> DeploymentResponse:
    try:
        record = orchestrator.current()
    except DeploymentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="No current deployment found") from exc
    return to_deployment_response(record)


@router.get("/metrics")
def get_deployment_metrics(orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orchestrator.metrics()


@router.get("/{deployment_id}", response_model=DeploymentResponse)
def get_deployment(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> DeploymentResponse:
    return to_deployment_response(_get_or_404(orchestrator, deployment_id))


@router.post("/{deployment_id}/rollback", response_model=RollbackAcceptedResponse)
def rollback_deployment(
    deployment_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> RollbackAcceptedResponse:
    _get_or_404(orchestrator, deployment_id)
    background_tasks.add_task(_run_rollback, orchestrator, deployment_id)
    return RollbackAcceptedResponse(status="initiated", deployment_id=deployment_id)


@router.post("/{deployment_id}/health-check", response_model=HealthCheckResponse)
def run_health_check(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> HealthCheckResponse:
    _get_or_404(orchestrator, deployment_id)
    try:
        healthy = orchestrator.health_check(deployment_id)
    except DeploymentNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Deployment not found") from exc
    return HealthCheckResponse(deployment_id=deployment_id, healthy=healthy)
