from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from pydantic import AliasChoices, BaseModel, Field, field_validator

from release_guard.core.config import Settings, get_settings
from release_guard.services.deployment_orchestrator import DeploymentOrchestrator, get_orchestrator
from release_guard.services.observability import emit_structured_log

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

BEARER_PREFIX = "Bearer "


class DeployWebhookPayload(BaseModel):
    ref: str
    revision: str = Field(min_length=1, validation_alias=AliasChoices("revision", "commit"))
    repository: str | None = None
    initiated_by: str | None = Field(
        default=None,
        validation_alias=AliasChoices("initiated_by", "initiatedBy", "pusher"),
    )
    workflow: str | None = None
    run_id: str | None = None

    @field_validator("revision")
    @classmethod
    def strip_revision(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("revision_empty")
        return value


class WebhookAckResponse(BaseModel):
    status: str
    ref: str
    reason: str | None = None
    deployment_id: str | None = None
    revision: str | None = None


class WebhookStatusResponse(BaseModel):
    configured: bool
    message: str


def verify_webhook_secret(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.webhook_secret
    if not expected:
        emit_structured_log(component="webhooks", event="webhook_not_configured", level=logging.WARNING)
        raise HTTPException(status_code=503, detail="Webhook not configured")

    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    token = authorization[len(BEARER_PREFIX):]
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        emit_structured_log(component="webhooks", event="webhook_secret_rejected", level=logging.WARNING)
        raise HTTPException(status_code=403, detail="Invalid webhook secret")


def _deploy_env(payload: DeployWebhookPayload) -> dict[str, str]:
    env = {
        "DEPLOY_REPOSITORY": payload.repository,
        "DEPLOY_WORKFLOW": payload.workflow,
        "DEPLOY_RUN_ID": payload.run_id,
    }
    return {key: value for key, value in env.items() if value}


@router.post("/deploy", response_model=WebhookAckResponse, dependencies=[Depends(verify_webhook_secret)])
def trigger_deploy(
    payload: DeployWebhookPayload,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> WebhookAckResponse:
    emit_structured_log(
        component="webhooks",
        event="deployment_webhook_received",
        revision=payload.revision[:7],
        ref=payload.ref,
        repository=payload.repository,
        initiated_by=payload.initiated_by,
        workflow=payload.workflow,
        ci_run_id=payload.run_id,
    )

    if payload.ref not in settings.release_refs:
        return WebhookAckResponse(status="skipped", reason="non_release_branch", ref=payload.ref)

    try:
        record = orchestrator.start(payload.revision, payload.ref, payload.initiated_by or "webhook")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    background_tasks.add_task(orchestrator.execute, record.id, _deploy_env(payload))
    return WebhookAckResponse(
        status="triggered",
        ref=payload.ref,
        deployment_id=record.id,
        revision=record.revision,
    )


@router.get("/status", response_model=WebhookStatusResponse)
def get_webhook_status(settings: Settings = Depends(get_settings)) -> WebhookStatusResponse:
    configured = bool(settings.webhook_secret)
    return WebhookStatusResponse(
        configured=configured,
        message="Webhook endpoint is configured" if configured else "WEBHOOK_SECRET not set, webhook disabled",
    )
