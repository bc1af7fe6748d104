from __future__ import annotations

from enum import Enum


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class DeploymentEvent(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RollbackRefusalReason(str, Enum):
    DEPLOYMENT_NOT_FOUND = "DEPLOYMENT_NOT_FOUND"
    NO_PREVIOUS_DEPLOYMENT = "NO_PREVIOUS_DEPLOYMENT"
    PREVIOUS_NOT_FOUND = "PREVIOUS_NOT_FOUND"
    PREVIOUS_NOT_SUCCESSFUL = "PREVIOUS_NOT_SUCCESSFUL"
    ALREADY_ROLLED_BACK = "ALREADY_ROLLED_BACK"


TERMINAL_STATES = {DeploymentStatus.ROLLED_BACK}

# success and failed may be re-probed, so both accept each other and themselves.
VALID_TRANSITIONS: dict[DeploymentStatus, set[DeploymentStatus]] = {
    DeploymentStatus.PENDING: {
        DeploymentStatus.DEPLOYING,
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.DEPLOYING: {
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.SUCCESS: {
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.FAILED: {
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.ROLLED_BACK: set(),
}

STATUS_EVENTS: dict[DeploymentStatus, DeploymentEvent] = {
    DeploymentStatus.SUCCESS: DeploymentEvent.COMPLETED,
    DeploymentStatus.FAILED: DeploymentEvent.FAILED,
    DeploymentStatus.ROLLED_BACK: DeploymentEvent.ROLLED_BACK,
}


class DeploymentNotFoundError(LookupError):
    """Raised when a deployment id is unknown to the store."""

    def __init__(self, deployment_id: str | None) -> None:
        self.deployment_id = deployment_id
        super().__init__(f"deployment_not_found:{deployment_id}" if deployment_id else "no_current_deployment")


class TransitionRuleError(ValueError):
    """Raised when an invalid deployment status transition is requested."""


class ExternalActionError(RuntimeError):
    """Raised when a checkout or deploy command fails or times out."""

    def __init__(self, action: str, detail: str) -> None:
        self.action = action
        self.detail = detail
        super().__init__(f"{action}_failed:{detail}")


def ensure_transition_allowed(current: DeploymentStatus, target: DeploymentStatus) -> None:
    if current in TERMINAL_STATES:
        raise TransitionRuleError(f"Cannot transition terminal state '{current.value}'.")

    allowed_targets = VALID_TRANSITIONS[current]
    if target not in allowed_targets:
        allowed_text = ", ".join(sorted(state.value for state in allowed_targets))
        raise TransitionRuleError(
            f"Invalid transition '{current.value}' -> '{target.value}'. Allowed: [{allowed_text}]"
        )
