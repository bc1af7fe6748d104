from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any
import uuid

from release_guard.domain.deployment_state_machine import DeploymentStatus

REVISION_LENGTH = 7
ROLLBACK_ACTOR = "system-rollback"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def canonical_revision(revision: str) -> str:
    value = revision.strip()
    if not value:
        raise ValueError("revision_empty")
    return value[:REVISION_LENGTH]


def new_deployment_id(prefix: str = "deploy") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        # JSON written by older writers may use a trailing "Z".
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class DeploymentRecord:
    revision: str
    ref: str
    initiated_by: str
    id: str = field(default_factory=new_deployment_id)
    created_at: datetime = field(default_factory=utcnow)
    status: DeploymentStatus = DeploymentStatus.PENDING
    health_check_passed: bool = False
    rollback_eligible: bool = False
    previous_id: str | None = None

    def copy(self) -> DeploymentRecord:
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "revision": self.revision,
            "ref": self.ref,
            "initiated_by": self.initiated_by,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "health_check_passed": self.health_check_passed,
            "rollback_eligible": self.rollback_eligible,
            "previous_id": self.previous_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DeploymentRecord:
        return cls(
            id=str(payload["id"]),
            revision=str(payload["revision"]),
            ref=str(payload["ref"]),
            initiated_by=str(payload["initiated_by"]),
            created_at=_parse_datetime(payload["created_at"]),
            status=DeploymentStatus(payload["status"]),
            health_check_passed=bool(payload.get("health_check_passed", False)),
            rollback_eligible=bool(payload.get("rollback_eligible", False)),
            previous_id=payload.get("previous_id"),
        )

    @classmethod
    def from_legacy_dict(cls, payload: dict[str, Any]) -> DeploymentRecord:
        """Build a record from the camelCase layout of the pre-versioned history file."""
        return cls(
            id=str(payload["id"]),
            revision=canonical_revision(str(payload["commit"])),
            ref=str(payload.get("ref", "")),
            initiated_by=str(payload.get("user") or "unknown"),
            created_at=_parse_datetime(payload["timestamp"]),
            status=DeploymentStatus(payload["status"]),
            health_check_passed=bool(payload.get("healthCheckPassed", False)),
            rollback_eligible=bool(payload.get("rollbackAvailable", False)),
            previous_id=payload.get("previousDeploymentId"),
        )
