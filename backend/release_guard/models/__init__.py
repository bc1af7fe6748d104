"""SQLAlchemy model package for Release Guard."""

from release_guard.models.deployment_record import DeploymentRecordRow

__all__ = [
    "DeploymentRecordRow",
]
