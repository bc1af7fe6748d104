from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from release_guard.db.base import Base


class DeploymentRecordRow(Base):
    __tablename__ = "deployment_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    revision: Mapped[str] = mapped_column(String(64), index=True)
    ref: Mapped[str] = mapped_column(String(255))
    initiated_by: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(32), index=True)
    health_check_passed: Mapped[bool] = mapped_column(Boolean, default=False)
    rollback_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    previous_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_deployment_records_created_at", "created_at"),
    )
