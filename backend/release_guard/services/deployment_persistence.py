from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Any, Callable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from release_guard.core.config import Settings
from release_guard.domain.deployment_record import DeploymentRecord
from release_guard.domain.deployment_state_machine import DeploymentStatus
from release_guard.models import DeploymentRecordRow
from release_guard.services.observability import emit_structured_log

HISTORY_SCHEMA_VERSION = 1


class RecordPersistence(Protocol):
    """Durable copy of the deployment history, most recent record first."""

    def load(self) -> list[DeploymentRecord]: ...

    def save(self, records: list[DeploymentRecord], changed: list[DeploymentRecord]) -> None: ...


class JsonDocumentPersistence:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[DeploymentRecord]:
        if not self.path.exists():
            emit_structured_log(
                component="deployment_store",
                event="deployment_history_missing",
                level=logging.WARNING,
                path=str(self.path),
            )
            return []

        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
            return self._parse_document(document)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            quarantined = self._quarantine()
            emit_structured_log(
                component="deployment_store",
                event="deployment_history_unreadable",
                level=logging.WARNING,
                path=str(self.path),
                quarantined_path=str(quarantined) if quarantined else None,
                error=str(exc),
            )
            return []

    def save(self, records: list[DeploymentRecord], changed: list[DeploymentRecord]) -> None:
        document = {
            "schema_version": HISTORY_SCHEMA_VERSION,
            "deployments": [record.to_dict() for record in records],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{json.dumps(document, indent=2, sort_keys=True)}\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self.path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise

    @staticmethod
    def _parse_document(document: Any) -> list[DeploymentRecord]:
        if isinstance(document, list):
            return [DeploymentRecord.from_legacy_dict(item) for item in document]
        if not isinstance(document, dict):
            raise ValueError("history_document_not_an_object")

        schema_version = document.get("schema_version")
        if not isinstance(schema_version, int) or schema_version <= 0:
            raise ValueError("history_schema_version_missing")
        if schema_version > HISTORY_SCHEMA_VERSION:
            raise ValueError(f"history_schema_version_unsupported:{schema_version}")

        items = document.get("deployments")
        if not isinstance(items, list):
            raise ValueError("history_deployments_not_a_list")
        return [DeploymentRecord.from_dict(item) for item in items]

    def _quarantine(self) -> Path | None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
        except OSError:
            return None
        return target


def _row_from_record(record: DeploymentRecord) -> DeploymentRecordRow:
    return DeploymentRecordRow(
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


def _record_from_row(row: DeploymentRecordRow) -> DeploymentRecord:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return DeploymentRecord(
        id=row.id,
        revision=row.revision,
        ref=row.ref,
        initiated_by=row.initiated_by,
        created_at=created_at,
        status=DeploymentStatus(row.status),
        health_check_passed=bool(row.health_check_passed),
        rollback_eligible=bool(row.rollback_eligible),
        previous_id=row.previous_id,
    )


class SqlPersistence:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def load(self) -> list[DeploymentRecord]:
        try:
            with self.session_factory() as db:
                rows = db.query(DeploymentRecordRow).order_by(DeploymentRecordRow.created_at.desc()).all()
                return [_record_from_row(row) for row in rows]
        except SQLAlchemyError as exc:
            emit_structured_log(
                component="deployment_store",
                event="deployment_history_unreadable",
                level=logging.WARNING,
                backend="sql",
                error=str(exc),
            )
            return []

    def save(self, records: list[DeploymentRecord], changed: list[DeploymentRecord]) -> None:
        with self.session_factory() as db:
            try:
                for record in changed:
                    db.merge(_row_from_record(record))
                db.commit()
            except Exception:
                db.rollback()
                raise


def build_persistence(settings: Settings) -> RecordPersistence:
    backend = settings.deploy_store_backend.strip().lower()
    if backend == "json":
        return JsonDocumentPersistence(Path(settings.deploy_store_path).expanduser())
    if backend == "sql":
        from release_guard.db.session import SessionLocal

        return SqlPersistence(SessionLocal)
    raise ValueError(f"unsupported_store_backend:{settings.deploy_store_backend}")
