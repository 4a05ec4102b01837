"""
Thin orchestrator over the historical import pipeline stages.

Routes and the CLI talk to :class:`HistoricalImportService`; it wires the
stages to one session and audit recorder, records stage metrics and shapes
the responses each caller returns.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from ops_app.importer.metrics import record_ambiguous_matches, record_parse_errors, record_stage, record_staged_files
from ops_app.importer.utils import as_utc
from ops_app.models import db
from ops_app.models.importer.schema import ImportRecord, StagedFile

from .pipeline.audit import Actor, AuditTrailRecorder
from .pipeline.executor import ImportExecutor
from .pipeline.history_service import ImportHistoryService, serialize_record
from .pipeline.parser import IngestionParser
from .pipeline.reconciler import DecisionResult, Reconciler
from .pipeline.staging import StagingStore
from .pipeline.validator import ValidationMode, ValidationOutcome, Validator

DEFAULT_PREVIEW_ROWS = 20


def serialize_parse_result(staged: StagedFile, *, preview_rows: int = DEFAULT_PREVIEW_ROWS) -> dict[str, Any]:
    return {
        "file_id": staged.id,
        "file_name": staged.file_name,
        "file_size": staged.file_size,
        "total_rows": staged.row_count,
        "preview_rows": staged.rows[:preview_rows],
        "detected_columns": staged.columns,
        "detected_data_types": staged.detected_categories,
        "parsing_errors": list(staged.parse_errors_json or []),
        "import_status": staged.import_status.value,
        "expires_at": as_utc(staged.expires_at).isoformat(),
    }


def serialize_staged_status(staged: StagedFile) -> dict[str, Any]:
    validation = staged.validation_json or {}
    matches = list(staged.ambiguous_matches)
    return {
        "file_id": staged.id,
        "file_name": staged.file_name,
        "import_status": staged.import_status.value,
        "total_rows": staged.row_count,
        "data_types": staged.declared_categories,
        "validation_passed": validation.get("validation_passed"),
        "total_ambiguous": len(matches),
        "resolved_ambiguous": sum(1 for match in matches if match.is_resolved),
        "uploaded_by": staged.uploaded_by_name,
        "created_at": as_utc(staged.created_at).isoformat() if staged.created_at else None,
        "expires_at": as_utc(staged.expires_at).isoformat(),
    }


def serialize_import_result(record: ImportRecord) -> dict[str, Any]:
    payload = serialize_record(record)
    payload["execution_status"] = payload["status"]
    return payload


class HistoricalImportService:
    """Facade composing parser, validator, reconciler and executor."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session
        self.audit = AuditTrailRecorder(self.session)
        self.store = StagingStore(self.session, audit=self.audit)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def parse(self, content: bytes, *, filename: str, media_type: str | None, actor: Actor) -> dict[str, Any]:
        with self._stage("parse"):
            staged = IngestionParser(self.store, self.audit).parse_upload(
                content, filename=filename, media_type=media_type, actor=actor
            )
        record_parse_errors(len(staged.parse_errors_json or []))
        if has_app_context():
            current_app.logger.info(
                "Historical import file staged",
                extra={
                    "importer_file_id": staged.id,
                    "importer_row_count": staged.row_count,
                    "importer_parse_errors": len(staged.parse_errors_json or []),
                    "importer_detected_data_types": staged.detected_categories,
                },
            )
        return serialize_parse_result(staged, preview_rows=self._config_int("IMPORTER_PREVIEW_ROWS", DEFAULT_PREVIEW_ROWS))

    def file_status(self, handle: str) -> dict[str, Any]:
        return serialize_staged_status(self.store.get(handle))

    def validate(
        self, handle: str, categories: Iterable[Any] | None, mode: Any = ValidationMode.STRICT, *, actor: Actor
    ) -> ValidationOutcome:
        with self._stage("validate"):
            return Validator(self.store, self.audit).validate(handle, categories, mode, actor=actor)

    def reconcile(self, handle: str, categories: Iterable[Any] | None = None, *, actor: Actor) -> dict[str, Any]:
        with self._stage("reconcile"):
            outcome = Reconciler(self.store, self.audit).reconcile(handle, categories, actor=actor)
        pending: dict[str, int] = {}
        for match in outcome["ambiguous_matches"]:
            if not match.get("resolved"):
                pending[match["entity_type"]] = pending.get(match["entity_type"], 0) + 1
        record_ambiguous_matches(pending)
        return outcome

    def update_reconciliation(self, handle: str, decisions: Any, *, actor: Actor) -> DecisionResult:
        with self._stage("decide"):
            return Reconciler(self.store, self.audit).apply_decisions(handle, decisions, actor=actor)

    def execute(
        self,
        handle: str,
        *,
        actor: Actor,
        dry_run: bool = False,
        skip_validation: bool = False,
        unresolved_as_new: bool = False,
    ) -> ImportRecord:
        with self._stage("execute"):
            return ImportExecutor(self.store, self.audit).execute(
                handle,
                actor=actor,
                dry_run=dry_run,
                skip_validation=skip_validation,
                unresolved_as_new=unresolved_as_new,
            )

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    @property
    def history(self) -> ImportHistoryService:
        return ImportHistoryService(self.session)

    def staged_counts(self) -> dict[str, int]:
        counts = self.store.count_by_status()
        record_staged_files(counts)
        return counts

    def purge_expired(self) -> int:
        purged = self.store.purge_expired()
        if has_app_context():
            current_app.logger.info("Expired staged files purged", extra={"importer_purged_count": purged})
        return purged

    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, stage: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        except Exception:
            record_stage(stage, outcome="failure", duration_seconds=time.perf_counter() - started)
            raise
        record_stage(stage, outcome="success", duration_seconds=time.perf_counter() - started)

    @staticmethod
    def _config_int(key: str, default: int) -> int:
        if not has_app_context():
            return default
        return int(current_app.config.get(key, default))
