"""
Execution of reconciled historical imports.

The executor is the only stage that writes canonical data. It commits each
declared category in its own transaction (payroll, then budgets, then
sign-ups), writes an ``ImportRecord`` and moves the staged file to
``completed``. ``ImportRecord.completed_file_id`` is unique, so a staged
handle can complete at most once even across processes.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Sequence
from uuid import uuid4

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from ops_app.importer import errors
from ops_app.importer.metrics import record_category_rows, record_execution
from ops_app.models.importer.schema import (
    DataCategory,
    ImportRecord,
    ImportRecordStatus,
    ImportStatus,
    StagedFile,
)

from .audit import Actor, AuditAction, AuditTrailRecorder
from .committers import COMMIT_ORDER, COMMITTERS, CategoryResult, EntityResolver
from .directory import CanonicalEntityDirectory
from .matching import EntityType
from .reconciler import serialize_outcome
from .staging import StagingStore

_IMPORTED_KEYS = {
    DataCategory.SIGN_UPS: "sign_ups_imported",
    DataCategory.BUDGETS_ACTUALS: "budgets_imported",
    DataCategory.PAYROLL: "payroll_imported",
}

_EXECUTABLE_WITHOUT_VALIDATION = frozenset(
    {
        ImportStatus.PENDING,
        ImportStatus.VALIDATING,
        ImportStatus.FAILED,
        ImportStatus.RECONCILING,
        ImportStatus.READY,
    }
)


def build_summary(
    results: Mapping[DataCategory, CategoryResult],
    created: Mapping[str, int],
    total_rows: int,
) -> dict[str, Any]:
    """Exact per-category and total counts for one execution."""

    summary: dict[str, Any] = {key: 0 for key in _IMPORTED_KEYS.values()}
    summary["categories"] = {category.value: result.as_dict() for category, result in results.items()}
    for category, result in results.items():
        summary[_IMPORTED_KEYS[category]] = result.imported
    summary["records_skipped"] = sum(result.skipped for result in results.values())
    summary["records_failed"] = sum(result.failed for result in results.values())
    summary["new_ambassadors_created"] = created.get(EntityType.AMBASSADOR.value, 0)
    summary["new_events_created"] = created.get(EntityType.EVENT.value, 0)
    summary["new_operators_created"] = created.get(EntityType.OPERATOR.value, 0)
    summary["total_rows"] = total_rows
    return summary


def ordered_categories(categories: Sequence[str]) -> list[DataCategory]:
    declared = {DataCategory(category) for category in categories}
    return [category for category in COMMIT_ORDER if category in declared]


class ImportExecutor:
    """Commits a ready staged file and records the outcome."""

    def __init__(
        self,
        store: StagingStore,
        audit: AuditTrailRecorder | None = None,
        *,
        directory: CanonicalEntityDirectory | None = None,
        budget_default_year: int | None = None,
    ) -> None:
        self.store = store
        self.session = store.session
        self.audit = audit or store.audit
        self.directory = directory
        self.budget_default_year = budget_default_year

    def execute(
        self,
        handle: str,
        *,
        actor: Actor,
        dry_run: bool = False,
        skip_validation: bool = False,
        unresolved_as_new: bool = False,
    ) -> ImportRecord:
        previous = self.completed_record_for(handle)
        if previous is not None:
            raise errors.import_already_executed(handle, previous.id)

        with self.store.locked(handle):
            staged = self.store.get(handle, for_update=True)
            _ensure_executable(staged, skip_validation=skip_validation)

            import_id = str(uuid4())
            started_at = self.store.clock()
            started = time.perf_counter()
            categories = ordered_categories(staged.declared_categories)
            options = {
                "dry_run": dry_run,
                "skip_validation": skip_validation,
                "unresolved_as_new": unresolved_as_new,
            }
            snapshot = {
                "file_name": staged.file_name,
                "total_rows": staged.row_count,
                "validation": staged.validation_json,
                "reconciliation": serialize_outcome(staged) if staged.reconciliation_json is not None else None,
            }

            self.audit.record(
                staged.id,
                AuditAction.IMPORT_STARTED,
                actor,
                entity_type="import",
                entity_id=import_id,
                details={"data_types": [category.value for category in categories], **options},
            )
            staged.import_status = ImportStatus.EXECUTING
            self.store.save(staged)

            results: dict[DataCategory, CategoryResult] = {}
            resolver: EntityResolver | None = None
            try:
                resolver = EntityResolver(
                    staged,
                    self.directory or CanonicalEntityDirectory(self.session),
                    dry_run=dry_run,
                    unresolved_as_new=unresolved_as_new,
                )
                rows = list(staged.rows)
                for category in categories:
                    results[category] = self._commit_category(
                        category, rows, resolver, import_id=import_id, dry_run=dry_run
                    )

                summary = build_summary(results, resolver.created_counts(), snapshot["total_rows"])
                record = ImportRecord(
                    id=import_id,
                    file_id=handle,
                    completed_file_id=handle,
                    status=ImportRecordStatus.COMPLETED,
                    records_imported=sum(summary[key] for key in _IMPORTED_KEYS.values()),
                    summary_json=summary,
                    **self._record_fields(snapshot, categories, options, actor, started_at, started),
                )
                staged = self.store.peek(handle)
                staged.import_status = ImportStatus.COMPLETED
                self.session.add(record)
                self.audit.record(
                    handle,
                    AuditAction.IMPORT_COMPLETED,
                    actor,
                    entity_type="import",
                    entity_id=import_id,
                    details={"dry_run": dry_run, "duration_ms": record.duration_ms, **summary},
                )
                self.store.save(staged)
            except IntegrityError:
                self.session.rollback()
                previous = self.completed_record_for(handle)
                raise errors.import_already_executed(handle, previous.id if previous else None) from None
            except errors.ImportApiError:
                raise
            except Exception as exc:
                self.session.rollback()
                self._record_failure(
                    handle,
                    import_id,
                    exc,
                    results=results,
                    created=resolver.created_counts() if resolver is not None else {},
                    snapshot=snapshot,
                    categories=categories,
                    options=options,
                    actor=actor,
                    started_at=started_at,
                    started=started,
                )
                committed = [] if dry_run else [
                    category.value for category, result in results.items() if result.status != "failed"
                ]
                raise errors.import_execution_failed(import_id, committed) from exc

        record_execution(outcome="completed", dry_run=dry_run)
        if has_app_context():
            current_app.logger.info(
                "Historical import executed",
                extra={
                    "importer_file_id": handle,
                    "importer_import_id": record.id,
                    "importer_dry_run": dry_run,
                    "importer_records_imported": record.records_imported,
                    "importer_records_skipped": summary["records_skipped"],
                    "importer_records_failed": summary["records_failed"],
                    "importer_duration_ms": record.duration_ms,
                },
            )
        return record

    def completed_record_for(self, handle: str) -> ImportRecord | None:
        return self.session.query(ImportRecord).filter(ImportRecord.completed_file_id == handle).one_or_none()

    # ------------------------------------------------------------------

    def _commit_category(
        self,
        category: DataCategory,
        rows: list[dict],
        resolver: EntityResolver,
        *,
        import_id: str,
        dry_run: bool,
    ) -> CategoryResult:
        committer_cls = COMMITTERS[category]
        kwargs: dict[str, Any] = {"import_id": import_id, "dry_run": dry_run}
        if category is DataCategory.BUDGETS_ACTUALS:
            kwargs["default_year"] = self.budget_default_year
        committer = committer_cls(self.session, resolver, **kwargs)

        result = committer.new_result(rows)
        checkpoint = resolver.checkpoint()
        try:
            committer.write(rows, result)
            if not dry_run:
                self.session.commit()
        except Exception as exc:
            self.session.rollback()
            resolver.restore(checkpoint)
            result.mark_failed(f"{category.value} rolled back: {exc.__class__.__name__}: {exc}")
            if has_app_context():
                current_app.logger.exception(
                    "Historical import category failed",
                    extra={"importer_import_id": import_id, "importer_category": category.value},
                )
        record_category_rows(
            category.value,
            {"inserted": result.inserted, "updated": result.updated, "skipped": result.skipped, "failed": result.failed},
        )
        return result

    def _record_fields(
        self,
        snapshot: Mapping[str, Any],
        categories: Sequence[DataCategory],
        options: Mapping[str, Any],
        actor: Actor,
        started_at,
        started: float,
    ) -> dict[str, Any]:
        values = [category.value for category in categories]
        return {
            "file_name": snapshot["file_name"],
            "dry_run": bool(options["dry_run"]),
            "categories_json": values,
            "categories_key": ImportRecord.build_categories_key(values),
            "total_rows": snapshot["total_rows"],
            "validation_json": snapshot["validation"],
            "reconciliation_json": snapshot["reconciliation"],
            "options_json": dict(options),
            "started_at": started_at,
            "completed_at": self.store.clock(),
            "duration_ms": int((time.perf_counter() - started) * 1000),
            "triggered_by_user_id": actor.user_id,
            "triggered_by_name": actor.name,
        }

    def _record_failure(
        self,
        handle: str,
        import_id: str,
        exc: Exception,
        *,
        results: Mapping[DataCategory, CategoryResult],
        created: Mapping[str, int],
        snapshot: Mapping[str, Any],
        categories: Sequence[DataCategory],
        options: Mapping[str, Any],
        actor: Actor,
        started_at,
        started: float,
    ) -> None:
        summary = build_summary(results, created, snapshot["total_rows"])
        record = ImportRecord(
            id=import_id,
            file_id=handle,
            status=ImportRecordStatus.FAILED,
            records_imported=sum(summary[key] for key in _IMPORTED_KEYS.values()),
            summary_json=summary,
            error_message=f"{exc.__class__.__name__}: {exc}",
            **self._record_fields(snapshot, categories, options, actor, started_at, started),
        )
        self.session.add(record)
        staged = self.store.peek(handle)
        if staged is not None:
            staged.import_status = ImportStatus.FAILED
        self.audit.record(
            handle,
            AuditAction.IMPORT_FAILED,
            actor,
            entity_type="import",
            entity_id=import_id,
            details={"error": record.error_message, "dry_run": bool(options["dry_run"])},
        )
        self.session.commit()
        record_execution(outcome="failed", dry_run=bool(options["dry_run"]))
        if has_app_context():
            current_app.logger.exception(
                "Historical import execution failed",
                extra={"importer_file_id": handle, "importer_import_id": import_id, "importer_error": str(exc)},
            )


def _ensure_executable(staged: StagedFile, *, skip_validation: bool) -> None:
    status = staged.import_status
    if status is ImportStatus.COMPLETED:
        raise errors.import_already_executed(staged.id)
    if status is ImportStatus.EXECUTING:
        raise errors.import_not_ready(status.value)
    if skip_validation:
        if status not in _EXECUTABLE_WITHOUT_VALIDATION:
            raise errors.import_not_ready(status.value)
        return
    if status is ImportStatus.RECONCILING:
        matches = list(staged.ambiguous_matches)
        resolved = sum(1 for match in matches if match.is_resolved)
        raise errors.reconciliation_not_complete(len(matches), resolved)
    if status is not ImportStatus.READY:
        raise errors.import_not_ready(status.value)
