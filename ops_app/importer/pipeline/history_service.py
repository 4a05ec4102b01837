"""
Service helpers for import history, reports and audit queries.

The admin API consumes these helpers for paginated history listings, import
detail payloads, downloadable reports and the audit trail, keeping the
SQLAlchemy filtering logic in one place.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from io import StringIO
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from ops_app.importer import errors
from ops_app.importer.utils import as_utc, utc_now
from ops_app.models import db
from ops_app.models.importer.schema import AuditEntry, DataCategory, ImportRecord, ImportRecordStatus, StagedFile

from .audit import AuditAction

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"
REPORT_FORMATS = ("json", "csv")

VALID_SORT_FIELDS = {
    "started_at": ImportRecord.started_at,
    "completed_at": ImportRecord.completed_at,
    "file_name": ImportRecord.file_name,
    "status": ImportRecord.status,
}


@dataclass(frozen=True)
class HistoryFilters:
    """Canonical set of filter options applied to import history queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportRecordStatus, ...] = field(default_factory=tuple)
    categories: tuple[str, ...] = field(default_factory=tuple)
    imported_by: int | None = None
    search: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None
    include_dry_runs: bool = True

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        categories: Iterable[str] | None = None,
        imported_by: int | str | None = None,
        search: str | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
        include_dry_runs: str | bool | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> "HistoryFilters":
        """
        Coerce mixed user input into a validated ``HistoryFilters`` instance.

        Raises ``BAD_REQUEST`` for values that cannot be interpreted.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=default_page_size), max_page_size)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise errors.bad_request(
                f"Unsupported sort field '{resolved_sort.lstrip('-')}'.",
                {"valid_sort_fields": sorted(VALID_SORT_FIELDS)},
            )

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))

        resolved_categories: list[str] = []
        valid_categories = [category.value for category in DataCategory]
        for value in categories or ():
            if value in (None, ""):
                continue
            name = str(value).strip().lower()
            if name not in valid_categories:
                raise errors.invalid_data_type(str(value), valid_categories)
            if name not in resolved_categories:
                resolved_categories.append(name)

        resolved_imported_by = None
        if imported_by not in (None, ""):
            resolved_imported_by = _coerce_positive_int(imported_by, fallback=0)

        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_started_from = _coerce_datetime(started_from)
        resolved_started_to = _coerce_datetime(started_to, end_of_day=True)
        if resolved_started_from and resolved_started_to and resolved_started_from > resolved_started_to:
            raise errors.bad_request("from_date must be before to_date.")

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            categories=tuple(resolved_categories),
            imported_by=resolved_imported_by,
            search=resolved_search,
            started_from=resolved_started_from,
            started_to=resolved_started_to,
            include_dry_runs=_coerce_bool(include_dry_runs, default=True),
        )


@dataclass(frozen=True)
class AuditFilters:
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    actions: tuple[str, ...] = field(default_factory=tuple)
    actor_user_id: int | None = None
    subject_id: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        actions: Iterable[str] | None = None,
        actor_user_id: int | str | None = None,
        subject_id: str | None = None,
        created_from: str | datetime | None = None,
        created_to: str | datetime | None = None,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> "AuditFilters":
        valid_actions = [action.value for action in AuditAction]
        resolved_actions = []
        for value in actions or ():
            if value in (None, ""):
                continue
            name = str(value).strip().lower()
            if name not in valid_actions:
                raise errors.bad_request(f"Unsupported audit action '{value}'.", {"valid_actions": valid_actions})
            resolved_actions.append(name)

        resolved_from = _coerce_datetime(created_from)
        resolved_to = _coerce_datetime(created_to, end_of_day=True)
        if resolved_from and resolved_to and resolved_from > resolved_to:
            raise errors.bad_request("from_date must be before to_date.")

        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), max_page_size),
            actions=tuple(resolved_actions),
            actor_user_id=(
                _coerce_positive_int(actor_user_id, fallback=0) if actor_user_id not in (None, "") else None
            ),
            subject_id=subject_id.strip() if isinstance(subject_id, str) and subject_id.strip() else None,
            created_from=resolved_from,
            created_to=resolved_to,
        )


@dataclass(slots=True)
class HistoryPage:
    """Paginated history listing plus aggregate counts for the filtered set."""

    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int
    summary: Mapping[str, int]

    def as_dict(self) -> dict[str, Any]:
        return {
            "imports": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "summary": dict(self.summary),
        }


@dataclass(slots=True)
class AuditPage:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self, **extra: Any) -> dict[str, Any]:
        return {
            **extra,
            "entries": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def serialize_record(record: ImportRecord) -> dict[str, Any]:
    status = record.status.value if isinstance(record.status, ImportRecordStatus) else str(record.status)
    return {
        "import_id": record.id,
        "file_id": record.file_id,
        "file_name": record.file_name,
        "status": status,
        "dry_run": record.dry_run,
        "data_types": record.categories,
        "total_rows": record.total_rows,
        "records_imported": record.records_imported,
        "summary": dict(record.summary_json or {}),
        "options": dict(record.options_json or {}),
        "imported_by": record.triggered_by_user_id,
        "imported_by_name": record.triggered_by_name,
        "started_at": _isoformat(record.started_at),
        "completed_at": _isoformat(record.completed_at),
        "duration_ms": record.duration_ms,
        "error": record.error_message,
    }


class ImportHistoryService:
    """Facade for querying import records and audit entries."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # ---------------------------------------------------------------------
    # History
    # ---------------------------------------------------------------------

    def list_imports(self, filters: HistoryFilters) -> HistoryPage:
        query = self._apply_filters(self.session.query(ImportRecord), filters)
        summary = self._summarize(query)

        total = summary["total_imports"]
        if total == 0:
            return HistoryPage(
                items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0, summary=summary
            )

        records = (
            query.order_by(_resolve_sort_expression(filters.sort), ImportRecord.id.asc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return HistoryPage(
            items=[serialize_record(record) for record in records],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
            summary=summary,
        )

    def get_import(self, import_id: str) -> ImportRecord:
        record = self.session.get(ImportRecord, import_id)
        if record is None:
            raise errors.import_not_found(import_id)
        return record

    # ---------------------------------------------------------------------
    # Reports
    # ---------------------------------------------------------------------

    def build_report(
        self,
        import_id: str,
        *,
        report_format: str = "json",
        include_validation_details: bool = True,
        include_reconciliation_details: bool = True,
        include_raw_data: bool = False,
    ) -> dict[str, Any]:
        report_format = (report_format or "json").strip().lower()
        if report_format not in REPORT_FORMATS:
            raise errors.bad_request(
                f"Unsupported report format '{report_format}'.", {"valid_formats": list(REPORT_FORMATS)}
            )
        record = self.get_import(import_id)

        report_data: dict[str, Any] = {
            "import_id": record.id,
            "file_id": record.file_id,
            "file_name": record.file_name,
            "status": serialize_record(record)["status"],
            "dry_run": record.dry_run,
            "imported_by": record.triggered_by_name,
            "started_at": _isoformat(record.started_at),
            "completed_at": _isoformat(record.completed_at),
            "duration_ms": record.duration_ms,
            "summary": dict(record.summary_json or {}),
            "error": record.error_message,
        }

        validation = record.validation_json
        if include_validation_details and validation:
            report_data["validation"] = {
                "passed": validation.get("validation_passed"),
                "mode": validation.get("validation_mode"),
                "valid_records": validation.get("valid_records"),
                "invalid_records": validation.get("invalid_records"),
                "errors": validation.get("errors", []),
                "warnings": validation.get("warnings", []),
            }

        reconciliation = record.reconciliation_json
        if include_reconciliation_details and reconciliation:
            report_data["reconciliation"] = {
                "new_ambassadors": reconciliation.get("new_ambassadors", 0),
                "new_events": reconciliation.get("new_events", 0),
                "new_operators": reconciliation.get("new_operators", 0),
                "linked_records": reconciliation.get("linked_records", 0),
                "ambiguous_matches": reconciliation.get("ambiguous_matches", []),
            }

        if include_raw_data:
            staged = self.session.get(StagedFile, record.file_id)
            available = staged is not None and as_utc(staged.expires_at) > utc_now()
            report_data["raw_data_available"] = available
            if available:
                report_data["raw_data"] = staged.rows

        return {
            "import_id": record.id,
            "format": report_format,
            "report_data": report_data,
            "generated_at": utc_now().isoformat(),
        }

    def export_report_csv(self, report: Mapping[str, Any]) -> tuple[str, str]:
        """Render a built report as ``(filename, csv_text)``."""

        data = report["report_data"]
        buffer = StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["section", "key", "value"])
        for key in ("import_id", "file_id", "file_name", "status", "dry_run", "imported_by", "started_at",
                    "completed_at", "duration_ms", "error"):
            writer.writerow(["import", key, _csv_value(data.get(key))])

        summary = dict(data.get("summary") or {})
        categories = summary.pop("categories", {}) or {}
        for key, value in summary.items():
            writer.writerow(["summary", key, _csv_value(value)])
        for category, counts in categories.items():
            for key, value in counts.items():
                writer.writerow([f"category:{category}", key, _csv_value(value)])

        validation = data.get("validation")
        if validation:
            for key in ("passed", "mode", "valid_records", "invalid_records"):
                writer.writerow(["validation", key, _csv_value(validation.get(key))])
            for issue in validation.get("errors", []):
                writer.writerow(["validation_error", issue.get("row_number"), _csv_value(issue)])

        reconciliation = data.get("reconciliation")
        if reconciliation:
            for key in ("new_ambassadors", "new_events", "new_operators", "linked_records"):
                writer.writerow(["reconciliation", key, _csv_value(reconciliation.get(key))])
            for match in reconciliation.get("ambiguous_matches", []):
                writer.writerow(["ambiguous_match", match.get("id"), _csv_value(match)])

        if "raw_data_available" in data:
            writer.writerow(["raw_data", "available", _csv_value(data["raw_data_available"])])
            for index, row in enumerate(data.get("raw_data") or [], start=1):
                writer.writerow(["raw_data", index, _csv_value(row)])

        filename = f"import-report-{data['import_id']}.csv"
        return filename, buffer.getvalue()

    # ---------------------------------------------------------------------
    # Audit
    # ---------------------------------------------------------------------

    def get_audit_trail(self, import_id: str, *, page: int = DEFAULT_PAGE, page_size: int = DEFAULT_PAGE_SIZE) -> AuditPage:
        """Entries about an import and its source file, in insertion order."""

        record = self.get_import(import_id)
        query = self.session.query(AuditEntry).filter(AuditEntry.subject_id.in_([record.id, record.file_id]))
        return self._paginate_audit(query, page, page_size)

    def list_audit_entries(self, filters: AuditFilters) -> AuditPage:
        predicates = []
        if filters.actions:
            predicates.append(AuditEntry.action.in_(filters.actions))
        if filters.actor_user_id is not None:
            predicates.append(AuditEntry.actor_user_id == filters.actor_user_id)
        if filters.subject_id:
            predicates.append(AuditEntry.subject_id == filters.subject_id)
        if filters.created_from:
            predicates.append(AuditEntry.created_at >= filters.created_from)
        if filters.created_to:
            predicates.append(AuditEntry.created_at <= filters.created_to)

        query = self.session.query(AuditEntry)
        if predicates:
            query = query.filter(and_(*predicates))
        return self._paginate_audit(query, filters.page, filters.page_size)

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _apply_filters(self, query, filters: HistoryFilters):
        predicates = []

        if filters.statuses:
            predicates.append(ImportRecord.status.in_(filters.statuses))

        if filters.categories:
            predicates.append(
                or_(*[ImportRecord.categories_key.like(f"%,{category},%") for category in filters.categories])
            )

        if filters.imported_by is not None:
            predicates.append(ImportRecord.triggered_by_user_id == filters.imported_by)

        if not filters.include_dry_runs:
            predicates.append(ImportRecord.dry_run.is_(False))

        if filters.started_from:
            predicates.append(ImportRecord.started_at >= filters.started_from)

        if filters.started_to:
            predicates.append(ImportRecord.started_at <= filters.started_to)

        if filters.search:
            like_pattern = f"%{filters.search.lower()}%"
            predicates.append(
                or_(
                    func.lower(ImportRecord.file_name).like(like_pattern),
                    func.lower(func.coalesce(ImportRecord.triggered_by_name, "")).like(like_pattern),
                )
            )

        if predicates:
            query = query.filter(and_(*predicates))
        return query

    def _summarize(self, query) -> dict[str, int]:
        status_counts = {
            status.value if isinstance(status, ImportRecordStatus) else str(status): count
            for status, count in query.with_entities(ImportRecord.status, func.count())
            .group_by(ImportRecord.status)
            .all()
        }
        records_imported = (
            query.filter(ImportRecord.status == ImportRecordStatus.COMPLETED)
            .with_entities(func.coalesce(func.sum(ImportRecord.records_imported), 0))
            .scalar()
        )
        return {
            "total_imports": sum(status_counts.values()),
            "successful_imports": status_counts.get(ImportRecordStatus.COMPLETED.value, 0),
            "failed_imports": status_counts.get(ImportRecordStatus.FAILED.value, 0),
            "total_records_imported": int(records_imported or 0),
        }

    @staticmethod
    def _paginate_audit(query, page: int, page_size: int) -> AuditPage:
        total = query.count()
        entries = query.order_by(AuditEntry.id.asc()).offset((page - 1) * page_size).limit(page_size).all()
        return AuditPage(
            items=[entry.to_dict() for entry in entries],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=(total + page_size - 1) // page_size if total else 0,
        )


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _isoformat(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _csv_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    if value is None:
        return ""
    return value


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, bool):
        raise errors.bad_request(f"Expected positive integer, received '{candidate}'.")
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.strip().isdigit():
        return max(1, int(candidate.strip()))
    raise errors.bad_request(f"Expected positive integer, received '{candidate}'.")


def _coerce_status(value: str | ImportRecordStatus) -> ImportRecordStatus:
    if isinstance(value, ImportRecordStatus):
        return value
    try:
        return ImportRecordStatus(str(value).strip().lower())
    except ValueError:
        raise errors.bad_request(
            f"Unsupported status filter '{value}'.",
            {"valid_statuses": [status.value for status in ImportRecordStatus]},
        ) from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise errors.bad_request(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _coerce_bool(candidate: str | bool | None, *, default: bool) -> bool:
    if candidate is None:
        return default
    if isinstance(candidate, bool):
        return candidate
    normalized = candidate.strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    return default


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    expression = VALID_SORT_FIELDS[sort.lstrip("-")]
    return expression.desc() if descending else expression.asc()
