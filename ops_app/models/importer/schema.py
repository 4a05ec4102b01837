"""
SQLAlchemy models for the historical import pipeline.

A staged file lives in ``staged_files`` until it expires or is executed;
reconciliation questions live in ``ambiguous_matches``. Executions produce
``import_records`` and every stage appends to ``import_audit_entries``,
which are kept independently of the staged file so they survive eviction.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utc_now


class ImportStatus(str, enum.Enum):
    """Lifecycle states for a staged file."""

    PENDING = "pending"
    VALIDATING = "validating"
    RECONCILING = "reconciling"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class DataCategory(str, enum.Enum):
    SIGN_UPS = "sign_ups"
    BUDGETS_ACTUALS = "budgets_actuals"
    PAYROLL = "payroll"


class ImportRecordStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class UserSelection(str, enum.Enum):
    """Human decision applied to an ambiguous match."""

    USE_MATCH = "use_match"
    USE_CANDIDATE = "use_candidate"
    CREATE_NEW = "create_new"


class StagedFile(BaseModel):
    """Parsed upload held behind an opaque handle until it expires."""

    __tablename__ = "staged_files"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True)
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    media_type: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    row_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    columns_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    rows_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    detected_categories_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    declared_categories_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    parse_errors_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    validation_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    reconciliation_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    import_status: Mapped[ImportStatus] = mapped_column(
        Enum(ImportStatus, name="import_status_enum"),
        nullable=False,
        default=ImportStatus.PENDING,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    uploaded_by_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    version: Mapped[int] = mapped_column(db.Integer, nullable=False)

    ambiguous_matches = relationship(
        "AmbiguousMatch",
        back_populates="staged_file",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AmbiguousMatch.id",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index("idx_staged_files_expires_at", "expires_at"),)

    @property
    def rows(self) -> list[dict]:
        return list(self.rows_json or [])

    @property
    def columns(self) -> list[str]:
        return list(self.columns_json or [])

    @property
    def detected_categories(self) -> list[str]:
        return list(self.detected_categories_json or [])

    @property
    def declared_categories(self) -> list[str]:
        return list(self.declared_categories_json or self.detected_categories_json or [])

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"<StagedFile id={self.id} status={self.import_status}>"


class AmbiguousMatch(BaseModel):
    """Free-text reference with several plausible canonical counterparts."""

    __tablename__ = "ambiguous_matches"

    id: Mapped[int] = mapped_column(primary_key=True)
    staged_file_id: Mapped[str] = mapped_column(
        ForeignKey("staged_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    import_field: Mapped[str] = mapped_column(db.String(100), nullable=False)
    import_value: Mapped[str] = mapped_column(db.String(255), nullable=False)
    normalized_value: Mapped[str] = mapped_column(db.String(255), nullable=False)
    row_numbers_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    candidates_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    user_selection: Mapped[UserSelection | None] = mapped_column(
        Enum(UserSelection, name="user_selection_enum"),
        nullable=True,
    )
    selected_candidate_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    resolved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    resolved_by_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)

    staged_file = relationship("StagedFile", back_populates="ambiguous_matches")

    @property
    def is_resolved(self) -> bool:
        return self.user_selection is not None

    @property
    def candidates(self) -> list[dict]:
        return list(self.candidates_json or [])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "import_field": self.import_field,
            "import_value": self.import_value,
            "row_numbers": list(self.row_numbers_json or []),
            "candidates": self.candidates,
            "resolved": self.is_resolved,
            "user_selection": self.user_selection.value if self.user_selection else None,
            "selected_candidate_id": self.selected_candidate_id,
            "notes": self.notes,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": (
                {"id": self.resolved_by_user_id, "name": self.resolved_by_name} if self.is_resolved else None
            ),
        }


class ImportRecord(BaseModel):
    """Durable outcome of executing a staged file."""

    __tablename__ = "import_records"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True)
    file_id: Mapped[str] = mapped_column(db.String(36), nullable=False, index=True)
    completed_file_id: Mapped[str | None] = mapped_column(
        db.String(36),
        nullable=True,
        unique=True,
        comment="Set only for completed executions; enforces one completed import per staged file.",
    )
    file_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    status: Mapped[ImportRecordStatus] = mapped_column(
        Enum(ImportRecordStatus, name="import_record_status_enum"),
        nullable=False,
        index=True,
    )
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    categories_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    categories_key: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_imported: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    summary_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    validation_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    reconciliation_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    options_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    triggered_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    triggered_by_name: Mapped[str | None] = mapped_column(db.String(200), nullable=True)

    @property
    def categories(self) -> list[str]:
        return list(self.categories_json or [])

    @staticmethod
    def build_categories_key(categories) -> str:
        """Comma-delimited key so category filters can use LIKE."""
        ordered = sorted({str(category) for category in categories or ()})
        return f",{','.join(ordered)}," if ordered else ""


class AuditEntry(db.Model):
    """Append-only trail of pipeline actions."""

    __tablename__ = "import_audit_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    subject_id: Mapped[str] = mapped_column(db.String(36), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(db.String(20), nullable=False, default="file")
    action: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    actor_user_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True, index=True)
    actor_name: Mapped[str] = mapped_column(db.String(200), nullable=False, default="system")
    entity_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=utc_now, index=True
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "subject_type": self.subject_type,
            "action": self.action,
            "actor": {"id": self.actor_user_id, "name": self.actor_name},
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "details": self.details_json or {},
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }


class AuditEntryImmutableError(RuntimeError):
    """Raised when code attempts to rewrite or remove an audit entry."""


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditEntryImmutableError(f"Audit entry {target.id} is append-only.")


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditEntryImmutableError(f"Audit entry {target.id} cannot be deleted.")
