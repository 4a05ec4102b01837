"""
Row-level validation rules for staged historical imports.

Rules follow the importer's DQ rule shape: small objects with a stable code,
a severity and an ``evaluate`` method returning issues for one row. The
validator runs every rule registered for the declared categories and stores a
``ValidationOutcome`` on the staged file.
"""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context

from ops_app.importer import errors
from ops_app.importer.utils import utc_now
from ops_app.models.importer.schema import DataCategory, ImportStatus, StagedFile

from .audit import Actor, AuditAction, AuditTrailRecorder
from .staging import StagingStore


class ValidationMode(str, enum.Enum):
    STRICT = "strict"
    PERMISSIVE = "permissive"


class IssueSeverity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    row_number: int
    field: str
    value: Any
    message: str
    code: str
    severity: IssueSeverity

    def as_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "field": self.field,
            "value": self.value,
            "message": self.message,
            "code": self.code,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class RowRule:
    """Declarative rule evaluated against a single staged row."""

    code: str
    description: str
    severity: IssueSeverity

    def evaluate(self, row_number: int, row: Mapping[str, Any]) -> Iterable[ValidationIssue]:
        raise NotImplementedError

    def _issue(self, row_number: int, field_name: str, value: Any, message: str) -> ValidationIssue:
        return ValidationIssue(
            row_number=row_number,
            field=field_name,
            value=value,
            message=message,
            code=self.code,
            severity=self.severity,
        )


_EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_REGEX = re.compile(r"^\+?[\d\s\-()]{7,20}$")
_CURRENCY_CHARS = re.compile(r"[$€£,]")


def _first_present(row: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return None


def _key_variants(name: str) -> tuple[str, ...]:
    return (name, name.capitalize(), name.upper())


def parse_number(value: Any, *, strip_currency: bool = True) -> float | None:
    """
    Parse numbers stored as numbers or text; booleans are not numbers.
    """

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        text = _CURRENCY_CHARS.sub("", value) if strip_currency else value
        text = text.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


class EmailFormatRule(RowRule):
    """Sign-up emails must be well formed when present."""

    FIELDS = ("email", "Email", "EMAIL")

    def __init__(self) -> None:
        super().__init__(
            code="INVALID_EMAIL",
            description="Email must be well-formed when present.",
            severity=IssueSeverity.ERROR,
        )

    def evaluate(self, row_number: int, row: Mapping[str, Any]) -> Iterable[ValidationIssue]:
        email = _first_present(row, self.FIELDS)
        if not isinstance(email, str) or _EMAIL_REGEX.match(email):
            return []
        return [self._issue(row_number, "email", email, "Invalid email format")]


class PhoneShapeRule(RowRule):
    """Loose phone shape check; only ever a warning."""

    FIELDS = ("phone", "Phone", "PHONE")

    def __init__(self) -> None:
        super().__init__(
            code="INVALID_PHONE",
            description="Phone should contain 7-20 digits, spaces, dashes or parentheses.",
            severity=IssueSeverity.WARNING,
        )

    def evaluate(self, row_number: int, row: Mapping[str, Any]) -> Iterable[ValidationIssue]:
        phone = _first_present(row, self.FIELDS)
        if not isinstance(phone, str) or _PHONE_REGEX.match(phone):
            return []
        return [self._issue(row_number, "phone", phone, "Phone number format may be invalid")]


class AmountFieldRule(RowRule):
    """Populated budget amounts must parse to finite numbers."""

    AMOUNT_FIELDS = ("budget", "actual", "cost", "revenue", "spent", "planned")

    def __init__(self) -> None:
        super().__init__(
            code="INVALID_NUMBER",
            description="Budget and actual amounts must be numeric.",
            severity=IssueSeverity.ERROR,
        )

    def evaluate(self, row_number: int, row: Mapping[str, Any]) -> Iterable[ValidationIssue]:
        issues = []
        for field_name in self.AMOUNT_FIELDS:
            value = _first_present(row, _key_variants(field_name)[:2])
            if value is None:
                continue
            if parse_number(value) is None:
                issues.append(self._issue(row_number, field_name, value, f"{field_name} must be a valid number"))
        return issues


class NonNegativeNumberRule(RowRule):
    """Payroll quantities must be non-negative numbers."""

    NUMERIC_FIELDS = ("hours", "rate", "salary", "wage", "commission")

    def __init__(self) -> None:
        super().__init__(
            code="INVALID_NUMBER",
            description="Payroll quantities must be non-negative numbers.",
            severity=IssueSeverity.ERROR,
        )

    def evaluate(self, row_number: int, row: Mapping[str, Any]) -> Iterable[ValidationIssue]:
        issues = []
        for field_name in self.NUMERIC_FIELDS:
            value = _first_present(row, _key_variants(field_name)[:2])
            if value is None:
                continue
            number = parse_number(value)
            if number is None or number < 0:
                issues.append(
                    self._issue(row_number, field_name, value, f"{field_name} must be a non-negative number")
                )
        return issues


CATEGORY_RULES: dict[DataCategory, tuple[RowRule, ...]] = {
    DataCategory.SIGN_UPS: (EmailFormatRule(), PhoneShapeRule()),
    DataCategory.BUDGETS_ACTUALS: (AmountFieldRule(),),
    DataCategory.PAYROLL: (NonNegativeNumberRule(),),
}


@dataclass
class ValidationOutcome:
    file_id: str
    validation_mode: ValidationMode
    categories: list[str]
    total_records: int
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    validated_at: str | None = None

    @property
    def invalid_records(self) -> int:
        return len({issue.row_number for issue in self.errors})

    @property
    def valid_records(self) -> int:
        return self.total_records - self.invalid_records

    @property
    def validation_passed(self) -> bool:
        if self.validation_mode is ValidationMode.PERMISSIVE:
            return True
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "validation_passed": self.validation_passed,
            "validation_mode": self.validation_mode.value,
            "data_types": list(self.categories),
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "errors": [issue.as_dict() for issue in self.errors],
            "warnings": [issue.as_dict() for issue in self.warnings],
            "validated_at": self.validated_at,
        }


def coerce_categories(values: Iterable[Any] | None) -> list[str]:
    """Validate requested category names, keeping request order."""
    if values is None or isinstance(values, (str, bytes)):
        raise errors.bad_request("data_types must be a non-empty array")
    resolved: list[str] = []
    valid = [category.value for category in DataCategory]
    for value in values:
        name = str(value).strip().lower()
        if name not in valid:
            raise errors.invalid_data_type(str(value), valid)
        if name not in resolved:
            resolved.append(name)
    if not resolved:
        raise errors.bad_request("data_types must be a non-empty array")
    return resolved


def coerce_mode(value: Any) -> ValidationMode:
    if value in (None, ""):
        return ValidationMode.STRICT
    try:
        return ValidationMode(str(value).strip().lower())
    except ValueError:
        raise errors.bad_request(
            f"Unsupported validation_mode '{value}'.",
            {"valid_modes": [mode.value for mode in ValidationMode]},
        ) from None


def validate_rows(
    file_id: str,
    rows: Sequence[Mapping[str, Any]],
    categories: Sequence[str],
    mode: ValidationMode,
) -> ValidationOutcome:
    outcome = ValidationOutcome(
        file_id=file_id,
        validation_mode=mode,
        categories=list(categories),
        total_records=len(rows),
        validated_at=utc_now().isoformat(),
    )
    rules = [rule for category in categories for rule in CATEGORY_RULES.get(DataCategory(category), ())]
    for index, row in enumerate(rows, start=1):
        for rule in rules:
            for issue in rule.evaluate(index, row):
                if issue.severity is IssueSeverity.ERROR:
                    outcome.errors.append(issue)
                else:
                    outcome.warnings.append(issue)
    return outcome


_VALIDATABLE_STATUSES = frozenset(
    {
        ImportStatus.PENDING,
        ImportStatus.VALIDATING,
        ImportStatus.FAILED,
        ImportStatus.RECONCILING,
        ImportStatus.READY,
    }
)


class Validator:
    """Runs category rules over a staged file and records the verdict."""

    def __init__(self, store: StagingStore, audit: AuditTrailRecorder | None = None) -> None:
        self.store = store
        self.audit = audit or store.audit

    def validate(
        self,
        handle: str,
        categories: Iterable[Any],
        mode: Any = ValidationMode.STRICT,
        *,
        actor: Actor,
    ) -> ValidationOutcome:
        resolved_categories = coerce_categories(categories)
        resolved_mode = coerce_mode(mode)

        with self.store.locked(handle):
            staged = self.store.get(handle, for_update=True)
            _ensure_validatable(staged)

            self.audit.record(
                staged.id,
                AuditAction.VALIDATION_STARTED,
                actor,
                details={"data_types": resolved_categories, "validation_mode": resolved_mode.value},
            )
            outcome = validate_rows(staged.id, staged.rows, resolved_categories, resolved_mode)

            staged.validation_json = outcome.as_dict()
            staged.declared_categories_json = resolved_categories
            staged.import_status = ImportStatus.VALIDATING if outcome.validation_passed else ImportStatus.FAILED
            self.audit.record(
                staged.id,
                AuditAction.VALIDATION_COMPLETED,
                actor,
                details={
                    "validation_passed": outcome.validation_passed,
                    "validation_mode": resolved_mode.value,
                    "total_records": outcome.total_records,
                    "valid_records": outcome.valid_records,
                    "invalid_records": outcome.invalid_records,
                    "warning_count": len(outcome.warnings),
                },
            )
            self.store.save(staged)

        if has_app_context():
            current_app.logger.info(
                "Historical import validated",
                extra={
                    "importer_file_id": handle,
                    "importer_validation_passed": outcome.validation_passed,
                    "importer_validation_mode": resolved_mode.value,
                    "importer_error_count": len(outcome.errors),
                    "importer_warning_count": len(outcome.warnings),
                },
            )
        return outcome


def _ensure_validatable(staged: StagedFile) -> None:
    if staged.import_status is ImportStatus.COMPLETED:
        raise errors.import_already_executed(staged.id)
    if staged.import_status not in _VALIDATABLE_STATUSES:
        raise errors.import_not_ready(staged.import_status.value, required_status="pending")
