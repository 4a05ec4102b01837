"""
Category committers that write reconciled rows to the canonical tables.

Each committer walks the staged rows for one data category, resolves entity
names through an ``EntityResolver`` and writes payroll entries, event budgets
or sign-ups. Committers only add to the session; the executor owns the
transaction boundary for each category. In dry-run mode nothing is added or
mutated and counts reflect what a real run would have written.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Hashable, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.orm import Session

from ops_app.importer.utils import utc_now
from ops_app.models import Event, EventStatus, PayrollEntry, PayrollStatus, SignUp
from ops_app.models.importer.schema import DataCategory, StagedFile, UserSelection

from .directory import CanonicalEntityDirectory
from .matching import EntityType, normalize_name
from .reconciler import reference_value

UNRESOLVED_REASON = "unresolved_ambiguous_reference"
SOLO_EVENT_TITLE = "Solo Sign-ups"

_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_MONTH_DAY = re.compile(r"(\d{1,2})/(\d{1,2})")
_YEAR_SUFFIX = re.compile(r"/(\d{4})")
_AMOUNT_NOISE = re.compile(r"[$,()]")


# ---------------------------------------------------------------------------
# Value parsing
# ---------------------------------------------------------------------------


def parse_amount(value: Any) -> float:
    """
    Spreadsheet money cell to float. ``$`` and thousands separators are
    ignored, parentheses or a leading minus mean negative, and blanks or
    ``#DIV/0!`` read as zero. So do non-finite values such as
    ``NaN`` or ``inf``.
    """

    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    text = str(value).strip()
    if not text or text == "#DIV/0!":
        return 0.0
    try:
        number = float(_AMOUNT_NOISE.sub("", text).strip())
    except ValueError:
        return 0.0
    if not math.isfinite(number):
        return 0.0
    if "(" in text or text.startswith("-"):
        return -abs(number)
    return number


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _iso_date(text: str) -> date | None:
    match = _ISO_DATE.match(text)
    if not match:
        return None
    return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))


def parse_us_date(value: Any) -> date | None:
    """``M/D/YYYY``, ``M/D/YY`` (20YY) or ISO ``YYYY-MM-DD``."""

    text = str(value).strip() if value not in (None, "") else ""
    if not text:
        return None
    iso = _iso_date(text)
    if iso is not None:
        return iso
    match = _US_DATE.match(text)
    if not match:
        return None
    year = int(match.group(3))
    if year < 100:
        year += 2000
    return _safe_date(year, int(match.group(1)), int(match.group(2)))


def parse_budget_date(value: Any, default_year: int) -> date | None:
    """
    Budget sheets label days as ``Fri, 01/2``; an explicit ``/YYYY`` wins
    over ``default_year``. ``NA`` and blanks mean no date.
    """

    text = str(value).strip() if value not in (None, "") else ""
    if not text or text.upper() == "NA":
        return None
    iso = _iso_date(text)
    if iso is not None:
        return iso
    match = _MONTH_DAY.search(text)
    if not match:
        return None
    year_match = _YEAR_SUFFIX.search(text)
    year = int(year_match.group(1)) if year_match else default_year
    return _safe_date(year, int(match.group(1)), int(match.group(2)))


def field_value(row: Mapping[str, Any], *names: str) -> str:
    """First populated cell among ``names`` and their lowercase/underscore forms."""

    for name in names:
        for key in (name, name.lower(), name.replace(" ", "_")):
            value = row.get(key)
            if value not in (None, ""):
                return str(value).strip()
    return ""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class CategoryResult:
    category: str
    status: str = "completed"
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    examined: int = 0
    errors: list[str] = field(default_factory=list)
    skip_reasons: dict[str, int] = field(default_factory=dict)
    extras: dict[str, int] = field(default_factory=dict)

    @property
    def imported(self) -> int:
        return self.inserted + self.updated

    def skip(self, reason: str, count: int = 1) -> None:
        self.skipped += count
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + count

    def fail(self, row_number: int | None, message: str, count: int = 1) -> None:
        self.failed += count
        self.errors.append(f"Row {row_number}: {message}" if row_number is not None else message)

    def bump(self, name: str, count: int = 1) -> None:
        self.extras[name] = self.extras.get(name, 0) + count

    def mark_failed(self, message: str) -> None:
        """Category transaction was rolled back: nothing it examined landed."""
        self.status = "failed"
        self.failed = self.examined
        self.inserted = 0
        self.updated = 0
        self.skipped = 0
        self.skip_reasons = {}
        self.errors = [message]

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "skip_reasons": dict(self.skip_reasons),
        }
        payload.update(self.extras)
        return payload


# ---------------------------------------------------------------------------
# Entity resolution
# ---------------------------------------------------------------------------


class UnresolvedReference(Exception):
    """Row names an ambiguous entity nobody decided on."""

    def __init__(self, entity_type: EntityType, text: str) -> None:
        super().__init__(f"{entity_type.value} '{text}' is awaiting a reconciliation decision")
        self.entity_type = entity_type
        self.text = text


@dataclass(frozen=True)
class Identity:
    """How a free-text name maps onto the canonical tables for this run."""

    kind: str  # linked | new | unresolved
    name: str
    entity: Any = None


class EntityResolver:
    """
    Resolves names using the reviewed reconciliation first: exact links and
    human decisions, then an exact directory lookup, then creation. Entities
    created during the run are cached by key so each is created once.
    """

    def __init__(
        self,
        staged: StagedFile,
        directory: CanonicalEntityDirectory,
        *,
        dry_run: bool = False,
        unresolved_as_new: bool = False,
    ) -> None:
        self.directory = directory
        self.dry_run = dry_run
        self.unresolved_as_new = unresolved_as_new

        stored = staged.reconciliation_json or {}
        self._links: dict[EntityType, dict[str, str]] = {entity_type: {} for entity_type in EntityType}
        for type_name, links in (stored.get("links") or {}).items():
            self._links[EntityType(type_name)] = {
                normalized: str(link.get("entity_id")) for normalized, link in (links or {}).items()
            }

        self._decisions: dict[tuple[EntityType, str], tuple[UserSelection, str | None]] = {}
        self._unresolved: set[tuple[EntityType, str]] = set()
        for match in staged.ambiguous_matches:
            key = (EntityType(match.entity_type), match.normalized_value)
            if match.is_resolved:
                self._decisions[key] = (match.user_selection, match.selected_candidate_id)
            else:
                self._unresolved.add(key)

        self._created: dict[EntityType, dict[Hashable, Any]] = {entity_type: {} for entity_type in EntityType}

    # ------------------------------------------------------------------

    def is_blocked(self, row: Mapping[str, Any]) -> bool:
        """Whether any reference in the row waits on an unresolved match."""
        if self.unresolved_as_new:
            return False
        for entity_type in EntityType:
            found = reference_value(row, entity_type)
            if found and (entity_type, normalize_name(found[1])) in self._unresolved:
                return True
        return False

    def identity(self, entity_type: EntityType, text: str) -> Identity:
        normalized = normalize_name(text)
        key = (entity_type, normalized)

        decision = self._decisions.get(key)
        if decision is not None:
            selection, candidate_id = decision
            if selection is UserSelection.CREATE_NEW:
                return Identity("new", text)
            entity = self.directory.get(entity_type, candidate_id)
            if entity is not None:
                return Identity("linked", _entity_name(entity_type, entity), entity)

        linked_id = self._links[entity_type].get(normalized)
        if linked_id is not None:
            entity = self.directory.get(entity_type, linked_id)
            if entity is not None:
                return Identity("linked", _entity_name(entity_type, entity), entity)

        if key in self._unresolved:
            # Unreviewed names never fall through to a candidate.
            return Identity("new", text) if self.unresolved_as_new else Identity("unresolved", text)

        entity = self.directory.find_exact(entity_type, text)
        if entity is not None:
            return Identity("linked", _entity_name(entity_type, entity), entity)
        return Identity("new", text)

    def resolve(self, entity_type: EntityType, text: str, **attributes: Any) -> Any | None:
        """
        Canonical entity for ``text``, creating it when needed. Returns None
        for entities a dry run would have created.
        """

        identity = self.identity(entity_type, text)
        if identity.kind == "unresolved":
            raise UnresolvedReference(entity_type, text)
        if identity.kind == "linked":
            return identity.entity
        return self.create(entity_type, normalize_name(text), text, **attributes)

    def resolve_event(self, text: str, event_date: date | None, **attributes: Any) -> tuple[Any | None, bool]:
        """
        Dated event for a name as ``(event, created)``. Recurring events share
        a title, so the reviewed identity supplies the canonical title and the
        date picks the occurrence; a missing occurrence is created.
        """

        identity = self.identity(EntityType.EVENT, text)
        if identity.kind == "unresolved":
            raise UnresolvedReference(EntityType.EVENT, text)
        title = identity.name if identity.kind == "linked" else text.strip()
        key = (normalize_name(title), event_date)
        if key in self._created[EntityType.EVENT]:
            return self._created[EntityType.EVENT][key], False

        existing = self.directory.find_event(title, event_date)
        if existing is not None:
            return existing, False
        if identity.kind == "linked" and identity.entity.event_date in (None, event_date):
            return identity.entity, False
        return self.create(EntityType.EVENT, key, title, event_date=event_date, **attributes), True

    def create(self, entity_type: EntityType, key: Hashable, name: str, **attributes: Any) -> Any | None:
        created = self._created[entity_type]
        if key in created:
            return created[key]
        model = None if self.dry_run else self.directory.create(entity_type, name, **attributes)
        created[key] = model
        return model

    # ------------------------------------------------------------------

    def checkpoint(self) -> dict[EntityType, frozenset]:
        return {entity_type: frozenset(created) for entity_type, created in self._created.items()}

    def restore(self, checkpoint: Mapping[EntityType, frozenset]) -> None:
        """Forget entities created after ``checkpoint``; their rows were rolled back."""
        for entity_type, created in self._created.items():
            keep = checkpoint.get(entity_type, frozenset())
            dropped = [key for key in created if key not in keep]
            ids = [created[key].id for key in dropped if created[key] is not None]
            for key in dropped:
                del created[key]
            self.directory.forget(entity_type, ids)

    def created_counts(self) -> dict[str, int]:
        return {entity_type.value: len(created) for entity_type, created in self._created.items()}


def _entity_name(entity_type: EntityType, entity: Any) -> str:
    if entity_type is EntityType.AMBASSADOR:
        return entity.full_name
    if entity_type is EntityType.EVENT:
        return entity.title
    return entity.name


# ---------------------------------------------------------------------------
# Committers
# ---------------------------------------------------------------------------


class CategoryCommitter:
    category: DataCategory

    def __init__(self, session: Session, resolver: EntityResolver, *, import_id: str, dry_run: bool = False) -> None:
        self.session = session
        self.resolver = resolver
        self.import_id = import_id
        self.dry_run = dry_run

    def new_result(self, rows: Sequence[Mapping[str, Any]]) -> CategoryResult:
        return CategoryResult(category=self.category.value, examined=len(rows))

    def write(self, rows: Sequence[Mapping[str, Any]], result: CategoryResult) -> None:
        raise NotImplementedError

    def _add(self, model: Any) -> None:
        if not self.dry_run:
            self.session.add(model)


class PayrollCommitter(CategoryCommitter):
    """One ``payroll_entries`` row per staged pay line."""

    category = DataCategory.PAYROLL

    def write(self, rows, result):
        for row_number, row in enumerate(rows, start=1):
            name = field_value(row, "Names")
            total_raw = row.get("Total")
            if not name or total_raw in (None, ""):
                result.skip("missing_name_or_total")
                continue
            total = parse_amount(total_raw)
            event_name = field_value(row, "Event Name")
            if total == 0 and not event_name:
                result.skip("zero_total")
                continue
            work_date = parse_us_date(row.get("Date"))
            if work_date is None:
                result.fail(row_number, f"Invalid date for {name}: {row.get('Date')}")
                continue
            if self.resolver.is_blocked(row):
                result.skip(UNRESOLVED_REASON)
                continue

            try:
                ambassador = self.resolver.resolve(EntityType.AMBASSADOR, name)
            except UnresolvedReference:
                result.skip(UNRESOLVED_REASON)
                continue
            self._add(
                PayrollEntry(
                    ambassador_id=ambassador.id if ambassador is not None else None,
                    ambassador_name=name,
                    event_name=event_name or None,
                    work_date=work_date,
                    scheduled_hours=parse_amount(row.get("Scheduled hours")) or None,
                    hours=parse_amount(row.get("Hours")) or None,
                    solos=parse_amount(row.get("Solos")),
                    bonus=parse_amount(row.get("Bonus")),
                    reimbursements=parse_amount(row.get("Reimbursements")),
                    other=parse_amount(row.get("Other")),
                    total=total,
                    status=PayrollStatus.PAID if field_value(row, "Status").lower() == "paid" else PayrollStatus.PENDING,
                    pay_date=parse_us_date(row.get("Pay Date")),
                    notes=field_value(row, "Notes") or None,
                    source="import",
                    import_id=self.import_id,
                )
            )
            result.inserted += 1


@dataclass
class _BudgetGroup:
    event_date: date
    name: str
    type_label: str
    row: Mapping[str, Any]
    row_count: int = 0
    budget_cost: float = 0.0
    actual_cost: float = 0.0
    budget_signups: float = 0.0
    actual_signups: float = 0.0
    budget_revenue: float = 0.0
    actual_revenue: float = 0.0


class BudgetsCommitter(CategoryCommitter):
    """
    Budget sheets carry a Budget line and an Actual line per event day. Lines
    are grouped by (date, event name) and applied to one event each.
    """

    category = DataCategory.BUDGETS_ACTUALS

    def __init__(self, *args: Any, default_year: int | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        if default_year is None and has_app_context():
            default_year = current_app.config.get("IMPORTER_BUDGET_DEFAULT_YEAR")
        self.default_year = int(default_year) if default_year else utc_now().year

    def group_rows(self, rows: Iterable[Mapping[str, Any]], result: CategoryResult) -> list[_BudgetGroup]:
        groups: dict[tuple[date, str], _BudgetGroup] = {}
        for row in rows:
            kind = field_value(row, "Budget/Actual")
            if kind not in ("Budget", "Actual"):
                result.skip("not_budget_line")
                continue
            name = field_value(row, "Event name")
            if not name:
                result.skip("missing_event_name")
                continue
            event_date = parse_budget_date(row.get("Date"), self.default_year)
            if event_date is None:
                result.skip("missing_date")
                continue

            group = groups.get((event_date, name))
            if group is None:
                group = _BudgetGroup(event_date=event_date, name=name, type_label=field_value(row, "Event type"), row=row)
                groups[(event_date, name)] = group
            group.row_count += 1

            total_cost = parse_amount(row.get("Total Cost"))
            signups = parse_amount(row.get("Sign up"))
            revenue = parse_amount(row.get("Revenue"))
            if kind == "Budget":
                group.budget_cost = total_cost
                group.budget_signups = signups
                group.budget_revenue = revenue
                group.type_label = field_value(row, "Event type") or group.type_label
            else:
                group.actual_cost = total_cost
                group.actual_signups = signups
                group.actual_revenue = revenue
        return list(groups.values())

    def write(self, rows, result):
        for group in self.group_rows(rows, result):
            if self.resolver.is_blocked(group.row):
                result.skip(UNRESOLVED_REASON, group.row_count)
                continue
            event_type = Event.infer_type(group.type_label or group.name)
            values = {
                "budget": group.budget_cost or None,
                "actual_cost": group.actual_cost or None,
                "signup_goal": int(round(group.budget_signups)) or None,
                "actual_attendance": int(round(group.actual_signups)) or None,
            }

            try:
                event, created = self.resolver.resolve_event(
                    group.name,
                    group.event_date,
                    event_type=event_type,
                    status=EventStatus.COMPLETED if group.actual_cost > 0 else EventStatus.PLANNED,
                    **values,
                )
            except UnresolvedReference:
                result.skip(UNRESOLVED_REASON, group.row_count)
                continue
            if created:
                result.inserted += 1
                continue
            if event is not None and not self.dry_run:
                for attribute, value in values.items():
                    setattr(event, attribute, value)
                event.event_type = event_type
                if event.event_date is None:
                    event.event_date = group.event_date
            result.updated += 1


class SignUpsCommitter(CategoryCommitter):
    """Customer sign-ups with duplicate detection by (email, operator, date)."""

    category = DataCategory.SIGN_UPS

    def write(self, rows, result):
        result.extras.update({"duplicates": 0, "missing_cpa": 0})
        seen: set[tuple[str, str, date]] = set()
        solo_event = None

        for row_number, row in enumerate(rows, start=1):
            ambassador_name = field_value(row, "Ambassador Name", "ambassador_name", "ambassadorName")
            email = field_value(row, "Email")
            if not email and not ambassador_name:
                result.skip("empty_row")
                continue
            if "total" in ambassador_name.lower():
                result.skip("totals_row")
                continue

            operator_name = field_value(row, "Operator")
            signup_date = parse_us_date(field_value(row, "Date"))
            if not ambassador_name:
                result.fail(row_number, "Missing ambassador")
                continue
            if not operator_name:
                result.fail(row_number, "Missing operator")
                continue
            if signup_date is None:
                result.fail(row_number, f"Invalid date '{field_value(row, 'Date')}'")
                continue

            if email:
                key = (email.lower(), operator_name.lower(), signup_date)
                if key in seen:
                    result.bump("duplicates")
                    result.skip("duplicate")
                    continue
                seen.add(key)

            if self.resolver.is_blocked(row):
                result.skip(UNRESOLVED_REASON)
                continue

            try:
                ambassador = self.resolver.resolve(EntityType.AMBASSADOR, ambassador_name)
                operator = self.resolver.resolve(EntityType.OPERATOR, operator_name)
            except UnresolvedReference:
                result.skip(UNRESOLVED_REASON)
                continue
            if email and operator is not None and self._exists(email, operator.id, signup_date):
                result.bump("duplicates")
                result.skip("duplicate")
                continue

            cpa_text = field_value(row, "CPA")
            cpa = parse_amount(cpa_text) if cpa_text else None
            if cpa is None:
                result.bump("missing_cpa")

            rate = field_value(row, "Rate")
            event_name = field_value(row, "Event")
            if "solo" in rate.lower() or event_name.lower() == "solo":
                if solo_event is None:
                    solo_event = self._solo_event()
                event = solo_event
            elif event_name:
                try:
                    event, _ = self.resolver.resolve_event(event_name, signup_date, status=EventStatus.COMPLETED)
                except UnresolvedReference:
                    result.skip(UNRESOLVED_REASON)
                    continue
            else:
                event = None

            self._add(
                SignUp(
                    ambassador_id=ambassador.id if ambassador is not None else None,
                    operator_id=operator.id if operator is not None else None,
                    event_id=event.id if event is not None else None,
                    customer_email=email or None,
                    customer_first_name=field_value(row, "firstname", "FirstName", "first_name") or "Unknown",
                    customer_last_name=field_value(row, "lastname", "LastName", "last_name"),
                    customer_state=field_value(row, "State") or None,
                    signup_date=signup_date,
                    cpa=cpa,
                    rate_label=rate or None,
                    notes=f"Historical import ({self.import_id})",
                    import_id=self.import_id,
                )
            )
            result.inserted += 1

    def _exists(self, email: str, operator_id: int, signup_date: date) -> bool:
        query = self.session.query(SignUp.id).filter(
            func.lower(SignUp.customer_email) == email.lower(),
            SignUp.operator_id == operator_id,
            SignUp.signup_date == signup_date,
        )
        return self.session.query(query.exists()).scalar()

    def _solo_event(self) -> Any | None:
        existing = self.resolver.directory.find_event(SOLO_EVENT_TITLE, None)
        if existing is not None:
            return existing
        return self.resolver.create(
            EntityType.EVENT,
            (normalize_name(SOLO_EVENT_TITLE), None),
            SOLO_EVENT_TITLE,
            event_date=None,
            description="Shared event for solo sign-ups",
            status=EventStatus.COMPLETED,
        )


COMMITTERS: dict[DataCategory, type[CategoryCommitter]] = {
    DataCategory.PAYROLL: PayrollCommitter,
    DataCategory.BUDGETS_ACTUALS: BudgetsCommitter,
    DataCategory.SIGN_UPS: SignUpsCommitter,
}

# Payroll first so sign-ups see ambassadors created from pay lines.
COMMIT_ORDER: tuple[DataCategory, ...] = (
    DataCategory.PAYROLL,
    DataCategory.BUDGETS_ACTUALS,
    DataCategory.SIGN_UPS,
)
