"""
Reconciliation of free-text entity names against canonical records.

Each distinct (entity type, normalized name) in a staged file is matched once.
Exact matches are linked, unknown names are marked for creation, and anything
in between becomes an ``AmbiguousMatch`` that a person resolves through the
decision protocol. The links and new-entity keys are stored on the staged file
so execution commits against exactly what was reviewed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence
from uuid import uuid4

from flask import current_app, has_app_context

from ops_app.importer import errors
from ops_app.importer.utils import utc_now
from ops_app.models.importer.schema import AmbiguousMatch, ImportStatus, StagedFile, UserSelection

from .audit import Actor, AuditAction, AuditTrailRecorder
from .directory import CanonicalEntityDirectory
from .matching import MAX_CANDIDATES, REVIEW_THRESHOLD, EntityType, MatchOutcome, match_name, normalize_name
from .staging import StagingStore
from .validator import coerce_categories

REFERENCE_FIELDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.AMBASSADOR: ("ambassador", "Ambassador", "Ambassador Name", "name", "Name", "Names"),
    EntityType.EVENT: ("event", "Event", "event_name", "EventName", "Event name", "Event Name"),
    EntityType.OPERATOR: ("operator", "Operator"),
}


class ReconciliationStatus(str, enum.Enum):
    NEEDS_REVIEW = "needs_review"
    COMPLETE = "complete"


@dataclass
class EntityReference:
    """A distinct free-text name and every row that mentions it."""

    entity_type: EntityType
    field: str
    text: str
    normalized: str
    row_numbers: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class DecisionInput:
    ambiguous_match_id: Any
    user_selection: Any
    selected_candidate_id: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class DecisionResult:
    file_id: str
    updated_count: int
    total_ambiguous: int
    resolved_ambiguous: int

    @property
    def all_resolved(self) -> bool:
        return self.resolved_ambiguous == self.total_ambiguous

    def as_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "updated_count": self.updated_count,
            "total_ambiguous": self.total_ambiguous,
            "resolved_ambiguous": self.resolved_ambiguous,
            "all_resolved": self.all_resolved,
        }


def reference_value(row: Mapping[str, Any], entity_type: EntityType) -> tuple[str, str] | None:
    """First populated text field for an entity type as ``(field, text)``."""
    for field_name in REFERENCE_FIELDS[entity_type]:
        value = row.get(field_name)
        if isinstance(value, str) and value.strip():
            return field_name, value.strip()
    return None


def extract_references(rows: Sequence[Mapping[str, Any]]) -> dict[tuple[EntityType, str], EntityReference]:
    references: dict[tuple[EntityType, str], EntityReference] = {}
    for row_number, row in enumerate(rows, start=1):
        for entity_type in REFERENCE_FIELDS:
            found = reference_value(row, entity_type)
            if found is None:
                continue
            field_name, text = found
            normalized = normalize_name(text)
            if not normalized:
                continue
            key = (entity_type, normalized)
            reference = references.get(key)
            if reference is None:
                reference = EntityReference(entity_type, field_name, text, normalized)
                references[key] = reference
            reference.row_numbers.append(row_number)
    return references


def reconciliation_status(total: int, resolved: int) -> ReconciliationStatus:
    return ReconciliationStatus.COMPLETE if resolved >= total else ReconciliationStatus.NEEDS_REVIEW


def serialize_outcome(staged: StagedFile) -> dict[str, Any]:
    """Reconciliation outcome with live match state."""

    if staged.reconciliation_json is None:
        raise errors.reconciliation_not_found(staged.id)
    stored = dict(staged.reconciliation_json)
    matches = list(staged.ambiguous_matches)
    resolved = sum(1 for match in matches if match.is_resolved)
    new_entities = dict(stored.get("new_entities") or {})
    return {
        "file_id": staged.id,
        "reconciliation_id": stored.get("reconciliation_id"),
        "status": reconciliation_status(len(matches), resolved).value,
        "import_status": staged.import_status.value,
        "data_types": staged.declared_categories,
        "new_entities": new_entities,
        "new_ambassadors": new_entities.get(EntityType.AMBASSADOR.value, 0),
        "new_events": new_entities.get(EntityType.EVENT.value, 0),
        "new_operators": new_entities.get(EntityType.OPERATOR.value, 0),
        "linked_records": stored.get("linked_records", 0),
        "total_ambiguous": len(matches),
        "resolved_ambiguous": resolved,
        "ambiguous_matches": [match.to_dict() for match in matches],
        "reconciled_at": stored.get("reconciled_at"),
    }


class Reconciler:
    """Matches staged entity names and applies human decisions."""

    def __init__(
        self,
        store: StagingStore,
        audit: AuditTrailRecorder | None = None,
        *,
        directory: CanonicalEntityDirectory | None = None,
        review_threshold: float | None = None,
        max_candidates: int | None = None,
    ) -> None:
        self.store = store
        self.session = store.session
        self.audit = audit or store.audit
        self.directory = directory
        config = current_app.config if has_app_context() else {}
        self.review_threshold = float(
            review_threshold
            if review_threshold is not None
            else config.get("IMPORTER_RECONCILE_REVIEW_THRESHOLD", REVIEW_THRESHOLD)
        )
        self.max_candidates = int(
            max_candidates if max_candidates is not None else config.get("IMPORTER_RECONCILE_MAX_CANDIDATES", MAX_CANDIDATES)
        )

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(self, handle: str, categories: Iterable[Any] | None, *, actor: Actor) -> dict[str, Any]:
        resolved_categories = coerce_categories(categories) if categories is not None else None

        with self.store.locked(handle):
            staged = self.store.get(handle, for_update=True)
            _ensure_reconcilable(staged)
            if resolved_categories:
                staged.declared_categories_json = resolved_categories

            self.audit.record(
                staged.id,
                AuditAction.RECONCILIATION_STARTED,
                actor,
                details={"data_types": staged.declared_categories},
            )

            directory = self.directory or CanonicalEntityDirectory(self.session)
            references = extract_references(staged.rows)

            kept: dict[tuple[str, str], AmbiguousMatch] = {}
            for match in list(staged.ambiguous_matches):
                if match.is_resolved:
                    kept[(match.entity_type, match.normalized_value)] = match
                else:
                    staged.ambiguous_matches.remove(match)
                    self.session.delete(match)

            links: dict[str, dict[str, dict[str, str]]] = {entity_type.value: {} for entity_type in EntityType}
            new_keys: dict[str, list[str]] = {entity_type.value: [] for entity_type in EntityType}
            linked_records = 0

            for (entity_type, normalized), reference in references.items():
                result = match_name(
                    reference.text,
                    directory.candidates(entity_type),
                    review_threshold=self.review_threshold,
                    max_candidates=self.max_candidates,
                )
                if result.outcome is MatchOutcome.EXACT:
                    links[entity_type.value][normalized] = {
                        "entity_id": result.entity.entity_id,
                        "entity_name": result.entity.entity_name,
                    }
                    linked_records += len(reference.row_numbers)
                elif result.outcome is MatchOutcome.NEW:
                    new_keys[entity_type.value].append(normalized)
                else:
                    prior = kept.get((entity_type.value, normalized))
                    if prior is not None:
                        prior.row_numbers_json = list(reference.row_numbers)
                        continue
                    staged.ambiguous_matches.append(
                        AmbiguousMatch(
                            entity_type=entity_type.value,
                            import_field=reference.field,
                            import_value=reference.text,
                            normalized_value=normalized,
                            row_numbers_json=list(reference.row_numbers),
                            candidates_json=[candidate.as_dict() for candidate in result.candidates],
                        )
                    )

            self.session.flush()
            matches = list(staged.ambiguous_matches)
            resolved = sum(1 for match in matches if match.is_resolved)
            status = reconciliation_status(len(matches), resolved)

            staged.reconciliation_json = {
                "reconciliation_id": str(uuid4()),
                "new_entities": {key: len(values) for key, values in new_keys.items()},
                "linked_records": linked_records,
                "links": links,
                "new_keys": new_keys,
                "reconciled_at": utc_now().isoformat(),
            }
            staged.import_status = (
                ImportStatus.READY if status is ReconciliationStatus.COMPLETE else ImportStatus.RECONCILING
            )
            self.audit.record(
                staged.id,
                AuditAction.RECONCILIATION_COMPLETED,
                actor,
                details={
                    "status": status.value,
                    "distinct_references": len(references),
                    "linked_records": linked_records,
                    "new_entities": staged.reconciliation_json["new_entities"],
                    "total_ambiguous": len(matches),
                    "resolved_ambiguous": resolved,
                },
            )
            self.store.save(staged)
            outcome = serialize_outcome(staged)

        if has_app_context():
            current_app.logger.info(
                "Historical import reconciled",
                extra={
                    "importer_file_id": handle,
                    "importer_reconciliation_status": outcome["status"],
                    "importer_total_ambiguous": outcome["total_ambiguous"],
                    "importer_linked_records": outcome["linked_records"],
                },
            )
        return outcome

    # ------------------------------------------------------------------
    # Decision protocol
    # ------------------------------------------------------------------

    def apply_decisions(self, handle: str, decisions: Any, *, actor: Actor) -> DecisionResult:
        parsed = _coerce_decisions(decisions)

        with self.store.locked(handle):
            staged = self.store.get(handle, for_update=True)
            if staged.import_status is ImportStatus.COMPLETED:
                raise errors.import_already_executed(staged.id)
            if staged.import_status is ImportStatus.EXECUTING:
                raise errors.import_not_ready(staged.import_status.value, required_status="reconciling")
            if staged.reconciliation_json is None:
                raise errors.reconciliation_not_found(staged.id)

            matches = {match.id: match for match in staged.ambiguous_matches}
            applicable: list[tuple[AmbiguousMatch, UserSelection, str | None, str | None]] = []
            claimed: set[int] = set()
            for decision in parsed:
                match = matches.get(_coerce_match_id(decision.ambiguous_match_id))
                if match is None or match.is_resolved or match.id in claimed:
                    continue
                selection, candidate_id = _validate_decision(match, decision)
                applicable.append((match, selection, candidate_id, decision.notes))
                claimed.add(match.id)

            resolved_at = utc_now()
            for match, selection, candidate_id, notes in applicable:
                match.user_selection = selection
                match.selected_candidate_id = candidate_id
                match.notes = notes
                match.resolved_at = resolved_at
                match.resolved_by_user_id = actor.user_id
                match.resolved_by_name = actor.name
                self.audit.record(
                    staged.id,
                    AuditAction.RECONCILIATION_DECISION,
                    actor,
                    entity_type=match.entity_type,
                    entity_id=candidate_id,
                    details={
                        "ambiguous_match_id": match.id,
                        "import_value": match.import_value,
                        "user_selection": selection.value,
                        "selected_candidate_id": candidate_id,
                        "notes": notes,
                    },
                )

            total = len(matches)
            resolved = sum(1 for match in matches.values() if match.is_resolved)
            if applicable:
                # Touch the parent row so concurrent batches collide on its version.
                staged.reconciliation_json = {
                    **dict(staged.reconciliation_json),
                    "resolved_ambiguous": resolved,
                    "last_decision_at": resolved_at.isoformat(),
                }
            if total and resolved == total and staged.import_status is ImportStatus.RECONCILING:
                staged.import_status = ImportStatus.READY
            self.store.save(staged)

        result = DecisionResult(
            file_id=handle,
            updated_count=len(applicable),
            total_ambiguous=total,
            resolved_ambiguous=resolved,
        )
        if has_app_context():
            current_app.logger.info(
                "Reconciliation decisions applied",
                extra={"importer_file_id": handle, **result.as_dict()},
            )
        return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ensure_reconcilable(staged: StagedFile) -> None:
    status = staged.import_status
    if status is ImportStatus.COMPLETED:
        raise errors.import_already_executed(staged.id)
    if status is ImportStatus.FAILED:
        raise errors.validation_failed(staged.id)
    if status in (ImportStatus.PENDING, ImportStatus.EXECUTING):
        raise errors.import_not_ready(status.value, required_status="validating")


def _coerce_decisions(decisions: Any) -> list[DecisionInput]:
    if not isinstance(decisions, (list, tuple)) or not decisions:
        raise errors.bad_request("decisions must be a non-empty array")
    parsed = []
    for raw in decisions:
        if not isinstance(raw, Mapping):
            raise errors.bad_request("Each decision must be an object")
        candidate_id = raw.get("selected_candidate_id")
        notes = raw.get("notes")
        parsed.append(
            DecisionInput(
                ambiguous_match_id=raw.get("ambiguous_match_id"),
                user_selection=raw.get("user_selection"),
                selected_candidate_id=str(candidate_id) if candidate_id not in (None, "") else None,
                notes=str(notes) if notes not in (None, "") else None,
            )
        )
    return parsed


def _coerce_match_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _validate_decision(match: AmbiguousMatch, decision: DecisionInput) -> tuple[UserSelection, str | None]:
    try:
        selection = UserSelection(str(decision.user_selection).strip().lower())
    except ValueError:
        raise errors.invalid_match_decision(
            match.id,
            f"user_selection must be one of {', '.join(option.value for option in UserSelection)}",
        ) from None

    candidate_ids = [str(candidate.get("entity_id")) for candidate in match.candidates]
    if selection is UserSelection.CREATE_NEW:
        return selection, None
    if selection is UserSelection.USE_CANDIDATE and decision.selected_candidate_id is None:
        raise errors.invalid_match_decision(match.id, "use_candidate requires selected_candidate_id")
    if decision.selected_candidate_id is not None and decision.selected_candidate_id not in candidate_ids:
        raise errors.invalid_match_decision(
            match.id, f"candidate '{decision.selected_candidate_id}' is not offered for this match"
        )
    if decision.selected_candidate_id is None:
        if not candidate_ids:
            raise errors.invalid_match_decision(match.id, "match has no candidates to accept")
        return selection, candidate_ids[0]
    return selection, decision.selected_candidate_id
