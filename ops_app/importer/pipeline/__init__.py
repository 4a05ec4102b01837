"""Historical import pipeline stages."""

from __future__ import annotations

from .audit import Actor, AuditAction, AuditTrailRecorder
from .committers import CategoryResult, EntityResolver, parse_amount, parse_budget_date, parse_us_date
from .directory import CanonicalEntityDirectory
from .executor import ImportExecutor, build_summary
from .history_service import AuditFilters, HistoryFilters, ImportHistoryService
from .matching import EntityType, MatchOutcome, match_name, name_similarity, normalize_name
from .parser import IngestionParser, parse_csv_text, parse_xlsx_bytes, resolve_format
from .reconciler import Reconciler, extract_references, serialize_outcome
from .staging import StagedFileFilters, StagingStore
from .validator import ValidationMode, ValidationOutcome, Validator, validate_rows

__all__ = [
    "Actor",
    "AuditAction",
    "AuditFilters",
    "AuditTrailRecorder",
    "CanonicalEntityDirectory",
    "CategoryResult",
    "EntityResolver",
    "EntityType",
    "HistoryFilters",
    "ImportExecutor",
    "ImportHistoryService",
    "IngestionParser",
    "MatchOutcome",
    "Reconciler",
    "StagedFileFilters",
    "StagingStore",
    "ValidationMode",
    "ValidationOutcome",
    "Validator",
    "build_summary",
    "extract_references",
    "match_name",
    "name_similarity",
    "normalize_name",
    "parse_amount",
    "parse_budget_date",
    "parse_csv_text",
    "parse_us_date",
    "parse_xlsx_bytes",
    "resolve_format",
    "serialize_outcome",
    "validate_rows",
]
