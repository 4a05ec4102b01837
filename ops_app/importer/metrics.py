"""Prometheus metrics helpers for the historical importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

_stage_requests = Counter(
    "historical_import_stage_requests_total",
    "Historical import stage invocations by stage and outcome.",
    ["stage", "outcome"],
)
_stage_duration = Histogram(
    "historical_import_stage_duration_seconds",
    "Duration of historical import stages in seconds.",
    ["stage"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)
_parse_errors = Counter(
    "historical_import_parse_errors_total",
    "Malformed rows recorded while parsing uploads.",
)
_ambiguous_matches = Counter(
    "historical_import_ambiguous_matches_total",
    "Ambiguous entity matches raised for human review.",
    ["entity_type"],
)
_executions = Counter(
    "historical_import_executions_total",
    "Import executions by outcome and dry-run flag.",
    ["outcome", "dry_run"],
)
_rows_committed = Counter(
    "historical_import_rows_total",
    "Rows handled during execution by category and action.",
    ["category", "action"],
)
_staged_files = Gauge(
    "historical_import_staged_files",
    "Staged files currently held, by import status.",
    ["status"],
)


def record_stage(stage: str, *, outcome: Literal["success", "failure"], duration_seconds: float) -> None:
    _stage_requests.labels(stage=stage, outcome=outcome).inc()
    _stage_duration.labels(stage=stage).observe(max(duration_seconds, 0.0))


def record_parse_errors(count: int) -> None:
    if count > 0:
        _parse_errors.inc(count)


def record_ambiguous_matches(counts: dict[str, int]) -> None:
    for entity_type, count in counts.items():
        if count > 0:
            _ambiguous_matches.labels(entity_type=entity_type).inc(count)


def record_execution(*, outcome: Literal["completed", "failed"], dry_run: bool) -> None:
    _executions.labels(outcome=outcome, dry_run="true" if dry_run else "false").inc()


def record_category_rows(category: str, counts: dict[str, int]) -> None:
    """Increment per-action row counters for one committed category."""

    for action, count in counts.items():
        if count > 0:
            _rows_committed.labels(category=category, action=action).inc(count)


def record_staged_files(counts: dict[str, int]) -> None:
    for status, count in counts.items():
        _staged_files.labels(status=status).set(count)
