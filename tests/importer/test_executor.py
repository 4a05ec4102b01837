from __future__ import annotations

from datetime import date

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from ops_app.importer.errors import ImportApiError, ImportErrorCode
from ops_app.importer.pipeline import executor as executor_module
from ops_app.importer.pipeline.audit import Actor, AuditAction, AuditTrailRecorder
from ops_app.importer.pipeline.committers import PayrollCommitter, SignUpsCommitter
from ops_app.importer.pipeline.executor import build_summary
from ops_app.importer.service import serialize_import_result
from ops_app.models import (
    Ambassador,
    Event,
    ImportRecord,
    ImportRecordStatus,
    ImportStatus,
    Operator,
    PayrollEntry,
    SignUp,
    StagedFile,
    db,
)

REVIEWER = Actor(user_id=None, name="Reviewer")


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _decide(import_service, handle, outcome, **decision):
    match_id = outcome["ambiguous_matches"][0]["id"]
    import_service.update_reconciliation(handle, [{"ambiguous_match_id": match_id, **decision}], actor=REVIEWER)


def test_sign_ups_execute_end_to_end(import_service, reconciled_file, system_actor, signups_csv):
    handle, _ = reconciled_file(signups_csv, ["sign_ups"], filename="signups.csv")

    record = import_service.execute(handle, actor=system_actor)

    assert record.status is ImportRecordStatus.COMPLETED
    assert record.file_id == handle
    assert record.completed_file_id == handle
    assert record.file_name == "signups.csv"
    assert record.dry_run is False
    assert record.records_imported == 2
    assert record.categories == ["sign_ups"]
    summary = record.summary_json
    assert summary["sign_ups_imported"] == 2
    assert summary["budgets_imported"] == 0
    assert summary["payroll_imported"] == 0
    assert summary["records_skipped"] == 1
    assert summary["records_failed"] == 0
    assert summary["new_ambassadors_created"] == 2
    assert summary["new_events_created"] == 2
    assert summary["new_operators_created"] == 2
    assert summary["total_rows"] == 3
    assert summary["categories"]["sign_ups"]["duplicates"] == 1
    assert summary["categories"]["sign_ups"]["skip_reasons"] == {"duplicate": 1}
    assert record.validation_json["validation_passed"] is True
    assert record.reconciliation_json["new_ambassadors"] == 2

    assert db.session.query(SignUp).count() == 2
    assert db.session.query(SignUp).filter_by(import_id=record.id).count() == 2
    assert db.session.get(StagedFile, handle).import_status is ImportStatus.COMPLETED

    entries = AuditTrailRecorder(db.session).entries_for(handle)
    assert [entry.action for entry in entries][-2:] == [
        AuditAction.IMPORT_STARTED.value,
        AuditAction.IMPORT_COMPLETED.value,
    ]
    assert entries[-1].entity_id == record.id
    assert entries[-1].details_json["sign_ups_imported"] == 2

    payload = serialize_import_result(record)
    assert payload["execution_status"] == "completed"
    assert payload["import_id"] == record.id


def test_budgets_use_configured_default_year(app, import_service, reconciled_file, system_actor, budgets_csv):
    app.config["IMPORTER_BUDGET_DEFAULT_YEAR"] = 2023
    handle, outcome = reconciled_file(budgets_csv, ["budgets_actuals"])
    assert outcome["new_events"] == 2

    record = import_service.execute(handle, actor=system_actor)

    assert record.summary_json["budgets_imported"] == 2
    assert record.summary_json["new_events_created"] == 2
    assert record.summary_json["categories"]["budgets_actuals"]["skip_reasons"] == {"not_budget_line": 1}
    assert {event.event_date for event in db.session.query(Event)} == {date(2023, 1, 3), date(2023, 1, 4)}


def test_payroll_execute_reports_row_failures(import_service, reconciled_file, system_actor, payroll_csv):
    handle, _ = reconciled_file(payroll_csv, ["payroll"])

    record = import_service.execute(handle, actor=system_actor)

    categories = record.summary_json["categories"]
    assert record.status is ImportRecordStatus.COMPLETED
    assert record.summary_json["payroll_imported"] == 1
    assert record.summary_json["records_failed"] == 1
    assert categories["payroll"]["errors"] == ["Row 3: Invalid date for Chris Park: 13/45/2025"]
    assert db.session.query(PayrollEntry).one().import_id == record.id


def test_execute_requires_ready_status(import_service, stage_csv, system_actor, signups_csv):
    handle = stage_csv(signups_csv)

    with pytest.raises(ImportApiError) as excinfo:
        import_service.execute(handle, actor=system_actor)

    assert excinfo.value.code is ImportErrorCode.IMPORT_NOT_READY
    assert excinfo.value.details["current_status"] == "pending"


def test_pending_decisions_block_execution(import_service, reconciled_file, system_actor, ambiguous_signups):
    text, _, _ = ambiguous_signups
    handle, _ = reconciled_file(text, ["sign_ups"])

    with pytest.raises(ImportApiError) as excinfo:
        import_service.execute(handle, actor=system_actor)

    assert excinfo.value.code is ImportErrorCode.RECONCILIATION_NOT_COMPLETE
    assert excinfo.value.details == {"total_ambiguous": 1, "resolved_ambiguous": 0, "pending": 1}
    assert db.session.query(ImportRecord).count() == 0
    assert db.session.get(StagedFile, handle).import_status is ImportStatus.RECONCILING


def test_skip_validation_executes_unvalidated_file(import_service, stage_csv, system_actor, payroll_csv):
    handle = stage_csv(payroll_csv)

    record = import_service.execute(handle, actor=system_actor, skip_validation=True)

    assert record.status is ImportRecordStatus.COMPLETED
    assert record.options_json["skip_validation"] is True
    assert record.validation_json is None
    assert record.reconciliation_json is None
    assert record.summary_json["payroll_imported"] == 1


def test_second_execution_is_rejected(import_service, reconciled_file, system_actor, signups_csv):
    handle, _ = reconciled_file(signups_csv, ["sign_ups"])
    first = import_service.execute(handle, actor=system_actor)

    with pytest.raises(ImportApiError) as excinfo:
        import_service.execute(handle, actor=system_actor)

    assert excinfo.value.code is ImportErrorCode.IMPORT_ALREADY_EXECUTED
    assert excinfo.value.details == {"file_id": handle, "import_id": first.id}
    assert db.session.query(SignUp).count() == 2
    assert db.session.query(ImportRecord).count() == 1


def test_dry_run_writes_only_the_record(import_service, reconciled_file, system_actor, signups_csv):
    handle, _ = reconciled_file(signups_csv, ["sign_ups"])

    record = import_service.execute(handle, actor=system_actor, dry_run=True)

    assert record.dry_run is True
    assert record.summary_json["sign_ups_imported"] == 2
    assert record.summary_json["new_ambassadors_created"] == 2
    for model in (SignUp, Ambassador, Operator, Event):
        assert db.session.query(model).count() == 0
    assert db.session.get(StagedFile, handle).import_status is ImportStatus.COMPLETED

    with pytest.raises(ImportApiError) as excinfo:
        import_service.execute(handle, actor=system_actor)
    assert excinfo.value.code is ImportErrorCode.IMPORT_ALREADY_EXECUTED


def test_unresolved_rows_are_skipped(import_service, reconciled_file, system_actor, ambiguous_signups):
    text, _, _ = ambiguous_signups
    handle, _ = reconciled_file(text, ["sign_ups"])

    record = import_service.execute(handle, actor=system_actor, skip_validation=True)

    assert record.summary_json["sign_ups_imported"] == 0
    assert record.summary_json["categories"]["sign_ups"]["skip_reasons"] == {"unresolved_ambiguous_reference": 3}
    assert db.session.query(Ambassador).count() == 2
    assert db.session.query(SignUp).count() == 0


def test_unresolved_rows_can_become_new_entities(import_service, reconciled_file, system_actor, ambiguous_signups):
    text, first, second = ambiguous_signups
    handle, _ = reconciled_file(text, ["sign_ups"])

    record = import_service.execute(handle, actor=system_actor, skip_validation=True, unresolved_as_new=True)

    assert record.summary_json["sign_ups_imported"] == 3
    assert record.summary_json["new_ambassadors_created"] == 1
    ambassador_ids = {signup.ambassador_id for signup in db.session.query(SignUp)}
    assert len(ambassador_ids) == 1
    assert ambassador_ids.isdisjoint({first.id, second.id})


def test_use_candidate_links_rows(import_service, reconciled_file, system_actor, ambiguous_signups):
    text, _, second = ambiguous_signups
    handle, outcome = reconciled_file(text, ["sign_ups"])
    _decide(import_service, handle, outcome, user_selection="use_candidate", selected_candidate_id=second.id)

    record = import_service.execute(handle, actor=system_actor)

    assert record.summary_json["sign_ups_imported"] == 3
    assert record.summary_json["new_ambassadors_created"] == 0
    assert {signup.ambassador_id for signup in db.session.query(SignUp)} == {second.id}


def test_create_new_decision_creates_one_entity(import_service, reconciled_file, system_actor, ambiguous_signups):
    text, first, second = ambiguous_signups
    handle, outcome = reconciled_file(text, ["sign_ups"])
    _decide(import_service, handle, outcome, user_selection="create_new")

    record = import_service.execute(handle, actor=system_actor)

    assert record.summary_json["new_ambassadors_created"] == 1
    assert db.session.query(Ambassador).count() == 3
    ambassador_ids = {signup.ambassador_id for signup in db.session.query(SignUp)}
    assert len(ambassador_ids) == 1
    assert ambassador_ids.isdisjoint({first.id, second.id})


def test_failed_category_is_rolled_back_alone(
    monkeypatch, import_service, reconciled_file, system_actor, signups_csv
):
    def _explode(self, rows, result):
        raise OperationalError("INSERT INTO payroll_entries", {}, Exception("disk I/O error"))

    monkeypatch.setattr(PayrollCommitter, "write", _explode)
    handle, _ = reconciled_file(signups_csv, ["sign_ups", "payroll"], mode="permissive")

    record = import_service.execute(handle, actor=system_actor)

    categories = record.summary_json["categories"]
    assert record.status is ImportRecordStatus.COMPLETED
    assert categories["payroll"]["status"] == "failed"
    assert categories["payroll"]["failed"] == 3
    assert categories["payroll"]["errors"][0].startswith("payroll rolled back: OperationalError")
    assert categories["sign_ups"]["status"] == "completed"
    assert record.summary_json["sign_ups_imported"] == 2
    assert record.summary_json["records_failed"] == 3
    assert db.session.query(SignUp).count() == 2
    assert db.session.query(PayrollEntry).count() == 0


def test_non_database_error_fails_only_its_category(
    monkeypatch, import_service, reconciled_file, system_actor, signups_csv
):
    def _explode(self, rows, result):
        raise ValueError("cannot convert float NaN to integer")

    monkeypatch.setattr(SignUpsCommitter, "write", _explode)
    handle, _ = reconciled_file(signups_csv, ["sign_ups", "payroll"], mode="permissive")

    record = import_service.execute(handle, actor=system_actor)

    categories = record.summary_json["categories"]
    assert record.status is ImportRecordStatus.COMPLETED
    assert record.completed_file_id == handle
    assert categories["sign_ups"]["status"] == "failed"
    assert categories["sign_ups"]["errors"] == ["sign_ups rolled back: ValueError: cannot convert float NaN to integer"]
    assert categories["payroll"]["status"] == "completed"
    assert db.session.query(SignUp).count() == 0
    assert db.session.get(StagedFile, handle).import_status is ImportStatus.COMPLETED


def test_non_finite_sign_up_counts_do_not_abort_execution(import_service, reconciled_file, system_actor):
    text = (
        "Budget/Actual,Date,Event name,Event type,Total Cost,Sign up,Revenue\n"
        "Budget,01/03/2025,Sports Bar Night,Bar,$900,NaN,$0\n"
        "Actual,01/03/2025,Sports Bar Night,Bar,$950,inf,$50\n"
    )
    handle, _ = reconciled_file(text, ["budgets_actuals"], mode="permissive")

    record = import_service.execute(handle, actor=system_actor)

    assert record.status is ImportRecordStatus.COMPLETED
    assert record.summary_json["budgets_imported"] == 1
    assert record.summary_json["categories"]["budgets_actuals"]["status"] == "completed"
    event = db.session.query(Event).filter_by(title="Sports Bar Night").one()
    assert event.actual_cost == 950.0
    assert event.signup_goal is None
    assert event.actual_attendance is None


def test_unexpected_error_records_failed_import(monkeypatch, import_service, reconciled_file, system_actor, signups_csv):
    calls = []

    def _summary_once_broken(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("kaboom")
        return build_summary(*args, **kwargs)

    monkeypatch.setattr(executor_module, "build_summary", _summary_once_broken)
    handle, _ = reconciled_file(signups_csv, ["sign_ups"])
    failures_before = _sample("historical_import_executions_total", outcome="failed", dry_run="false")
    stage_failures_before = _sample("historical_import_stage_requests_total", stage="execute", outcome="failure")

    with pytest.raises(ImportApiError) as excinfo:
        import_service.execute(handle, actor=system_actor)

    assert excinfo.value.code is ImportErrorCode.IMPORT_EXECUTION_FAILED
    assert excinfo.value.details["committed_categories"] == ["sign_ups"]
    assert excinfo.value.message == "Import execution failed after committing: sign_ups."
    import_id = excinfo.value.details["import_id"]
    record = db.session.get(ImportRecord, import_id)
    assert record.status is ImportRecordStatus.FAILED
    assert record.error_message == "RuntimeError: kaboom"
    assert record.completed_file_id is None
    assert db.session.get(StagedFile, handle).import_status is ImportStatus.FAILED
    assert AuditTrailRecorder(db.session).entries_for(handle)[-1].action == AuditAction.IMPORT_FAILED.value
    assert _sample("historical_import_executions_total", outcome="failed", dry_run="false") == failures_before + 1
    assert (
        _sample("historical_import_stage_requests_total", stage="execute", outcome="failure")
        == stage_failures_before + 1
    )


def test_execution_metrics(import_service, reconciled_file, system_actor, signups_csv):
    handle, _ = reconciled_file(signups_csv, ["sign_ups"])
    before = _sample("historical_import_executions_total", outcome="completed", dry_run="true")
    rows_before = _sample("historical_import_rows_total", category="sign_ups", action="inserted")

    import_service.execute(handle, actor=system_actor, dry_run=True)

    assert _sample("historical_import_executions_total", outcome="completed", dry_run="true") == before + 1
    assert _sample("historical_import_rows_total", category="sign_ups", action="inserted") == rows_before + 2
