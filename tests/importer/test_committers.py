from __future__ import annotations

from datetime import date

import pytest

from ops_app.importer.pipeline.committers import (
    SOLO_EVENT_TITLE,
    BudgetsCommitter,
    CategoryResult,
    EntityResolver,
    PayrollCommitter,
    SignUpsCommitter,
    field_value,
    parse_amount,
    parse_budget_date,
    parse_us_date,
)
from ops_app.importer.pipeline.directory import CanonicalEntityDirectory
from ops_app.importer.pipeline.parser import parse_csv_text
from ops_app.models import (
    Ambassador,
    Event,
    EventStatus,
    EventType,
    Operator,
    PayrollEntry,
    PayrollStatus,
    SignUp,
    StagedFile,
    db,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("$1,200.50", 1200.5),
        ("(45.00)", -45.0),
        ("-$3", -3.0),
        ("#DIV/0!", 0.0),
        ("", 0.0),
        (None, 0.0),
        ("n/a", 0.0),
        (7, 7.0),
        (True, 0.0),
        ("NaN", 0.0),
        ("inf", 0.0),
        ("-Infinity", 0.0),
        ("1e400", 0.0),
        (float("nan"), 0.0),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1/5/2025", date(2025, 1, 5)),
        ("1/5/25", date(2025, 1, 5)),
        ("2025-01-05", date(2025, 1, 5)),
        ("2025-01-05T10:00:00", date(2025, 1, 5)),
        ("13/45/2025", None),
        ("Jan 5", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_us_date(raw, expected):
    assert parse_us_date(raw) == expected


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Fri, 01/03", date(2025, 1, 3)),
        ("Sat, 12/31/2024", date(2024, 12, 31)),
        ("2025-02-01", date(2025, 2, 1)),
        ("NA", None),
        ("TBD", None),
        ("", None),
    ],
)
def test_parse_budget_date(raw, expected):
    assert parse_budget_date(raw, 2025) == expected


def test_field_value_checks_key_variants():
    row = {"event_name": "Bar Night", "Status": " Paid ", "Total": 0}

    assert field_value(row, "Event Name") == ""
    assert field_value(row, "Missing", "event name") == "Bar Night"
    assert field_value(row, "Status") == "Paid"
    assert field_value(row, "Total") == "0"


def test_mark_failed_discards_partial_counts():
    result = CategoryResult(category="payroll", examined=4, inserted=2, skipped=1)
    result.skip("zero_total")

    result.mark_failed("payroll rolled back")

    assert result.as_dict() == {
        "status": "failed",
        "inserted": 0,
        "updated": 0,
        "skipped": 0,
        "failed": 4,
        "errors": ["payroll rolled back"],
        "skip_reasons": {},
    }


def _run(committer_cls, text, *, dry_run=False, **kwargs):
    rows = parse_csv_text(text).rows
    resolver = EntityResolver(StagedFile(), CanonicalEntityDirectory(db.session), dry_run=dry_run)
    committer = committer_cls(db.session, resolver, import_id="import-1", dry_run=dry_run, **kwargs)
    result = committer.new_result(rows)
    committer.write(rows, result)
    db.session.commit()
    return result, resolver


def test_payroll_lines(app, payroll_csv):
    result, resolver = _run(PayrollCommitter, payroll_csv)

    assert result.inserted == 1
    assert result.skipped == 2
    assert result.skip_reasons == {"zero_total": 1, "missing_name_or_total": 1}
    assert result.failed == 1
    assert result.errors == ["Row 3: Invalid date for Chris Park: 13/45/2025"]
    assert resolver.created_counts()["ambassador"] == 1

    entry = db.session.query(PayrollEntry).one()
    assert entry.ambassador.full_name == "Jane Doe"
    assert entry.event_name == "Sports Bar Night"
    assert entry.work_date == date(2025, 1, 3)
    assert entry.total == 150.0
    assert entry.hours == 5.5
    assert entry.scheduled_hours == 5.0
    assert entry.bonus == 20.0
    assert entry.status is PayrollStatus.PAID
    assert entry.pay_date == date(2025, 1, 10)
    assert entry.source == "import"
    assert entry.import_id == "import-1"


def test_payroll_links_existing_ambassador(app, payroll_csv, ambassador_factory):
    jane = ambassador_factory("Jane", "Doe")

    result, resolver = _run(PayrollCommitter, payroll_csv)

    assert result.inserted == 1
    assert resolver.created_counts()["ambassador"] == 0
    assert db.session.query(PayrollEntry).one().ambassador_id == jane.id
    assert db.session.query(Ambassador).count() == 1


def test_budget_and_actual_lines_create_events(app, budgets_csv):
    result, _ = _run(BudgetsCommitter, budgets_csv, default_year=2025)

    assert result.inserted == 2
    assert result.updated == 0
    assert result.skip_reasons == {"not_budget_line": 1}

    bar_night = db.session.query(Event).filter_by(title="Sports Bar Night").one()
    assert bar_night.event_date == date(2025, 1, 3)
    assert bar_night.budget == 1200.0
    assert bar_night.actual_cost == 1350.5
    assert bar_night.signup_goal == 10
    assert bar_night.actual_attendance == 12
    assert bar_night.event_type is EventType.ACTIVATION
    assert bar_night.status is EventStatus.COMPLETED

    tailgate = db.session.query(Event).filter_by(title="Tailgate Party").one()
    assert tailgate.event_date == date(2025, 1, 4)
    assert tailgate.event_type is EventType.WATCH_PARTY
    assert tailgate.status is EventStatus.PLANNED
    assert tailgate.actual_cost is None


def test_budget_lines_update_existing_event_on_same_date(app, budgets_csv, event_factory):
    existing = event_factory("Sports Bar Night", date(2025, 1, 3))

    result, _ = _run(BudgetsCommitter, budgets_csv, default_year=2025)

    assert result.inserted == 1
    assert result.updated == 1
    db.session.refresh(existing)
    assert existing.budget == 1200.0
    assert existing.actual_cost == 1350.5
    assert db.session.query(Event).filter_by(title="Sports Bar Night").count() == 1


def test_budget_default_year(app, budgets_csv):
    _run(BudgetsCommitter, budgets_csv, default_year=2024)

    assert {event.event_date for event in db.session.query(Event)} == {date(2024, 1, 3), date(2024, 1, 4)}


def test_non_finite_budget_cells_read_as_blank(app):
    text = (
        "Budget/Actual,Date,Event name,Event type,Total Cost,Sign up,Revenue\n"
        "Budget,01/03,Sports Bar Night,Bar,$900,NaN,$0\n"
        "Actual,01/03,Sports Bar Night,Bar,inf,-Infinity,$50\n"
    )

    result, _ = _run(BudgetsCommitter, text, default_year=2025)

    assert result.inserted == 1
    assert result.failed == 0
    event = db.session.query(Event).one()
    assert event.budget == 900.0
    assert event.signup_goal is None
    assert event.actual_attendance is None
    assert event.actual_cost is None


def test_sign_ups_dedupe_and_solo_event(app, signups_csv):
    result, resolver = _run(SignUpsCommitter, signups_csv)

    assert result.inserted == 2
    assert result.skipped == 1
    assert result.as_dict()["duplicates"] == 1
    assert result.as_dict()["missing_cpa"] == 1
    assert resolver.created_counts() == {"ambassador": 2, "event": 2, "operator": 2}

    signups = db.session.query(SignUp).order_by(SignUp.id).all()
    assert [signup.customer_email for signup in signups] == ["alice@example.com", "bob@example.com"]
    assert signups[0].event.title == "Sports Bar Night"
    assert signups[0].event.event_date == date(2025, 1, 5)
    assert signups[0].cpa == 150.0
    assert signups[0].operator.name == "FanDuel"
    assert signups[1].event.title == SOLO_EVENT_TITLE
    assert signups[1].event.event_date is None
    assert signups[1].cpa is None
    assert signups[1].rate_label == "Solo"


def test_sign_ups_skip_rows_already_stored(app, signups_csv, ambassador_factory, operator_factory):
    jane = ambassador_factory("Jane", "Doe")
    fanduel = operator_factory("FanDuel")
    db.session.add(
        SignUp(
            ambassador_id=jane.id,
            operator_id=fanduel.id,
            customer_email="Alice@Example.com",
            signup_date=date(2025, 1, 5),
        )
    )
    db.session.commit()

    result, _ = _run(SignUpsCommitter, signups_csv)

    assert result.inserted == 1
    assert result.as_dict()["duplicates"] == 2
    assert db.session.query(SignUp).count() == 2


def test_sign_ups_reuse_existing_solo_event(app, signups_csv, event_factory):
    solo = event_factory(SOLO_EVENT_TITLE)

    _run(SignUpsCommitter, signups_csv)

    mark = db.session.query(SignUp).filter_by(customer_email="bob@example.com").one()
    assert mark.event_id == solo.id
    assert db.session.query(Event).filter_by(title=SOLO_EVENT_TITLE).count() == 1


def test_sign_ups_report_missing_fields(app, signups_sheet):
    text = signups_sheet(
        "Jane Doe,1/5/2025,KS,,Standard,,a@example.com,A,B,$10",
        "Jane Doe,someday,KS,,Standard,FanDuel,b@example.com,A,B,$10",
        "Weekly Total,,,,,,,,,",
    )

    result, _ = _run(SignUpsCommitter, text)

    assert result.inserted == 0
    assert result.failed == 2
    assert result.errors == ["Row 1: Missing operator", "Row 2: Invalid date 'someday'"]
    assert result.skip_reasons == {"totals_row": 1}


def test_dry_run_writes_nothing(app, signups_csv, payroll_csv, budgets_csv):
    signups, signup_resolver = _run(SignUpsCommitter, signups_csv, dry_run=True)
    payroll, _ = _run(PayrollCommitter, payroll_csv, dry_run=True)
    budgets, _ = _run(BudgetsCommitter, budgets_csv, dry_run=True, default_year=2025)

    assert (signups.inserted, payroll.inserted, budgets.inserted) == (2, 1, 2)
    assert signup_resolver.created_counts() == {"ambassador": 2, "event": 2, "operator": 2}
    for model in (SignUp, PayrollEntry, Event, Ambassador, Operator):
        assert db.session.query(model).count() == 0
