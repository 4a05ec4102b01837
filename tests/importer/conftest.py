from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from ops_app.models import db
from ops_app.models.importer.schema import ImportRecord, ImportRecordStatus


def _signups_sheet(*rows: str) -> str:
    """Minimal sign-up sheet with the given data lines."""
    header = "Ambassador Name,Date,State,Event,Rate,Operator,Email,firstname,lastname,CPA\n"
    return header + "".join(f"{row}\n" for row in rows)


@pytest.fixture
def signups_sheet():
    return _signups_sheet


@pytest.fixture
def ambiguous_signups(ambassador_factory, operator_factory):
    """
    Two canonical "John Smith" ambassadors and a sheet naming him three times,
    so reconciliation raises exactly one ambiguous match.
    """

    first = ambassador_factory("John", "Smith", email="john.smith@example.com")
    second = ambassador_factory("John", "Smith", email="jsmith@example.com")
    operator_factory("FanDuel")
    text = _signups_sheet(
        "John Smith,1/5/2025,KS,,Standard,FanDuel,carol@example.com,Carol,King,$100",
        "John Smith,1/6/2025,KS,,Standard,FanDuel,dave@example.com,Dave,Ray,$100",
        "John Smith,1/7/2025,KS,,Standard,FanDuel,erin@example.com,Erin,Ott,$100",
    )
    return text, first, second


@pytest.fixture
def record_factory(app):
    """Persist ImportRecords directly for history and report queries."""

    def _factory(
        *,
        file_name: str = "signups.csv",
        status: ImportRecordStatus = ImportRecordStatus.COMPLETED,
        dry_run: bool = False,
        categories=("sign_ups",),
        records_imported: int = 10,
        started_offset_minutes: int = 0,
        triggered_by_user_id: int | None = None,
        triggered_by_name: str = "system",
        file_id: str | None = None,
    ) -> ImportRecord:
        started_at = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(minutes=started_offset_minutes)
        file_id = file_id or str(uuid4())
        record = ImportRecord(
            id=str(uuid4()),
            file_id=file_id,
            completed_file_id=file_id if status is ImportRecordStatus.COMPLETED else None,
            file_name=file_name,
            status=status,
            dry_run=dry_run,
            categories_json=list(categories),
            categories_key=ImportRecord.build_categories_key(categories),
            total_rows=records_imported,
            records_imported=records_imported,
            summary_json={"sign_ups_imported": records_imported, "records_skipped": 0, "records_failed": 0},
            validation_json={
                "validation_passed": True,
                "validation_mode": "strict",
                "valid_records": records_imported,
                "invalid_records": 0,
                "errors": [],
                "warnings": [],
            },
            reconciliation_json={"new_ambassadors": 1, "new_events": 0, "new_operators": 0, "linked_records": 4},
            options_json={"dry_run": dry_run},
            error_message="boom" if status is ImportRecordStatus.FAILED else None,
            started_at=started_at,
            completed_at=started_at + timedelta(seconds=30),
            duration_ms=30000,
            triggered_by_user_id=triggered_by_user_id,
            triggered_by_name=triggered_by_name,
        )
        db.session.add(record)
        db.session.commit()
        return record

    return _factory
