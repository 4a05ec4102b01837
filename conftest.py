# conftest.py

import os

import pytest
from flask import g
from werkzeug.security import generate_password_hash

# Set testing environment BEFORE importing app so app.py uses TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from ops_app.importer import init_importer  # noqa: E402
from ops_app.importer.pipeline.audit import Actor  # noqa: E402
from ops_app.importer.service import HistoricalImportService  # noqa: E402
from ops_app.models import Ambassador, Event, Operator, User, db  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "IMPORTER_ENABLED": True,
            "IMPORTER_MAX_UPLOAD_MB": 50,
            "IMPORTER_FILE_TTL_HOURS": 24,
            "IMPORTER_PREVIEW_ROWS": 20,
            "IMPORTER_BUDGET_DEFAULT_YEAR": 2025,
            "IMPORTER_RECONCILE_REVIEW_THRESHOLD": 0.80,
            "IMPORTER_RECONCILE_MAX_CANDIDATES": 5,
        }
    )
    # Tests may flip the flag; restore the enabled CLI group for each test
    init_importer(flask_app)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def login(client):
    """Attach a user to the test client's session"""

    def _login(user):
        with client.session_transaction() as session:
            session["_user_id"] = str(user.id)
            session["_fresh"] = True
        # Requests share the test's app context, where Flask-Login caches the user
        g.pop("_login_user", None)

    return _login


@pytest.fixture
def make_user(app):
    """Persist a dashboard user with the given role"""
    counter = {"value": 0}

    def _factory(role="admin", *, is_super_admin=False, is_active=True, username=None):
        counter["value"] += 1
        username = username or f"{role}{counter['value']}"
        user = User(
            username=username,
            email=f"{username}@example.com",
            password_hash=generate_password_hash("testpass123"),
            first_name=role.capitalize(),
            last_name="User",
            role=role,
            is_active=is_active,
            is_super_admin=is_super_admin,
        )
        db.session.add(user)
        db.session.commit()
        return user

    return _factory


@pytest.fixture
def admin_user(make_user):
    return make_user("admin")


@pytest.fixture
def viewer_user(make_user):
    return make_user("viewer")


@pytest.fixture
def ambassador_factory(app):
    def _factory(first_name, last_name="", **kwargs):
        ambassador = Ambassador(first_name=first_name, last_name=last_name, **kwargs)
        db.session.add(ambassador)
        db.session.commit()
        return ambassador

    return _factory


@pytest.fixture
def operator_factory(app):
    def _factory(name, **kwargs):
        operator = Operator(name=name, **kwargs)
        db.session.add(operator)
        db.session.commit()
        return operator

    return _factory


@pytest.fixture
def event_factory(app):
    def _factory(title, event_date=None, **kwargs):
        event = Event(title=title, event_date=event_date, **kwargs)
        db.session.add(event)
        db.session.commit()
        return event

    return _factory


SIGNUPS_CSV = (
    "Sign-up export,,,,,,,,,\n"
    "Generated 2025-02-01,,,,,,,,,\n"
    "Ambassador Name,Date,State,Event,Rate,Operator,Email,firstname,lastname,CPA\n"
    "Jane Doe,1/5/2025,KS,Sports Bar Night,Standard,FanDuel,alice@example.com,Alice,Smith,$150\n"
    "Jane Doe,1/5/2025,KS,Sports Bar Night,Standard,FanDuel,ALICE@example.com,Alice,Smith,$150\n"
    "Mark Lee,1/6/2025,MO,,Solo,DraftKings,bob@example.com,Bob,Jones,\n"
)

BUDGETS_CSV = (
    "2025 Event Budget,,,,,,\n"
    "Budget/Actual,Date,Event name,Event type,Total Cost,Sign up,Revenue\n"
    'Budget,"Fri, 01/03",Sports Bar Night,Bar,"$1,200.00",10,$500\n'
    'Actual,"Fri, 01/03",Sports Bar Night,Bar,"$1,350.50",12,$640\n'
    'Budget,"Sat, 01/04",Tailgate Party,Tailgate,$800,8,$0\n'
    "Notes,,,,,,\n"
)

PAYROLL_CSV = (
    "Payroll period January 2025,,,,,,,,,,,,\n"
    "Names,Event Name,Date,Scheduled hours,Hours,Solos,Bonus,Reimbursements,Other,Total,Status,Pay Date,Notes\n"
    "Jane Doe,Sports Bar Night,1/3/2025,5,5.5,0,$20,$0,0,$150.00,Paid,1/10/2025,\n"
    "Mark Lee,,1/4/2025,0,0,0,0,0,0,$0,Pending,,\n"
    "Chris Park,Tailgate Party,13/45/2025,4,4,0,0,0,0,$80,Pending,,\n"
    ",Sports Bar Night,1/3/2025,4,4,0,0,0,0,$60,Pending,,\n"
)


@pytest.fixture
def signups_csv():
    return SIGNUPS_CSV


@pytest.fixture
def budgets_csv():
    return BUDGETS_CSV


@pytest.fixture
def payroll_csv():
    return PAYROLL_CSV


@pytest.fixture
def import_service(app):
    return HistoricalImportService()


@pytest.fixture
def system_actor():
    return Actor.system()


@pytest.fixture
def stage_csv(import_service, system_actor):
    """Parse CSV text into a staged file and return its handle"""

    def _stage(text, *, filename="upload.csv", media_type="text/csv"):
        result = import_service.parse(
            text.encode("utf-8"), filename=filename, media_type=media_type, actor=system_actor
        )
        return result["file_id"]

    return _stage


@pytest.fixture
def reconciled_file(import_service, stage_csv, system_actor):
    """Stage, validate and reconcile CSV text; returns ``(handle, outcome)``"""

    def _prepare(text, data_types, *, mode="strict", filename="upload.csv"):
        handle = stage_csv(text, filename=filename)
        import_service.validate(handle, data_types, mode, actor=system_actor)
        outcome = import_service.reconcile(handle, data_types, actor=system_actor)
        return handle, outcome

    return _prepare
