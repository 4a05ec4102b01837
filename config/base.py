# config/base.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=None, maximum=None):
    if value in (None, ""):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    if maximum is not None and number > maximum:
        return default
    return number


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    # For development, use a default but it's not secure
    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "This is insecure and should not be used in production. "
            "Set SECRET_KEY environment variable or generate with: "
            'python -c "import secrets; print(secrets.token_hex(32))"',
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    # Set a default for testing (will be overridden by TestingConfig)
    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Historical importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 50, minimum=1)
    IMPORTER_FILE_TTL_HOURS = _coerce_float(os.environ.get("IMPORTER_FILE_TTL_HOURS"), 24.0, minimum=0.01)
    IMPORTER_PREVIEW_ROWS = _coerce_int(os.environ.get("IMPORTER_PREVIEW_ROWS"), 20, minimum=0)
    IMPORTER_HEADER_SCAN_LINES = _coerce_int(os.environ.get("IMPORTER_HEADER_SCAN_LINES"), 30, minimum=1)
    IMPORTER_HISTORY_PAGE_SIZE_DEFAULT = _coerce_int(
        os.environ.get("IMPORTER_HISTORY_PAGE_SIZE_DEFAULT"), 50, minimum=1
    )
    IMPORTER_HISTORY_MAX_PAGE_SIZE = _coerce_int(os.environ.get("IMPORTER_HISTORY_MAX_PAGE_SIZE"), 100, minimum=1)
    IMPORTER_RECONCILE_REVIEW_THRESHOLD = _coerce_float(
        os.environ.get("IMPORTER_RECONCILE_REVIEW_THRESHOLD"), 0.80, minimum=0.0, maximum=1.0
    )
    IMPORTER_RECONCILE_MAX_CANDIDATES = _coerce_int(
        os.environ.get("IMPORTER_RECONCILE_MAX_CANDIDATES"), 5, minimum=1
    )
    # Year applied to "Fri, 01/02"-style budget dates; unset means the current year
    IMPORTER_BUDGET_DEFAULT_YEAR = _coerce_int(os.environ.get("IMPORTER_BUDGET_DEFAULT_YEAR"), None, minimum=1900)

    # Leave headroom above the upload limit so oversized files reach the
    # importer and get a FILE_TOO_LARGE error instead of a bare 413
    MAX_CONTENT_LENGTH = (IMPORTER_MAX_UPLOAD_MB + 1) * 1024 * 1024

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set to True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    # Use instance folder for database to avoid conflicts
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    # Ensure instance folder exists
    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # Use absolute path for SQLite - Windows needs forward slashes in URI
    db_path = os.path.join(instance_path, "ops_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    # Override SECRET_KEY for testing - tests will set their own
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_ENABLED = True


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True  # Secure cookies in production
