import pytest

from config.base import _coerce_bool, _coerce_float, _coerce_int
from config.validation import validate_environment


class TestCoercion:
    """Test environment value coercion helpers"""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("1", True), ("Yes", True), (" on ", True), ("0", False), ("OFF", False), (True, True)],
    )
    def test_coerce_bool(self, raw, expected):
        assert _coerce_bool(raw) is expected

    def test_coerce_bool_falls_back_to_default(self):
        assert _coerce_bool(None, default=True) is True
        assert _coerce_bool("maybe", default=True) is True
        assert _coerce_bool("maybe") is False

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("25", 25), ("", 50), (None, 50), ("abc", 50), ("0", 50), ("1", 1)],
    )
    def test_coerce_int(self, raw, expected):
        assert _coerce_int(raw, 50, minimum=1) == expected

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("0.9", 0.9), ("1.5", 0.8), ("-0.1", 0.8), ("high", 0.8), (None, 0.8)],
    )
    def test_coerce_float_bounds(self, raw, expected):
        assert _coerce_float(raw, 0.8, minimum=0.0, maximum=1.0) == expected


class TestValidateEnvironment:
    """Test startup environment validation"""

    def test_non_production_skips_checks(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)

        assert validate_environment("development") == (True, [])
        assert validate_environment("testing") == (True, [])

    def test_production_requires_secret_and_database(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "your-secret-key")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        for name in ("IMPORTER_MAX_UPLOAD_MB", "IMPORTER_FILE_TTL_HOURS", "IMPORTER_RECONCILE_REVIEW_THRESHOLD"):
            monkeypatch.delenv(name, raising=False)

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert len(errors) == 2
        assert errors[0].startswith("SECRET_KEY is required")
        assert errors[1].startswith("DATABASE_URL is required")

    def test_production_checks_importer_settings(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://ops@localhost/ops")
        monkeypatch.setenv("IMPORTER_MAX_UPLOAD_MB", "-5")
        monkeypatch.setenv("IMPORTER_FILE_TTL_HOURS", "12")
        monkeypatch.setenv("IMPORTER_RECONCILE_REVIEW_THRESHOLD", "1.5")

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert errors == [
            "IMPORTER_MAX_UPLOAD_MB must be a positive number when set (got '-5').",
            "IMPORTER_RECONCILE_REVIEW_THRESHOLD must be between 0 and 1 (got '1.5').",
        ]

    def test_valid_production_environment(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://ops@localhost/ops")
        for name in ("IMPORTER_MAX_UPLOAD_MB", "IMPORTER_FILE_TTL_HOURS", "IMPORTER_RECONCILE_REVIEW_THRESHOLD"):
            monkeypatch.delenv(name, raising=False)

        assert validate_environment("production") == (True, [])
