"""
Historical import feature package.

Provides conditional blueprint and CLI registration for the spreadsheet
import pipeline while remaining inert when the importer is disabled.
"""

from __future__ import annotations

from flask import Flask

from ops_app.utils.importer import is_importer_enabled

from .cli import get_disabled_importer_group, importer_cli
from .errors import ImportApiError, ImportErrorCode
from .pipeline.history_service import AuditFilters, HistoryFilters, ImportHistoryService
from .service import HistoricalImportService
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "AuditFilters",
    "HistoricalImportService",
    "HistoryFilters",
    "ImportApiError",
    "ImportErrorCode",
    "ImportHistoryService",
]


def _ensure_extension_state(app: Flask) -> dict:
    state = app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "file_ttl_hours": None,
            "max_upload_mb": None,
        },
    )
    return state


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the importer blueprint and CLI based on configuration.

    Records importer state inside ``app.extensions['importer']`` for reuse in
    routes, CLI, and other helpers.
    """
    enabled = is_importer_enabled(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "file_ttl_hours": app.config.get("IMPORTER_FILE_TTL_HOURS"),
            "max_upload_mb": app.config.get("IMPORTER_MAX_UPLOAD_MB"),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    app.logger.info(
        "Historical importer enabled",
        extra={
            "importer_file_ttl_hours": state["file_ttl_hours"],
            "importer_max_upload_mb": state["max_upload_mb"],
        },
    )
