"""
Importer blueprint endpoints for health checks.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from ops_app.utils.importer import is_importer_enabled

from .service import HistoricalImportService

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.

    Reports staged file counts by status so operators can spot files stuck in
    review or piling up before expiry.
    """
    importer_state = current_app.extensions.get("importer", {})
    try:
        staged_files = HistoricalImportService().staged_counts()
    except SQLAlchemyError as exc:
        current_app.logger.exception("Importer health check could not reach the database.", exc_info=exc)
        return (
            jsonify({"status": "degraded", "enabled": is_importer_enabled(current_app), "staged_files": {}}),
            HTTPStatus.SERVICE_UNAVAILABLE,
        )
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False) and is_importer_enabled(current_app),
                "staged_files": staged_files,
                "staged_total": sum(staged_files.values()),
            }
        ),
        HTTPStatus.OK,
    )
