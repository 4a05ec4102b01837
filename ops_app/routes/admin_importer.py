"""
Admin-facing routes for the historical spreadsheet import workflow.

Every endpoint speaks JSON. Mutating endpoints require ``manage_imports``;
read endpoints accept ``view_imports``.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, make_response, request
from flask_login import current_user
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from ops_app.importer import errors
from ops_app.importer.errors import ImportApiError
from ops_app.importer.pipeline.audit import Actor
from ops_app.importer.pipeline.history_service import AuditFilters, HistoryFilters
from ops_app.importer.service import HistoricalImportService, serialize_import_result
from ops_app.importer.utils import read_upload
from ops_app.models import db
from ops_app.utils.importer import is_importer_enabled
from ops_app.utils.permissions import MANAGE_IMPORTS, VIEW_IMPORTS, has_permission

admin_importer_blueprint = Blueprint("admin_importer", __name__, url_prefix="/admin/imports")

_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off", "")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _api_error(exc: ImportApiError):
    return jsonify(exc.to_dict()), exc.status_code


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _ensure_authenticated_api():
    if not current_user.is_authenticated:
        return _api_error(errors.unauthorized())
    return None


def _ensure_manage_imports_permission():
    if not has_permission(current_user, MANAGE_IMPORTS):
        return _api_error(errors.forbidden(MANAGE_IMPORTS))
    return None


def _ensure_imports_view_permission():
    if has_permission(current_user, MANAGE_IMPORTS) or has_permission(current_user, VIEW_IMPORTS):
        return None
    return _api_error(errors.forbidden(VIEW_IMPORTS))


def _guard(permission_check):
    """Run the enabled, authenticated and permission checks in order."""
    for check in (_ensure_importer_enabled_api, _ensure_authenticated_api, permission_check):
        response = check()
        if response:
            return response
    return None


def _actor() -> Actor:
    return Actor.from_user(current_user)


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise errors.bad_request("Request body must be a JSON object.")
    return payload


def _coerce_flag(value, name: str) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise errors.bad_request(f"'{name}' must be a boolean.", {"field": name})


def _required_file_id(payload: dict) -> str:
    file_id = payload.get("file_id")
    if not isinstance(file_id, str) or not file_id.strip():
        raise errors.bad_request("file_id is required.", {"field": "file_id"})
    return file_id.strip()


def _split_csv(value: str | None):
    if value in (None, "", ()):
        return ()
    if isinstance(value, (tuple, list)):
        return tuple(v for v in value if v)
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _query_list(name: str):
    values = request.args.getlist(name)
    if len(values) == 1:
        return _split_csv(values[0])
    return tuple(value for value in values if value)


def _history_filters() -> HistoryFilters:
    raw = request.args
    return HistoryFilters.coerce(
        page=raw.get("page"),
        page_size=raw.get("page_size") or raw.get("per_page"),
        sort=raw.get("sort"),
        statuses=_query_list("status"),
        categories=_query_list("data_type"),
        imported_by=raw.get("imported_by"),
        search=raw.get("search"),
        started_from=raw.get("from_date"),
        started_to=raw.get("to_date"),
        include_dry_runs=raw.get("include_dry_runs"),
        default_page_size=int(current_app.config.get("IMPORTER_HISTORY_PAGE_SIZE_DEFAULT", 50)),
        max_page_size=int(current_app.config.get("IMPORTER_HISTORY_MAX_PAGE_SIZE", 100)),
    )


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@admin_importer_blueprint.errorhandler(ImportApiError)
def _handle_import_error(exc: ImportApiError):
    if exc.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
        current_app.logger.error(
            "Historical import request failed",
            extra={"importer_error_code": exc.code.value, "importer_error_details": exc.details},
        )
    return _api_error(exc)


@admin_importer_blueprint.errorhandler(Exception)
def _handle_unexpected_error(exc: Exception):
    if isinstance(exc, RequestEntityTooLarge):
        limit = int(current_app.config.get("MAX_CONTENT_LENGTH") or 0)
        return _api_error(errors.file_too_large(limit, request.content_length or 0))
    if isinstance(exc, HTTPException):
        return _json_error(exc.description or exc.name, HTTPStatus(exc.code))
    db.session.rollback()
    current_app.logger.exception("Unexpected error in historical import route", exc_info=exc)
    return _api_error(errors.internal_error())


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


@admin_importer_blueprint.post("/parse")
def parse_upload():
    denied = _guard(_ensure_manage_imports_permission)
    if denied:
        return denied

    file_storage = request.files.get("file")
    if file_storage is None or file_storage.filename == "":
        raise errors.bad_request("No file uploaded.", {"field": "file"})

    filename, content = read_upload(file_storage)
    result = HistoricalImportService().parse(
        content,
        filename=filename,
        media_type=file_storage.mimetype,
        actor=_actor(),
    )
    current_app.logger.info(
        "Historical import upload parsed",
        extra={"importer_file_id": result["file_id"], "user_id": current_user.id},
    )
    return jsonify(result), HTTPStatus.CREATED


@admin_importer_blueprint.get("/files/<string:file_id>")
def staged_file_status(file_id: str):
    denied = _guard(_ensure_imports_view_permission)
    if denied:
        return denied
    return jsonify(HistoricalImportService().file_status(file_id)), HTTPStatus.OK


@admin_importer_blueprint.post("/validate")
def validate_file():
    denied = _guard(_ensure_manage_imports_permission)
    if denied:
        return denied

    payload = _json_body()
    file_id = _required_file_id(payload)
    service = HistoricalImportService()
    outcome = service.validate(
        file_id,
        payload.get("data_types"),
        payload.get("validation_mode"),
        actor=_actor(),
    )
    response = outcome.as_dict()
    response["import_status"] = service.file_status(file_id)["import_status"]
    return jsonify(response), HTTPStatus.OK


@admin_importer_blueprint.post("/reconcile")
def reconcile_file():
    denied = _guard(_ensure_manage_imports_permission)
    if denied:
        return denied

    payload = _json_body()
    file_id = _required_file_id(payload)
    outcome = HistoricalImportService().reconcile(file_id, payload.get("data_types"), actor=_actor())
    return jsonify(outcome), HTTPStatus.OK


@admin_importer_blueprint.put("/<string:file_id>/reconciliation")
def update_reconciliation(file_id: str):
    denied = _guard(_ensure_manage_imports_permission)
    if denied:
        return denied

    payload = _json_body()
    result = HistoricalImportService().update_reconciliation(file_id, payload.get("decisions"), actor=_actor())
    current_app.logger.info(
        "Historical import decisions applied",
        extra={
            "importer_file_id": file_id,
            "importer_updated_count": result.updated_count,
            "importer_resolved_ambiguous": result.resolved_ambiguous,
            "importer_total_ambiguous": result.total_ambiguous,
            "user_id": current_user.id,
        },
    )
    return jsonify(result.as_dict()), HTTPStatus.OK


@admin_importer_blueprint.post("/<string:file_id>/execute")
def execute_import(file_id: str):
    denied = _guard(_ensure_manage_imports_permission)
    if denied:
        return denied

    payload = _json_body()
    if _coerce_flag(payload.get("confirm"), "confirm") is not True:
        raise errors.bad_request("Execution requires confirm=true.", {"field": "confirm"})

    record = HistoricalImportService().execute(
        file_id,
        actor=_actor(),
        dry_run=_coerce_flag(payload.get("dry_run"), "dry_run"),
        skip_validation=_coerce_flag(payload.get("skip_validation"), "skip_validation"),
        unresolved_as_new=_coerce_flag(payload.get("unresolved_as_new"), "unresolved_as_new"),
    )
    return jsonify(serialize_import_result(record)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# History, reports and audit
# ---------------------------------------------------------------------------


@admin_importer_blueprint.get("/")
def import_history():
    denied = _guard(_ensure_imports_view_permission)
    if denied:
        return denied

    filters = _history_filters()
    page = HistoricalImportService().history.list_imports(filters)
    response = page.as_dict()
    response["filters"] = {
        "page": filters.page,
        "page_size": filters.page_size,
        "sort": filters.sort,
        "statuses": [status.value for status in filters.statuses],
        "data_types": list(filters.categories),
        "imported_by": filters.imported_by,
        "search": filters.search,
        "from_date": filters.started_from.isoformat() if filters.started_from else None,
        "to_date": filters.started_to.isoformat() if filters.started_to else None,
        "include_dry_runs": filters.include_dry_runs,
    }
    return jsonify(response), HTTPStatus.OK


@admin_importer_blueprint.get("/audit")
def audit_entries():
    denied = _guard(_ensure_imports_view_permission)
    if denied:
        return denied

    raw = request.args
    filters = AuditFilters.coerce(
        page=raw.get("page"),
        page_size=raw.get("page_size"),
        actions=_query_list("action"),
        actor_user_id=raw.get("actor_user_id"),
        subject_id=raw.get("subject_id"),
        created_from=raw.get("from_date"),
        created_to=raw.get("to_date"),
        max_page_size=int(current_app.config.get("IMPORTER_HISTORY_MAX_PAGE_SIZE", 100)),
    )
    page = HistoricalImportService().history.list_audit_entries(filters)
    return jsonify(page.as_dict()), HTTPStatus.OK


@admin_importer_blueprint.get("/<string:import_id>")
def import_detail(import_id: str):
    denied = _guard(_ensure_imports_view_permission)
    if denied:
        return denied
    record = HistoricalImportService().history.get_import(import_id)
    return jsonify(serialize_import_result(record)), HTTPStatus.OK


@admin_importer_blueprint.get("/<string:import_id>/report")
def import_report(import_id: str):
    denied = _guard(_ensure_imports_view_permission)
    if denied:
        return denied

    raw = request.args
    history = HistoricalImportService().history
    report = history.build_report(
        import_id,
        report_format=raw.get("format", "json"),
        include_validation_details=_coerce_flag(raw.get("include_validation_details", "true"), "include_validation_details"),
        include_reconciliation_details=_coerce_flag(
            raw.get("include_reconciliation_details", "true"), "include_reconciliation_details"
        ),
        include_raw_data=_coerce_flag(raw.get("include_raw_data"), "include_raw_data"),
    )
    if report["format"] == "csv":
        filename, content = history.export_report_csv(report)
        response = make_response(content, HTTPStatus.OK)
        response.headers["Content-Type"] = "text/csv; charset=utf-8"
        response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
        return response
    return jsonify(report), HTTPStatus.OK


@admin_importer_blueprint.get("/<string:import_id>/audit-trail")
def import_audit_trail(import_id: str):
    denied = _guard(_ensure_imports_view_permission)
    if denied:
        return denied

    page = HistoricalImportService().history.get_audit_trail(
        import_id,
        page=_positive_int(request.args.get("page"), fallback=1),
        page_size=min(
            _positive_int(request.args.get("page_size"), fallback=50),
            int(current_app.config.get("IMPORTER_HISTORY_MAX_PAGE_SIZE", 100)),
        ),
    )
    return jsonify(page.as_dict(import_id=import_id)), HTTPStatus.OK


def _positive_int(value, *, fallback: int) -> int:
    if value in (None, ""):
        return fallback
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise errors.bad_request(f"Expected a positive integer, got '{value}'.") from None
    if parsed < 1:
        raise errors.bad_request(f"Expected a positive integer, got '{value}'.")
    return parsed


def register_importer_admin_routes(app):
    """
    Register importer admin routes when the importer feature flag is enabled.
    """

    if not is_importer_enabled(app):
        return

    if admin_importer_blueprint.name in app.blueprints:
        return

    app.register_blueprint(admin_importer_blueprint)
