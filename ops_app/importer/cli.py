"""
CLI commands for the historical import pipeline.

``flask historical-import run`` drives a spreadsheet through parse, validate,
reconcile and execute in one process; the other commands inspect history and
evict expired staged files.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from flask import current_app
from flask.cli import with_appcontext

from ops_app.models import User, db
from ops_app.models.importer.schema import DataCategory, ImportRecordStatus
from ops_app.utils.importer import is_importer_enabled

from .errors import ImportApiError
from .pipeline.audit import Actor
from .pipeline.history_service import HistoryFilters
from .pipeline.validator import ValidationMode
from .service import HistoricalImportService, serialize_import_result

GROUP_NAME = "historical-import"


@click.group(name=GROUP_NAME)
def importer_cli():
    """Historical spreadsheet import commands."""


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name=GROUP_NAME, invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Historical import commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _ensure_enabled() -> None:
    if not is_importer_enabled(current_app):
        raise click.ClickException("Importer is disabled; enable it via IMPORTER_ENABLED before running.")


def _resolve_actor(username: Optional[str]) -> Actor:
    if not username:
        return Actor.system()
    user = db.session.query(User).filter_by(username=username).one_or_none()
    if user is None:
        raise click.ClickException(f"User '{username}' not found.")
    return Actor(user_id=user.id, name=user.display_name)


def _fail(exc: ImportApiError) -> click.ClickException:
    message = f"{exc.code.value}: {exc.message}"
    if exc.details:
        message = f"{message} {json.dumps(exc.details, default=str)}"
    return click.ClickException(message)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@importer_cli.command("run")
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--category",
    "categories",
    multiple=True,
    type=click.Choice([category.value for category in DataCategory]),
    help="Data category to import; repeatable. Defaults to the categories detected in the file.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ValidationMode]),
    default=ValidationMode.STRICT.value,
    show_default=True,
    help="Validation mode.",
)
@click.option("--dry-run", is_flag=True, help="Run the commit logic without writing canonical records.")
@click.option("--skip-validation", is_flag=True, help="Execute even when validation or review is incomplete.")
@click.option("--unresolved-as-new", is_flag=True, help="Commit unresolved ambiguous rows as new entities.")
@click.option("--user", "username", help="Username recorded as the actor (defaults to 'system').")
@with_appcontext
def importer_run(
    path: Path,
    categories: tuple[str, ...],
    mode: str,
    dry_run: bool,
    skip_validation: bool,
    unresolved_as_new: bool,
    username: Optional[str],
):
    """Parse, validate, reconcile and execute a historical spreadsheet."""
    _ensure_enabled()
    actor = _resolve_actor(username)
    service = HistoricalImportService()

    try:
        parsed = service.parse(path.read_bytes(), filename=path.name, media_type=None, actor=actor)
        file_id = parsed["file_id"]
        data_types = list(categories) or list(parsed["detected_data_types"])
        if not data_types:
            raise click.ClickException(
                f"No data categories detected in {path.name}; pass --category explicitly."
            )
        click.echo(
            f"Staged {parsed['total_rows']} rows from {path.name} "
            f"(file_id={file_id}, parse errors={len(parsed['parsing_errors'])})"
        )

        validation = service.validate(file_id, data_types, mode, actor=actor)
        click.echo(
            f"Validation {'passed' if validation.validation_passed else 'failed'}: "
            f"{validation.valid_records}/{validation.total_records} valid rows, "
            f"{len(validation.errors)} errors, {len(validation.warnings)} warnings"
        )
        if validation.validation_passed:
            reconciliation = service.reconcile(file_id, data_types, actor=actor)
            pending = [match for match in reconciliation["ambiguous_matches"] if not match["resolved"]]
            if pending and not skip_validation:
                _echo_json({"file_id": file_id, "unresolved_matches": pending})
                raise click.ClickException(
                    f"{len(pending)} ambiguous matches need review before file {file_id} can be imported."
                )
        elif not skip_validation:
            _echo_json(validation.as_dict())
            raise click.ClickException(f"Validation failed for file {file_id}.")

        record = service.execute(
            file_id,
            actor=actor,
            dry_run=dry_run,
            skip_validation=skip_validation,
            unresolved_as_new=unresolved_as_new,
        )
    except ImportApiError as exc:
        raise _fail(exc) from exc

    _echo_json(serialize_import_result(record))


@importer_cli.command("history")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([status.value for status in ImportRecordStatus]),
    help="Only show imports with this status; repeatable.",
)
@click.option("--limit", type=click.IntRange(min=1, max=100), default=20, show_default=True)
@with_appcontext
def importer_history(statuses: tuple[str, ...], limit: int):
    """Print the most recent imports."""
    _ensure_enabled()
    try:
        filters = HistoryFilters.coerce(page=1, page_size=limit, statuses=statuses)
        page = HistoricalImportService().history.list_imports(filters)
    except ImportApiError as exc:
        raise _fail(exc) from exc

    if not page.items:
        click.echo("No imports recorded.")
        return
    for item in page.items:
        flag = " [dry run]" if item["dry_run"] else ""
        click.echo(
            f"{item['import_id']}  {item['status']:<9}  {item['started_at'] or '-'}  "
            f"{item['file_name'] or '-'}  records={item['records_imported']}{flag}"
        )
    click.echo(f"Showing {len(page.items)} of {page.total} imports.")


@importer_cli.command("purge-expired")
@with_appcontext
def importer_purge_expired():
    """Evict staged files whose time-to-live has passed."""
    _ensure_enabled()
    purged = HistoricalImportService().purge_expired()
    click.echo(f"Purged {purged} expired staged file(s).")
