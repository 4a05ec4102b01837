"""
Spreadsheet ingestion for historical imports.

Historical exports rarely start with their header: finance and payroll
sheets carry title and summary lines first. The parser scans the first lines
for the row that looks most like a header, keeps everything after it, and
records ragged rows as parse errors instead of failing the upload.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import Any, Iterable, Sequence
from zipfile import BadZipFile

from flask import current_app, has_app_context
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from ops_app.importer import errors
from ops_app.importer.utils import file_extension
from ops_app.models.importer.schema import DataCategory, ImportStatus, StagedFile

from .audit import Actor, AuditAction, AuditTrailRecorder
from .staging import StagingStore

CSV_MEDIA_TYPES = frozenset({"text/csv", "application/csv", "text/plain"})
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
LEGACY_EXCEL_MEDIA_TYPE = "application/vnd.ms-excel"
GENERIC_MEDIA_TYPES = frozenset({"", "application/octet-stream"})
SUPPORTED_MEDIA_TYPES = sorted(CSV_MEDIA_TYPES | {XLSX_MEDIA_TYPE, LEGACY_EXCEL_MEDIA_TYPE})

DEFAULT_MAX_UPLOAD_MB = 50
DEFAULT_HEADER_SCAN_LINES = 30
MALFORMED_ROW_TOLERANCE = 5
HEADER_MIN_MATCHES = 2

HEADER_FRAGMENTS: tuple[str, ...] = (
    "budget/actual",
    "event name",
    "event_name",
    "names",
    "ambassador",
    "date",
    "email",
    "phone",
    "total cost",
    "revenue",
    "sign up",
)

CATEGORY_KEYWORDS: dict[DataCategory, tuple[str, ...]] = {
    DataCategory.SIGN_UPS: ("email", "phone", "ambassador", "signup_date", "sign_up", "referral"),
    DataCategory.BUDGETS_ACTUALS: ("budget", "actual", "cost", "expense", "revenue", "spent", "planned"),
    DataCategory.PAYROLL: ("salary", "wage", "pay", "hours", "rate", "commission", "payout"),
}

_INTEGER_PATTERN = re.compile(r"^-?\d+$")
_DECIMAL_PATTERN = re.compile(r"^-?\d+\.\d+$")


@dataclass(slots=True)
class ParseError:
    row_number: int
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"row_number": self.row_number, "message": self.message}


@dataclass(slots=True)
class ParsedSheet:
    """Rows and metadata extracted from one spreadsheet."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)
    errors: list[ParseError] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    header_line: int | None = None


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def resolve_format(media_type: str | None, filename: str | None) -> str:
    """
    Map a declared media type (and filename, when the type is generic) to a reader.

    Returns ``"csv"`` or ``"xlsx"``; raises ``INVALID_FILE_FORMAT`` for anything
    else and ``FILE_PARSING_FAILED`` for legacy binary workbooks.
    """

    normalized = (media_type or "").split(";", 1)[0].strip().lower()
    extension = file_extension(filename)

    if normalized in CSV_MEDIA_TYPES:
        return "csv"
    if normalized == XLSX_MEDIA_TYPE:
        return "xlsx"
    if normalized == LEGACY_EXCEL_MEDIA_TYPE:
        # Browsers on Windows label plain CSV files with the legacy Excel type.
        if extension == "csv":
            return "csv"
        raise errors.file_parsing_failed("Legacy .xls workbooks are not supported; save the sheet as .xlsx or .csv")
    if normalized in GENERIC_MEDIA_TYPES:
        if extension in ("csv", "txt"):
            return "csv"
        if extension == "xlsx":
            return "xlsx"
    raise errors.invalid_file_format(media_type, SUPPORTED_MEDIA_TYPES)


def decode_content(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def split_line(line: str) -> list[str]:
    """
    Split one CSV line into stripped cells.

    A double quote toggles quoted mode wherever it appears in a field, so
    ``Smith, "Doe, Jane"`` keeps the name whole even after a comma-space
    separator. Inside quotes ``""`` is a literal quote and commas do not split.
    """

    cells: list[str] = []
    current: list[str] = []
    in_quotes = False
    position = 0
    while position < len(line):
        char = line[position]
        if char == '"':
            if in_quotes and line[position + 1 : position + 2] == '"':
                current.append('"')
                position += 1
            else:
                in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            cells.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        position += 1
    cells.append("".join(current).strip())
    return cells


def coerce_cell(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    if _INTEGER_PATTERN.match(text):
        return int(text)
    if _DECIMAL_PATTERN.match(text):
        return float(text)
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return text


def header_score(text: str) -> int:
    lowered = text.lower()
    return sum(1 for fragment in HEADER_FRAGMENTS if fragment in lowered)


def looks_like_header(text: str) -> bool:
    stripped = text.strip()
    if stripped.lower().startswith("budget/actual"):
        return True
    return header_score(stripped) >= HEADER_MIN_MATCHES


def find_header_index(lines: Sequence[str], scan_limit: int = DEFAULT_HEADER_SCAN_LINES) -> int:
    """Index of the first header-like line within the scan window, else 0."""
    for index, line in enumerate(lines[:scan_limit]):
        if looks_like_header(line):
            return index
    return 0


def normalize_headers(raw_headers: Iterable[Any]) -> list[str]:
    """
    Name blank header cells and suffix repeated names so every cell keeps a key.
    """

    columns: list[str] = []
    seen: dict[str, int] = {}
    for position, raw in enumerate(raw_headers, start=1):
        name = str(raw).strip() if raw is not None else ""
        if not name:
            name = f"column_{position}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        columns.append(name)
    return columns


def detect_categories(columns: Iterable[str]) -> list[str]:
    lowered = [column.lower() for column in columns]
    detected: list[str] = []
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in column for column in lowered for keyword in keywords):
            detected.append(category.value)
    return detected


def _meaningful_width(cells: Sequence[Any]) -> int:
    width = len(cells)
    while width and cells[width - 1] in ("", None):
        width -= 1
    return width


def _build_sheet(
    table: Sequence[Sequence[Any]],
    header_texts: Sequence[str],
    *,
    scan_limit: int,
    trim_trailing: bool = False,
) -> ParsedSheet:
    sheet = ParsedSheet()
    if not table:
        return sheet

    header_index = find_header_index(header_texts, scan_limit)
    sheet.header_line = header_index + 1
    header_cells = list(table[header_index])
    if trim_trailing:
        header_cells = header_cells[: _meaningful_width(header_cells)]
    sheet.columns = normalize_headers(header_cells)
    minimum_cells = len(sheet.columns) - MALFORMED_ROW_TOLERANCE

    for index in range(header_index + 1, len(table)):
        cells = list(table[index])
        if all(cell in ("", None) for cell in cells):
            continue
        cell_count = _meaningful_width(cells) if trim_trailing else len(cells)
        if cell_count < minimum_cells:
            sheet.errors.append(
                ParseError(
                    row_number=index + 1,
                    message=f"Expected ~{len(sheet.columns)} columns but found {cell_count}",
                )
            )
            continue
        row: dict[str, Any] = {}
        for position, column in enumerate(sheet.columns):
            row[column] = coerce_cell(cells[position]) if position < len(cells) else ""
        sheet.rows.append(row)

    sheet.categories = detect_categories(sheet.columns)
    return sheet


def parse_csv_text(text: str, *, scan_limit: int = DEFAULT_HEADER_SCAN_LINES) -> ParsedSheet:
    """Parse CSV text; row numbers count non-blank lines from 1."""
    lines = [line for line in text.splitlines() if line.strip()]
    table = [split_line(line) for line in lines]
    return _build_sheet(table, lines, scan_limit=scan_limit)


def _xlsx_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, datetime):
        if value.hour == value.minute == value.second == 0:
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


def parse_xlsx_bytes(content: bytes, *, scan_limit: int = DEFAULT_HEADER_SCAN_LINES) -> ParsedSheet:
    """Parse the first worksheet of an .xlsx workbook."""
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, ValueError, OSError) as exc:
        raise errors.file_parsing_failed(f"Unreadable workbook ({exc.__class__.__name__})") from exc

    try:
        worksheet = workbook.worksheets[0] if workbook.worksheets else None
        if worksheet is None:
            return ParsedSheet()
        table = []
        for values in worksheet.iter_rows(values_only=True):
            cells = [_xlsx_cell(value) for value in values]
            if any(cell != "" for cell in cells):
                table.append(cells)
    finally:
        workbook.close()

    header_texts = [", ".join(str(cell) for cell in cells if cell != "") for cells in table]
    return _build_sheet(table, header_texts, scan_limit=scan_limit, trim_trailing=True)


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------


class IngestionParser:
    """Turns uploaded bytes into a pending staged file."""

    def __init__(
        self,
        store: StagingStore,
        audit: AuditTrailRecorder | None = None,
        *,
        max_upload_bytes: int | None = None,
        scan_limit: int | None = None,
    ) -> None:
        self.store = store
        self.audit = audit or store.audit
        config = current_app.config if has_app_context() else {}
        if max_upload_bytes is None:
            max_upload_bytes = int(config.get("IMPORTER_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)) * 1024 * 1024
        self.max_upload_bytes = max_upload_bytes
        self.scan_limit = scan_limit or int(config.get("IMPORTER_HEADER_SCAN_LINES", DEFAULT_HEADER_SCAN_LINES))

    def parse_upload(
        self,
        content: bytes,
        *,
        filename: str,
        media_type: str | None,
        actor: Actor,
    ) -> StagedFile:
        if len(content) > self.max_upload_bytes:
            raise errors.file_too_large(self.max_upload_bytes, len(content))

        reader = resolve_format(media_type, filename)
        if reader == "xlsx":
            sheet = parse_xlsx_bytes(content, scan_limit=self.scan_limit)
        else:
            sheet = parse_csv_text(decode_content(content), scan_limit=self.scan_limit)

        staged = StagedFile(
            id=self.store.new_handle(),
            file_name=filename,
            file_size=len(content),
            media_type=media_type,
            row_count=len(sheet.rows),
            columns_json=sheet.columns,
            rows_json=sheet.rows,
            detected_categories_json=sheet.categories,
            parse_errors_json=[error.as_dict() for error in sheet.errors],
            import_status=ImportStatus.PENDING,
            expires_at=self.store.expiry_from_now(),
            uploaded_by_user_id=actor.user_id,
            uploaded_by_name=actor.name,
        )
        self.store.put(staged)
        self.audit.record(
            staged.id,
            AuditAction.FILE_UPLOADED,
            actor,
            details={
                "file_name": filename,
                "file_size": len(content),
                "media_type": media_type,
                "row_count": len(sheet.rows),
                "column_count": len(sheet.columns),
                "header_line": sheet.header_line,
                "parse_error_count": len(sheet.errors),
                "detected_data_types": sheet.categories,
            },
        )
        return self.store.save(staged)
