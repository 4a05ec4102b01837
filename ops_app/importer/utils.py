"""
Importer-specific utilities for uploads, timestamps and JSON payloads.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import date, datetime, timezone
from typing import Any

from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Attach UTC to naive datetimes; SQLite drops tzinfo on the round trip.
    """

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def file_extension(filename: str | None) -> str:
    if not filename or "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].lower()


def read_upload(file_storage: FileStorage) -> tuple[str, bytes]:
    """
    Return the sanitized filename and raw bytes of an uploaded file.

    The original filename is kept when sanitizing would empty it (for example
    names made entirely of non-ASCII characters).
    """

    original_name = file_storage.filename or ""
    safe_name = secure_filename(original_name) or original_name or "upload.csv"
    content = file_storage.read()
    return safe_name, content


def ensure_json_serializable(value: Any) -> Any:
    """
    Best-effort conversion of values to JSON-serializable representations.
    """

    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(ensure_json_serializable(item) for item in value)
    return str(value)
