"""
Importer schema package.
"""

from .schema import (
    AmbiguousMatch,
    AuditEntry,
    AuditEntryImmutableError,
    DataCategory,
    ImportRecord,
    ImportRecordStatus,
    ImportStatus,
    StagedFile,
    UserSelection,
)

__all__ = [
    "AmbiguousMatch",
    "AuditEntry",
    "AuditEntryImmutableError",
    "DataCategory",
    "ImportRecord",
    "ImportRecordStatus",
    "ImportStatus",
    "StagedFile",
    "UserSelection",
]
