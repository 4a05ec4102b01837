# ops_app/models/__init__.py
"""
Database models package
"""

from .ambassador import Ambassador
from .base import BaseModel, db
from .event import Event, EventStatus, EventType
from .importer import (
    AmbiguousMatch,
    AuditEntry,
    DataCategory,
    ImportRecord,
    ImportRecordStatus,
    ImportStatus,
    StagedFile,
    UserSelection,
)
from .operator import Operator
from .payroll import PayrollEntry, PayrollStatus
from .signup import SignUp
from .user import USER_ROLES, User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "USER_ROLES",
    # Canonical entities
    "Ambassador",
    "Event",
    "EventStatus",
    "EventType",
    "Operator",
    "PayrollEntry",
    "PayrollStatus",
    "SignUp",
    # Importer
    "AmbiguousMatch",
    "AuditEntry",
    "DataCategory",
    "ImportRecord",
    "ImportRecordStatus",
    "ImportStatus",
    "StagedFile",
    "UserSelection",
]
