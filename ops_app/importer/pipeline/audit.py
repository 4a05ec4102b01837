"""
Append-only audit trail for the historical import pipeline.

Every stage records what it did against the staged file handle (or the
import id once one exists). Entries are never updated or deleted; the ORM
listeners on :class:`AuditEntry` reject both.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.orm import Session

from ops_app.importer.utils import ensure_json_serializable
from ops_app.models import db
from ops_app.models.importer.schema import AuditEntry


class AuditAction(str, enum.Enum):
    FILE_UPLOADED = "file_uploaded"
    FILE_EXPIRED = "file_expired"
    VALIDATION_STARTED = "validation_started"
    VALIDATION_COMPLETED = "validation_completed"
    RECONCILIATION_STARTED = "reconciliation_started"
    RECONCILIATION_COMPLETED = "reconciliation_completed"
    RECONCILIATION_DECISION = "reconciliation_decision"
    IMPORT_STARTED = "import_started"
    IMPORT_COMPLETED = "import_completed"
    IMPORT_FAILED = "import_failed"


@dataclass(frozen=True)
class Actor:
    """Identity recorded against pipeline actions."""

    user_id: int | None
    name: str

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, name="system")

    @classmethod
    def from_user(cls, user) -> "Actor":
        if user is None or not getattr(user, "is_authenticated", False):
            return cls.system()
        name = getattr(user, "display_name", None) or getattr(user, "username", None) or f"user:{user.id}"
        return cls(user_id=user.id, name=name)

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.user_id, "name": self.name}


class AuditTrailRecorder:
    """Writes audit entries into the caller's unit of work."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def record(
        self,
        subject_id: str,
        action: AuditAction | str,
        actor: Actor,
        *,
        details: Mapping[str, Any] | None = None,
        subject_type: str = "file",
        entity_type: str | None = None,
        entity_id: str | int | None = None,
    ) -> AuditEntry:
        """
        Stage an audit entry; the surrounding stage commits it with its own changes.
        """

        entry = AuditEntry(
            subject_id=subject_id,
            subject_type=subject_type,
            action=action.value if isinstance(action, AuditAction) else str(action),
            actor_user_id=actor.user_id,
            actor_name=actor.name,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            details_json=ensure_json_serializable(dict(details or {})),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def entries_for(self, *subject_ids: str) -> list[AuditEntry]:
        ids = [subject_id for subject_id in subject_ids if subject_id]
        if not ids:
            return []
        return (
            self.session.query(AuditEntry)
            .filter(AuditEntry.subject_id.in_(ids))
            .order_by(AuditEntry.id.asc())
            .all()
        )
