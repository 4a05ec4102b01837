"""
Keyed staging store for parsed uploads.

Staged files are rows in ``staged_files`` addressed by an opaque handle.
Expiry is enforced lazily: the first read after ``expires_at`` evicts the
row and reports ``FILE_EXPIRED``; later reads find nothing and report
``FILE_NOT_FOUND``. There is no background sweeper; ``purge_expired`` is
available for manual maintenance.

Writers serialize per handle with :meth:`StagingStore.locked` inside a
process, and the ``version`` column (mapper ``version_id_col``) rejects
stale writes across processes.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator
from uuid import uuid4

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ops_app.importer import errors
from ops_app.importer.utils import as_utc, utc_now
from ops_app.models import db
from ops_app.models.importer.schema import ImportStatus, StagedFile

from .audit import Actor, AuditAction, AuditTrailRecorder

DEFAULT_TTL_HOURS = 24


class HandleLockRegistry:
    """One re-entrant lock per staged handle."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @contextmanager
    def hold(self, handle: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(handle, threading.RLock())
        with lock:
            yield

    def discard(self, handle: str) -> None:
        with self._guard:
            self._locks.pop(handle, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


_HANDLE_LOCKS = HandleLockRegistry()


@dataclass(frozen=True)
class StagedFileFilters:
    statuses: tuple[ImportStatus, ...] = field(default_factory=tuple)
    uploaded_by_user_id: int | None = None
    include_expired: bool = False
    limit: int | None = None


class StagingStore:
    """get/put/delete/list over staged files with read-time eviction."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        audit: AuditTrailRecorder | None = None,
        clock: Callable[[], datetime] = utc_now,
        locks: HandleLockRegistry | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.audit = audit or AuditTrailRecorder(self.session)
        self.clock = clock
        self.locks = locks or _HANDLE_LOCKS

    # ------------------------------------------------------------------
    # Handles and expiry
    # ------------------------------------------------------------------

    @staticmethod
    def new_handle() -> str:
        return str(uuid4())

    def expiry_from_now(self, ttl_hours: float | None = None) -> datetime:
        if ttl_hours is None:
            ttl_hours = DEFAULT_TTL_HOURS
            if has_app_context():
                ttl_hours = current_app.config.get("IMPORTER_FILE_TTL_HOURS", DEFAULT_TTL_HOURS)
        return self.clock() + timedelta(hours=float(ttl_hours))

    def is_expired(self, staged: StagedFile) -> bool:
        return as_utc(staged.expires_at) <= self.clock()

    @contextmanager
    def locked(self, handle: str) -> Iterator[None]:
        with self.locks.hold(handle):
            yield

    # ------------------------------------------------------------------
    # Keyed access
    # ------------------------------------------------------------------

    def put(self, staged: StagedFile) -> StagedFile:
        if not staged.id:
            staged.id = self.new_handle()
        if staged.expires_at is None:
            staged.expires_at = self.expiry_from_now()
        self.session.add(staged)
        self.session.flush()
        return staged

    def get(self, handle: str, *, for_update: bool = False) -> StagedFile:
        query = self.session.query(StagedFile).filter(StagedFile.id == handle)
        if for_update:
            query = query.populate_existing().with_for_update()
        staged = query.one_or_none()
        if staged is None:
            raise errors.file_not_found(handle)
        if self.is_expired(staged):
            self._evict(staged, reason="expired_on_read")
            raise errors.file_expired(handle)
        return staged

    def peek(self, handle: str) -> StagedFile | None:
        """Return the staged file without applying expiry."""
        return self.session.get(StagedFile, handle)

    def save(self, staged: StagedFile) -> StagedFile:
        """Commit pending changes, translating version conflicts."""
        self.session.add(staged)
        try:
            self.session.commit()
        except StaleDataError:
            self.session.rollback()
            raise errors.concurrent_modification(staged.id) from None
        return staged

    def delete(self, handle: str) -> bool:
        staged = self.session.get(StagedFile, handle)
        if staged is None:
            return False
        self._delete_row(staged)
        self.session.commit()
        self.locks.discard(handle)
        return True

    def list(self, filters: StagedFileFilters | None = None) -> list[StagedFile]:
        filters = filters or StagedFileFilters()
        query = self.session.query(StagedFile)
        if filters.statuses:
            query = query.filter(StagedFile.import_status.in_(filters.statuses))
        if filters.uploaded_by_user_id is not None:
            query = query.filter(StagedFile.uploaded_by_user_id == filters.uploaded_by_user_id)
        if not filters.include_expired:
            query = query.filter(StagedFile.expires_at > self.clock())
        query = query.order_by(StagedFile.created_at.desc())
        if filters.limit:
            query = query.limit(filters.limit)
        return query.all()

    def count_by_status(self) -> dict[str, int]:
        rows = (
            self.session.query(StagedFile.import_status, func.count())
            .filter(StagedFile.expires_at > self.clock())
            .group_by(StagedFile.import_status)
            .all()
        )
        return {
            (status.value if isinstance(status, ImportStatus) else str(status)): count for status, count in rows
        }

    def purge_expired(self) -> int:
        expired = self.session.query(StagedFile).filter(StagedFile.expires_at <= self.clock()).all()
        handles = [staged.id for staged in expired]
        for staged in expired:
            self._record_eviction(staged, reason="purged")
            self._delete_row(staged)
        self.session.commit()
        for handle in handles:
            self.locks.discard(handle)
        return len(handles)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _evict(self, staged: StagedFile, *, reason: str) -> None:
        handle = staged.id
        self._record_eviction(staged, reason=reason)
        self._delete_row(staged)
        try:
            self.session.commit()
        except StaleDataError:
            # Another request evicted or touched it first; the handle is gone either way.
            self.session.rollback()
        self.locks.discard(handle)
        if has_app_context():
            current_app.logger.info(
                "Staged file evicted",
                extra={"importer_file_id": handle, "importer_eviction_reason": reason},
            )

    def _record_eviction(self, staged: StagedFile, *, reason: str) -> None:
        self.audit.record(
            staged.id,
            AuditAction.FILE_EXPIRED,
            Actor.system(),
            details={
                "reason": reason,
                "file_name": staged.file_name,
                "import_status": staged.import_status.value,
                "expires_at": as_utc(staged.expires_at).isoformat(),
            },
        )

    def _delete_row(self, staged: StagedFile) -> None:
        # SQLite test databases run without FK enforcement, so remove matches explicitly.
        for match in list(staged.ambiguous_matches):
            self.session.delete(match)
        self.session.delete(staged)
        self.session.flush()
