"""
Change Record Storage

Storage sink interface for ChangeRecords plus an in-memory backend.

The in-memory backend honors transactions: records written with a session
are staged and only become visible when that session commits. With a real
SQLAlchemy session this is wired to the session's commit and
transaction-end events, so staged records never outlive the transaction;
otherwise callers publish or drop staged records explicitly.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from .context import session_identifier
from .types import ChangeRecord, Operation

logger = logging.getLogger(__name__)

WATCHED_INFO_KEY = "change_tracking_watchers"


def orm_session(session: Any) -> Optional[Session]:
    """The synchronous ORM session behind ``session``, or None for other handles."""
    if isinstance(session, AsyncSession):
        return session.sync_session
    if isinstance(session, Session):
        return session
    return None


def watch_transaction(
    sync_session: Session,
    key: str,
    on_commit: Callable[[], Any],
    on_end: Callable[[], Any],
) -> None:
    """
    Run ``on_commit`` when the session commits and ``on_end`` whenever its
    root transaction ends, committed or not.

    Listeners are registered once per ``key`` and session. A transaction is
    begun if none is active so that a rollback without any database I/O
    still ends it.
    """
    if not sync_session.in_transaction():
        sync_session.begin()

    watched = sync_session.info.setdefault(WATCHED_INFO_KEY, set())
    if key in watched:
        return
    watched.add(key)

    def after_commit(session):
        if not session.in_nested_transaction():
            on_commit()

    def after_transaction_end(session, transaction):
        if transaction.parent is None:
            on_end()

    event.listen(sync_session, "after_commit", after_commit)
    event.listen(sync_session, "after_transaction_end", after_transaction_end)


class ChangeRecordStore(ABC):
    """Abstract base class for change record sinks."""

    @abstractmethod
    async def save(self, record: ChangeRecord, session: Any = None) -> ChangeRecord:
        """Persist a record, inside ``session``'s transaction when one is given."""
        pass

    @abstractmethod
    async def query(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        changed_by: Optional[str] = None,
        operation: Optional[Operation] = None,
        limit: int = 100,
        offset: int = 0,
        session: Any = None,
    ) -> List[ChangeRecord]:
        """Query committed records, newest first."""
        pass

    async def history(self, entity_type: str, entity_id: str, limit: int = 100) -> List[ChangeRecord]:
        """All records for one entity, newest first."""
        return await self.query(entity_type=entity_type, entity_id=str(entity_id), limit=limit)


class InMemoryChangeRecordStore(ChangeRecordStore):
    """
    In-memory change record storage for testing and single-process use.

    Thread-safe but not persistent.
    """

    def __init__(self):
        self._records: List[ChangeRecord] = []
        self._staged: Dict[str, List[ChangeRecord]] = {}
        self._lock = threading.Lock()

    async def save(self, record: ChangeRecord, session: Any = None) -> ChangeRecord:
        if session is None:
            with self._lock:
                self._records.append(record)
            return record

        session_id = session_identifier(session)
        with self._lock:
            self._staged.setdefault(session_id, []).append(record)

        sync_session = orm_session(session)
        if sync_session is not None:
            watch_transaction(
                sync_session,
                f"in-memory-store-{id(self):x}",
                on_commit=lambda: self.commit_session(session_id),
                on_end=lambda: self.rollback_session(session_id),
            )
        return record

    def commit_session(self, session_id: str) -> int:
        """Publish records staged under ``session_id``."""
        with self._lock:
            staged = self._staged.pop(session_id, [])
            self._records.extend(staged)
        if staged:
            logger.debug(f"Published {len(staged)} staged change record(s) for session {session_id}")
        return len(staged)

    def rollback_session(self, session_id: str) -> int:
        """Drop records staged under ``session_id``."""
        with self._lock:
            staged = self._staged.pop(session_id, [])
        if staged:
            logger.debug(f"Discarded {len(staged)} staged change record(s) for session {session_id}")
        return len(staged)

    @property
    def records(self) -> List[ChangeRecord]:
        """Committed records in write order."""
        with self._lock:
            return list(self._records)

    def staged(self, session_id: str) -> List[ChangeRecord]:
        with self._lock:
            return list(self._staged.get(session_id, []))

    async def query(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        changed_by: Optional[str] = None,
        operation: Optional[Operation] = None,
        limit: int = 100,
        offset: int = 0,
        session: Any = None,
    ) -> List[ChangeRecord]:
        with self._lock:
            results = list(self._records)

        if entity_type:
            results = [r for r in results if r.entity_type == entity_type]
        if entity_id:
            results = [r for r in results if r.entity_id == entity_id]
        if changed_by:
            results = [r for r in results if r.changed_by == changed_by]
        if operation:
            results = [r for r in results if r.operation == operation]

        results.reverse()
        return results[offset:offset + limit]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._staged.clear()
