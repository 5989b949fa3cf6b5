"""
Audit Recorder

Persists ChangeRecords with transactional atomicity:
- No actor: nothing is written and nothing fails
- Inside a transaction: a write failure is FATAL and must abort the unit of work
- Outside a transaction: a write failure is logged and RECOVERABLE, because
  the business mutation has already committed

The ``AUDIT:`` log line for a write made inside a transaction is held back
until that transaction commits and dropped if it ends any other way.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .context import session_identifier
from .errors import AuditError, AuditErrorKind, Err, Ok, Result
from .storage import ChangeRecordStore, orm_session, watch_transaction
from .types import ChangeRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecorder:
    """Builds the final record and hands it to the storage sink."""

    def __init__(
        self,
        store: ChangeRecordStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._clock = clock
        self._pending: Dict[str, List[str]] = {}
        self._lock = threading.Lock()

    @property
    def store(self) -> ChangeRecordStore:
        return self._store

    async def persist(self, record: ChangeRecord, session: Any = None) -> Result:
        """
        Persist a change record.

        Args:
            record: Record to persist; ``changed_at`` is stamped here
            session: Active transaction, if any

        Returns:
            Ok(persisted record), Ok(None) when the record was suppressed for
            lack of an actor, or Err(AuditError) tagged FATAL or RECOVERABLE.
        """
        if not record.changed_by:
            logger.debug(
                f"No actor for {record.operation.value} on "
                f"{record.entity_type}:{record.entity_id}, change record skipped"
            )
            return Ok(None)

        stamped = record.with_changed_at(self._clock())

        try:
            saved = await self._store.save(stamped, session=session)
        except Exception as e:
            context = (
                f"{stamped.operation.value} on {stamped.entity_type}:{stamped.entity_id}"
            )
            if session is not None:
                logger.error(
                    f"Failed to persist change record for {context} inside a transaction; "
                    f"the transaction must be aborted: {e}"
                )
                return Err(AuditError.fatal(
                    AuditErrorKind.PERSIST,
                    f"Change record write failed for {context}",
                    cause=e,
                ))

            logger.exception(f"Failed to persist change record for {context}")
            return Err(AuditError.recoverable(
                AuditErrorKind.PERSIST,
                f"Change record write failed for {context}",
                cause=e,
            ))

        line = (
            f"AUDIT: {stamped.operation.value} | {stamped.entity_type}:{stamped.entity_id} | "
            f"user={stamped.changed_by} | fields={','.join(stamped.fields) or '-'}"
        )
        sync_session = orm_session(session)
        if sync_session is None:
            logger.info(line)
        else:
            self._hold_until_commit(sync_session, line)
        return Ok(saved if saved is not None else stamped)

    def _hold_until_commit(self, sync_session: Any, line: str) -> None:
        session_id = session_identifier(sync_session)
        with self._lock:
            self._pending.setdefault(session_id, []).append(line)
        watch_transaction(
            sync_session,
            f"audit-recorder-{id(self):x}",
            on_commit=lambda: self._emit_pending(session_id),
            on_end=lambda: self._discard_pending(session_id),
        )

    def _emit_pending(self, session_id: str) -> None:
        with self._lock:
            lines = self._pending.pop(session_id, [])
        for line in lines:
            logger.info(line)

    def _discard_pending(self, session_id: str) -> None:
        with self._lock:
            lines = self._pending.pop(session_id, [])
        if lines:
            logger.debug(f"Dropped {len(lines)} audit line(s) for session {session_id} after rollback")
