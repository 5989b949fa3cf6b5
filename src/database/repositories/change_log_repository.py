"""Async ChangeLog storage.

Implements ChangeRecordStore on the change_logs table. Writes made with a
session join that session's transaction; writes without one commit on
their own short-lived session.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.tracking.storage import ChangeRecordStore
from audit.tracking.types import ChangeRecord, Operation
from database.async_engine import get_async_session_factory
from database.models import ChangeLog

logger = logging.getLogger(__name__)


class SqlAlchemyChangeRecordStore(ChangeRecordStore):
    """ChangeRecordStore backed by the change_logs table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Initialize the store.

        Args:
            session_factory: Factory for non-transactional writes and reads
                (defaults to the global one).
        """
        self._session_factory = session_factory

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_async_session_factory()

    async def save(self, record: ChangeRecord, session: Any = None) -> ChangeRecord:
        """
        Insert a ChangeLog row.

        Inside a transaction the row is flushed immediately, so constraint
        failures surface while the transaction can still be aborted.
        """
        row = ChangeLog.from_record(record)

        if session is not None:
            session.add(row)
            await session.flush()
            logger.debug(f"Staged change log {row.id} in transaction")
            return record

        async with self._factory()() as own_session:
            own_session.add(row)
            await own_session.commit()
        logger.debug(f"Committed change log {row.id}")
        return record

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
        stmt = select(ChangeLog)
        if entity_type:
            stmt = stmt.where(ChangeLog.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(ChangeLog.entity_id == str(entity_id))
        if changed_by:
            stmt = stmt.where(ChangeLog.changed_by == changed_by)
        if operation:
            stmt = stmt.where(ChangeLog.operation == Operation(operation).value)
        stmt = stmt.order_by(ChangeLog.changed_at.desc()).limit(limit).offset(offset)

        if session is not None:
            result = await session.execute(stmt)
            return [row.to_record() for row in result.scalars().all()]

        async with self._factory()() as own_session:
            result = await own_session.execute(stmt)
            return [row.to_record() for row in result.scalars().all()]
