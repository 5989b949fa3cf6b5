"""Transaction coordination for tracked mutations.

Opens a unit of work, binds the actor/session MutationContext so that
repositories and change-tracking hooks inside it share one session, and
commits or rolls back the business writes and the change records
together.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.tracking.context import (
    ActorContext,
    MutationContext,
    bind_mutation_context,
    reset_mutation_context,
)
from audit.tracking.errors import (
    AuditAbort,
    AuditError,
    AuditErrorKind,
    Err,
    Ok,
    Result,
)
from audit.tracking.snapshot_cache import SnapshotCache
from config.logging_config import actor_id_var, tracking_session_var
from database.async_engine import get_async_session_factory

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_audit_error(exc: BaseException) -> AuditError:
    if isinstance(exc, AuditError):
        return exc
    if isinstance(exc, AuditAbort):
        return exc.error
    return AuditError.fatal(AuditErrorKind.OPERATION, str(exc) or type(exc).__name__, cause=exc)


class TransactionCoordinator:
    """
    Runs an operation inside one tracked unit of work.

    Usage:
        coordinator = TransactionCoordinator(session_factory, cache)
        result = await coordinator.with_transaction(actor, update_lead)
        if result.is_err:
            ...  # nothing was committed
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[SnapshotCache] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            session_factory: Session factory (defaults to the global one)
            cache: Snapshot cache to purge of the session's entries on exit
        """
        self._session_factory = session_factory
        self._cache = cache

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_async_session_factory()

    async def with_transaction(
        self,
        actor: Optional[ActorContext],
        operation: Callable[[AsyncSession], Awaitable[T]],
    ) -> Result:
        """
        Run ``operation(session)`` in a transaction.

        Commits on success. Rolls back when the operation raises or when a
        hook marked the context with a fatal error, so neither the business
        writes nor their change records are committed.

        Returns:
            Ok(value) or Err(AuditError)
        """
        session = self._factory()()
        context = MutationContext(session=session, actor=actor)

        context_token = bind_mutation_context(context)
        session_token = tracking_session_var.set(context.session_id)
        actor_token = actor_id_var.set(context.actor_id)

        logger.debug("Tracked transaction started")
        try:
            try:
                value = await operation(session)
            except Exception as e:
                error = context.fatal_error or _as_audit_error(e)
                await self._rollback(session)
                logger.warning(
                    f"Tracked transaction rolled back ({error.kind.value}): {error.message}"
                )
                return Err(error)

            if context.fatal_error is not None:
                error = context.fatal_error
                await self._rollback(session)
                logger.warning(
                    f"Tracked transaction rolled back after fatal change-tracking error: {error.message}"
                )
                return Err(error)

            try:
                await session.commit()
            except Exception as e:
                await self._rollback(session)
                logger.error(f"Tracked transaction commit failed: {e}")
                return Err(AuditError.fatal(AuditErrorKind.OPERATION, f"Commit failed: {e}", cause=e))

            logger.debug("Tracked transaction committed")
            return Ok(value)
        finally:
            try:
                await session.close()
            finally:
                if self._cache is not None:
                    self._cache.clear_session(context.session_id)
                actor_id_var.reset(actor_token)
                tracking_session_var.reset(session_token)
                reset_mutation_context(context_token)

    @asynccontextmanager
    async def transaction(
        self,
        actor: Optional[ActorContext] = None,
    ) -> AsyncGenerator[AsyncSession, None]:
        """
        Context-manager form that raises instead of returning a Result.

        Usage:
            async with coordinator.transaction(actor) as session:
                await repo.update(lead_id, {"status": "contacted"})

        Raises:
            AuditError: if the operation failed or change tracking hit a fatal error
        """
        session = self._factory()()
        context = MutationContext(session=session, actor=actor)
        context_token = bind_mutation_context(context)
        session_token = tracking_session_var.set(context.session_id)
        actor_token = actor_id_var.set(context.actor_id)

        try:
            try:
                yield session
            except Exception as e:
                await self._rollback(session)
                error = context.fatal_error or _as_audit_error(e)
                if error is e:
                    raise
                raise error from e

            if context.fatal_error is not None:
                await self._rollback(session)
                raise context.fatal_error
            await session.commit()
        finally:
            try:
                await session.close()
            finally:
                if self._cache is not None:
                    self._cache.clear_session(context.session_id)
                actor_id_var.reset(actor_token)
                tracking_session_var.reset(session_token)
                reset_mutation_context(context_token)

    @staticmethod
    async def _rollback(session: AsyncSession) -> None:
        try:
            await session.rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}")
