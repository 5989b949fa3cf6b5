"""Async Lead Repository Implementation.

CRUD for leads with change tracking wired around each write. Every
mutating call captures the pre-image, applies the write, stamps the
audit sub-document, flushes, then records the change through the
HookOrchestrator on the same session.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit.tracking.context import MutationContext, current_mutation_context
from audit.tracking.errors import AuditAbort, Result
from audit.tracking.orchestrator import HookOrchestrator
from audit.tracking.types import Operation
from config.change_tracking import DEFAULT_SOFT_DELETE_FIELD
from database.models import Lead
from database.repositories.audit_fields import stamp_audit_fields
from database.repositories.entity_loader import OrmEntity

logger = logging.getLogger(__name__)

LEAD_ENTITY_TYPE = "Lead"

# Columns holding JSON sub-documents; dotted update keys descend into these.
JSON_COLUMNS = frozenset({"travel_details"})
READ_ONLY_FIELDS = frozenset({"id", "audit"})
AUDIT_COLUMN = "audit"


class LeadNotFoundError(LookupError):
    """Raised when a lead id does not exist."""


def _audit_flag_key(soft_delete_field: str) -> str:
    column, _, key = soft_delete_field.partition(".")
    if column != AUDIT_COLUMN or not key or "." in key:
        raise ValueError(
            f"Lead soft-delete flag must be a key of the {AUDIT_COLUMN} sub-document, got {soft_delete_field!r}"
        )
    return key


def _set_nested(document: Dict[str, Any], parts: List[str], value: Any) -> None:
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


class LeadRepository:
    """
    Lead persistence with transactional change tracking.

    Usage:
        async with coordinator.transaction(actor) as session:
            repo = LeadRepository(session, orchestrator)
            await repo.update(lead_id, {"status": "contacted"})
    """

    def __init__(
        self,
        session: AsyncSession,
        orchestrator: HookOrchestrator,
        context: Optional[MutationContext] = None,
    ):
        """
        Initialize repository with a session.

        Args:
            session: SQLAlchemy async session.
            orchestrator: Change-tracking hooks.
            context: Mutation context; defaults to the one bound by the
                enclosing transaction when it shares this session.

        Raises:
            ValueError: if the registered soft-delete path is not a key of
                the audit sub-document.
        """
        self._session = session
        self._orchestrator = orchestrator
        self._context = context

        registration = orchestrator.registration(LEAD_ENTITY_TYPE)
        self._deleted_flag = _audit_flag_key(
            registration.soft_delete_field if registration else DEFAULT_SOFT_DELETE_FIELD
        )

    @property
    def context(self) -> MutationContext:
        if self._context is None:
            bound = current_mutation_context()
            if bound is not None and bound.session is self._session:
                return bound
            self._context = MutationContext(session=self._session)
        return self._context

    def is_deleted(self, lead: Lead) -> bool:
        return bool((lead.audit or {}).get(self._deleted_flag))

    async def get(self, lead_id: str, include_deleted: bool = False) -> Optional[Lead]:
        """
        Get a lead by ID.

        Soft-deleted leads are hidden unless ``include_deleted`` is set.
        """
        lead = await self._session.get(Lead, lead_id)
        if lead is None or (self.is_deleted(lead) and not include_deleted):
            return None
        return lead

    async def list(
        self,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Lead]:
        stmt = select(Lead)
        if status:
            stmt = stmt.where(Lead.status == status)
        if assigned_to:
            stmt = stmt.where(Lead.assigned_to == assigned_to)
        stmt = stmt.order_by(Lead.id).limit(limit).offset(offset)

        result = await self._session.execute(stmt)
        leads = list(result.scalars().all())
        if include_deleted:
            return leads
        return [lead for lead in leads if not self.is_deleted(lead)]

    async def create(self, data: Mapping[str, Any]) -> Lead:
        """
        Insert a lead and record a CREATE.

        Args:
            data: Column values; ``audit`` is stamped here and ignored if given.

        Returns:
            The flushed Lead.
        """
        ctx = self.context
        values = {k: copy.deepcopy(v) for k, v in data.items() if k != "audit"}
        lead = Lead(**values)
        lead.audit = stamp_audit_fields(
            None, Operation.CREATE, ctx.actor_id, deleted_flag=self._deleted_flag
        )

        self._session.add(lead)
        await self._session.flush()

        self._raise_if_fatal(await self._orchestrator.after_create(OrmEntity(lead, LEAD_ENTITY_TYPE), ctx))
        logger.debug(f"Created lead {lead.id}")
        return lead

    async def update(self, lead_id: str, changes: Mapping[str, Any]) -> Lead:
        """
        Apply field changes to a lead and record the UPDATE.

        Args:
            lead_id: Lead identifier.
            changes: Column names or dotted paths into ``travel_details``,
                e.g. ``{"status": "qualified", "travel_details.budget.value": 9000}``.

        Raises:
            LeadNotFoundError: if the lead does not exist or is soft-deleted.
            AuditAbort: if recording the change failed fatally.
        """
        lead = await self._require(lead_id)
        return await self._tracked_write(lead, changes, Operation.UPDATE)

    async def soft_delete(self, lead_id: str) -> Lead:
        """
        Flag a lead as deleted; recorded as SOFT_DELETE.

        Raises:
            LeadNotFoundError: if the lead does not exist or is already deleted.
        """
        lead = await self._require(lead_id)
        return await self._tracked_write(lead, {}, Operation.SOFT_DELETE)

    async def delete(self, lead_id: str) -> bool:
        """
        Remove a lead row. Deleting an already soft-deleted lead is recorded
        as SOFT_DELETE, anything else as DELETE.

        Returns:
            True if the lead existed.
        """
        lead = await self._session.get(Lead, lead_id)
        if lead is None:
            return False

        ctx = self.context
        self._raise_if_fatal(await self._orchestrator.before_delete(LEAD_ENTITY_TYPE, lead_id, ctx))

        try:
            await self._session.delete(lead)
            await self._session.flush()
        except Exception:
            self._orchestrator.abandon(LEAD_ENTITY_TYPE, lead_id, ctx)
            raise

        self._raise_if_fatal(await self._orchestrator.after_delete(OrmEntity(lead, LEAD_ENTITY_TYPE), ctx))
        logger.debug(f"Deleted lead {lead_id}")
        return True

    async def history(self, lead_id: str, limit: int = 100):
        """Change records for a lead, newest first."""
        store = self._orchestrator.recorder.store
        return await store.query(
            entity_type=LEAD_ENTITY_TYPE,
            entity_id=lead_id,
            limit=limit,
            session=self._session,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _require(self, lead_id: str) -> Lead:
        lead = await self.get(lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead not found: {lead_id}")
        return lead

    async def _tracked_write(
        self,
        lead: Lead,
        changes: Mapping[str, Any],
        operation: Operation,
    ) -> Lead:
        ctx = self.context
        lead_id = lead.id

        self._raise_if_fatal(await self._orchestrator.before_update(LEAD_ENTITY_TYPE, lead_id, ctx))

        try:
            self._apply(lead, changes)
            lead.audit = stamp_audit_fields(
                lead.audit, operation, ctx.actor_id, deleted_flag=self._deleted_flag
            )
            await self._session.flush()
        except Exception:
            self._orchestrator.abandon(LEAD_ENTITY_TYPE, lead_id, ctx)
            raise

        self._raise_if_fatal(await self._orchestrator.after_update(OrmEntity(lead, LEAD_ENTITY_TYPE), ctx))
        return lead

    @staticmethod
    def _apply(lead: Lead, changes: Mapping[str, Any]) -> None:
        # JSON columns are reassigned as new objects so the ORM sees the change
        documents: Dict[str, Dict[str, Any]] = {}

        for key, value in changes.items():
            parts = key.split(".")
            column = parts[0]
            if column in READ_ONLY_FIELDS:
                raise ValueError(f"Field is read-only: {key}")
            if column not in Lead.STATE_FIELDS:
                raise ValueError(f"Unknown lead field: {key}")

            if len(parts) > 1:
                if column not in JSON_COLUMNS:
                    raise ValueError(f"Not a JSON column: {column}")
                if column not in documents:
                    documents[column] = copy.deepcopy(getattr(lead, column) or {})
                _set_nested(documents[column], parts[1:], copy.deepcopy(value))
                continue

            if column == "next_follow_up" and isinstance(value, str):
                value = datetime.fromisoformat(value)
            if column in JSON_COLUMNS:
                documents[column] = copy.deepcopy(value)
            else:
                setattr(lead, column, value)

        for column, document in documents.items():
            setattr(lead, column, document)

    @staticmethod
    def _raise_if_fatal(result: Result) -> None:
        if result.is_err:
            if result.is_fatal:
                raise AuditAbort(result.error)
            logger.warning(f"Change tracking contained an error: {result.error.message}")
