"""
Hook Orchestrator

Drives the change-tracking pipeline around each mutation:

    PRE -> MUTATING -> POST_CAPTURE -> DIFFED -> PERSISTED | SKIPPED | FAILED

The persistence layer calls the lifecycle points (before_update,
after_update, before_delete, after_delete, after_create) around its
writes. Pre-hooks capture the persisted state into the SnapshotCache;
post-hooks claim it, diff it against the new state and hand the record
to the AuditRecorder inside the same transaction.

Usage:
    orchestrator = HookOrchestrator(cache, recorder, loader)
    orchestrator.enable_tracking("Lead", ["status", "travel_details.budget.value"])

    await orchestrator.before_update("Lead", lead_id, ctx)
    ...  # business write
    result = await orchestrator.after_update(entity, ctx)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from config.change_tracking import DEFAULT_SOFT_DELETE_FIELD

from .context import MutationContext, resolve_context
from .errors import AuditError, AuditErrorKind, Err, Ok, Result
from .field_diff import FieldDiffEngine, get_nested_value, validate_path
from .recorder import AuditRecorder
from .snapshot_cache import SnapshotCache
from .types import ChangeRecord, Operation, TrackableEntity

logger = logging.getLogger(__name__)


class MutationState(str, Enum):
    """Pipeline state of one tracked mutation."""
    PRE = "pre"
    MUTATING = "mutating"
    POST_CAPTURE = "post_capture"
    DIFFED = "diffed"
    PERSISTED = "persisted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class HookOutcome:
    """What a hook did. ``warning`` holds a contained, non-fatal error."""
    state: MutationState
    operation: Optional[Operation] = None
    record: Optional[ChangeRecord] = None
    warning: Optional[AuditError] = None


class EntityLoader(ABC):
    """Point read of an entity's persisted state, used for pre-image capture."""

    @abstractmethod
    async def load_by_id(
        self,
        entity_type: str,
        entity_id: Any,
        session: Any = None,
    ) -> Optional[Mapping[str, Any]]:
        """Return the persisted state, or None if the entity does not exist."""
        pass


@dataclass(frozen=True)
class TrackingRegistration:
    """Tracked-field allowlist and capture settings for one entity type."""
    entity_type: str
    tracked_fields: Tuple[str, ...]
    soft_delete_field: str = DEFAULT_SOFT_DELETE_FIELD
    loader: Optional[EntityLoader] = None


PriorState = Union[TrackableEntity, Mapping[str, Any], None]


class HookOrchestrator:
    """
    Registers tracked entity types and runs the pre/post mutation hooks.

    Only a FATAL persistence error under an active session is surfaced as
    ``Err`` with a fatal tag (and marked on the context); capture misses,
    missing actors and diff problems are contained and logged.
    """

    def __init__(
        self,
        cache: SnapshotCache,
        recorder: AuditRecorder,
        loader: Optional[EntityLoader] = None,
        diff_engine: Optional[FieldDiffEngine] = None,
        tracked_fields: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self._cache = cache
        self._recorder = recorder
        self._loader = loader
        self._diff = diff_engine or FieldDiffEngine()
        self._registrations: Dict[str, TrackingRegistration] = {}

        for entity_type, fields in (tracked_fields or {}).items():
            self.enable_tracking(entity_type, fields)

    @property
    def cache(self) -> SnapshotCache:
        return self._cache

    @property
    def recorder(self) -> AuditRecorder:
        return self._recorder

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def enable_tracking(
        self,
        entity_type: str,
        tracked_fields: Iterable[str],
        *,
        soft_delete_field: str = DEFAULT_SOFT_DELETE_FIELD,
        loader: Optional[EntityLoader] = None,
    ) -> TrackingRegistration:
        """
        Track an entity type.

        Args:
            entity_type: Entity type name
            tracked_fields: Ordered dotted field paths to observe
            soft_delete_field: Path of the soft-delete flag in the entity state
            loader: Point-read loader for this type (defaults to the orchestrator's)

        Returns:
            The registration. Re-registering a type replaces its allowlist.
        """
        fields: Tuple[str, ...] = tuple(dict.fromkeys(tracked_fields))
        for path in fields:
            try:
                validate_path(path)
            except AuditError as e:
                logger.warning(f"{entity_type}: {e.message}; it will always be recorded as changed")

        registration = TrackingRegistration(
            entity_type=entity_type,
            tracked_fields=fields,
            soft_delete_field=soft_delete_field,
            loader=loader,
        )
        self._registrations[entity_type] = registration
        logger.info(f"Change tracking enabled for {entity_type} ({len(fields)} fields)")
        return registration

    def disable_tracking(self, entity_type: str) -> bool:
        removed = self._registrations.pop(entity_type, None) is not None
        if removed:
            logger.info(f"Change tracking disabled for {entity_type}")
        return removed

    def is_tracked(self, entity_type: str) -> bool:
        return entity_type in self._registrations

    def tracked_fields(self, entity_type: str) -> Tuple[str, ...]:
        registration = self._registrations.get(entity_type)
        return registration.tracked_fields if registration else ()

    def registration(self, entity_type: str) -> Optional[TrackingRegistration]:
        return self._registrations.get(entity_type)

    # =========================================================================
    # PRE HOOKS
    # =========================================================================

    async def before_update(
        self,
        entity_type: str,
        entity_id: Any,
        context: Optional[MutationContext] = None,
    ) -> Result:
        """Capture the pre-image ahead of an update."""
        return await self._capture(entity_type, entity_id, resolve_context(context))

    async def before_delete(
        self,
        entity_type: str,
        entity_id: Any,
        context: Optional[MutationContext] = None,
    ) -> Result:
        """Capture the pre-image ahead of a delete."""
        return await self._capture(entity_type, entity_id, resolve_context(context))

    async def _capture(self, entity_type: str, entity_id: Any, ctx: MutationContext) -> Result:
        registration = self._registrations.get(entity_type)
        if registration is None:
            return Ok(HookOutcome(MutationState.SKIPPED))

        loader = registration.loader or self._loader
        if loader is None:
            return Ok(self._capture_miss(entity_type, entity_id, "no entity loader registered"))

        try:
            state = await loader.load_by_id(entity_type, entity_id, ctx.session)
        except Exception as e:
            return Ok(self._capture_miss(entity_type, entity_id, f"point read failed: {e}", e))

        if state is None:
            return Ok(self._capture_miss(entity_type, entity_id, "entity not found"))

        self._cache.store(str(entity_id), state, ctx.session_id)
        logger.debug(f"Captured pre-image of {entity_type}:{entity_id} (session={ctx.session_id})")
        return Ok(HookOutcome(MutationState.MUTATING))

    def _capture_miss(
        self,
        entity_type: str,
        entity_id: Any,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> HookOutcome:
        logger.warning(f"Pre-image capture missed for {entity_type}:{entity_id}: {reason}")
        return HookOutcome(
            MutationState.MUTATING,
            warning=AuditError.recoverable(AuditErrorKind.CAPTURE_MISS, reason, cause=cause),
        )

    def abandon(
        self,
        entity_type: str,
        entity_id: Any,
        context: Optional[MutationContext] = None,
    ) -> None:
        """Drop a captured pre-image when the business write never happened."""
        ctx = resolve_context(context)
        self._cache.clear(str(entity_id), ctx.session_id)

    # =========================================================================
    # POST HOOKS
    # =========================================================================

    async def after_create(
        self,
        entity: TrackableEntity,
        context: Optional[MutationContext] = None,
    ) -> Result:
        """Record a CREATE. There is no pre-image for a new entity."""
        registration = self._registrations.get(entity.type_name())
        if registration is None:
            return Ok(HookOutcome(MutationState.SKIPPED))

        ctx = resolve_context(context)
        try:
            new_state = entity.current_state()
        except Exception as e:
            return self._contained_failure(entity, e)
        return await self._record(registration, entity.id(), new_state, None, Operation.CREATE, ctx)

    async def after_update(
        self,
        entity: TrackableEntity,
        context: Optional[MutationContext] = None,
    ) -> Result:
        """
        Record an UPDATE against the captured pre-image.

        An update that sets the soft-delete flag (unset in the pre-image)
        is recorded as SOFT_DELETE.
        """
        registration = self._registrations.get(entity.type_name())
        if registration is None:
            return Ok(HookOutcome(MutationState.SKIPPED))

        ctx = resolve_context(context)
        entity_id = str(entity.id())
        try:
            old_state = self._cache.pop(entity_id, ctx.session_id)
            if old_state is None:
                logger.debug(f"No pre-image for {registration.entity_type}:{entity_id}, diffing against None")
            new_state = entity.current_state()

            operation = Operation.UPDATE
            if (
                old_state is not None
                and self._flag(new_state, registration)
                and not self._flag(old_state, registration)
            ):
                operation = Operation.SOFT_DELETE

            return await self._record(registration, entity_id, new_state, old_state, operation, ctx)
        except Exception as e:
            return self._contained_failure(entity, e)
        finally:
            self._cache.clear(entity_id, ctx.session_id)

    async def after_delete(
        self,
        entity: TrackableEntity,
        context: Optional[MutationContext] = None,
    ) -> Result:
        """
        Record a DELETE.

        Classified as SOFT_DELETE when the captured pre-image already has the
        soft-delete flag set (finalizing a soft-deleted row).
        """
        registration = self._registrations.get(entity.type_name())
        if registration is None:
            return Ok(HookOutcome(MutationState.SKIPPED))

        ctx = resolve_context(context)
        entity_id = str(entity.id())
        try:
            old_state = self._cache.pop(entity_id, ctx.session_id)
            operation = Operation.DELETE
            if old_state is not None and self._flag(old_state, registration):
                operation = Operation.SOFT_DELETE

            try:
                new_state = entity.current_state()
            except Exception:
                new_state = old_state

            return await self._record(registration, entity_id, new_state, old_state, operation, ctx)
        except Exception as e:
            return self._contained_failure(entity, e)
        finally:
            self._cache.clear(entity_id, ctx.session_id)

    async def log_change(
        self,
        entity: TrackableEntity,
        operation: Union[Operation, str],
        prior: PriorState = None,
        context: Optional[MutationContext] = None,
    ) -> Result:
        """
        Record a mutation performed outside the standard lifecycle hooks.

        Args:
            entity: Entity after the mutation
            operation: Operation performed
            prior: Entity or state before the mutation, if known
            context: Mutation context (defaults to the bound one)
        """
        registration = self._registrations.get(entity.type_name())
        if registration is None:
            return Ok(HookOutcome(MutationState.SKIPPED))

        ctx = resolve_context(context)
        operation = Operation(operation)
        try:
            old_state = prior.current_state() if isinstance(prior, TrackableEntity) else prior
            new_state = entity.current_state()
            if operation is Operation.DELETE and old_state is not None and self._flag(old_state, registration):
                operation = Operation.SOFT_DELETE
        except Exception as e:
            return self._contained_failure(entity, e)

        return await self._record(registration, entity.id(), new_state, old_state, operation, ctx)

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def _record(
        self,
        registration: TrackingRegistration,
        entity_id: Any,
        new_state: Optional[Mapping[str, Any]],
        old_state: Optional[Mapping[str, Any]],
        operation: Operation,
        ctx: MutationContext,
    ) -> Result:
        entity_type = registration.entity_type
        changes = self._diff.diff(new_state, old_state, registration.tracked_fields, operation)

        if operation is Operation.UPDATE and not changes:
            logger.debug(f"No tracked changes on {entity_type}:{entity_id}, skipping")
            return Ok(HookOutcome(MutationState.SKIPPED, operation=operation))

        changed_by = self._resolve_actor(ctx, new_state, old_state)
        if not changed_by:
            logger.debug(f"No actor for {operation.value} on {entity_type}:{entity_id}, skipping")
            return Ok(HookOutcome(
                MutationState.SKIPPED,
                operation=operation,
                warning=AuditError.recoverable(AuditErrorKind.NO_ACTOR, "changed_by unresolvable"),
            ))

        record = ChangeRecord(
            entity_id=str(entity_id),
            entity_type=entity_type,
            operation=operation,
            changes=changes,
            changed_by=changed_by,
            metadata=ctx.actor.to_metadata(),
        )

        result = await self._recorder.persist(record, session=ctx.session)
        if result.is_ok:
            return Ok(HookOutcome(MutationState.PERSISTED, operation=operation, record=result.value))

        if result.error.is_fatal:
            ctx.mark_fatal(result.error)
        return result

    def _resolve_actor(
        self,
        ctx: MutationContext,
        new_state: Optional[Mapping[str, Any]],
        old_state: Optional[Mapping[str, Any]],
    ) -> Optional[str]:
        if ctx.actor_id:
            return str(ctx.actor_id)
        for state in (new_state, old_state):
            actor = get_nested_value(state, "audit.updated_by") or get_nested_value(state, "audit.created_by")
            if actor:
                return str(actor)
        return None

    @staticmethod
    def _flag(state: Optional[Mapping[str, Any]], registration: TrackingRegistration) -> bool:
        return bool(get_nested_value(state, registration.soft_delete_field))

    @staticmethod
    def _contained_failure(entity: Any, error: Exception) -> Err:
        logger.warning(f"Change tracking failed for {entity!r}, mutation unaffected: {error}")
        return Err(AuditError.recoverable(AuditErrorKind.DIFF, str(error), cause=error))
