"""
Transactional Change Tracking

Captures before/after field state of tracked entities and persists an
immutable ChangeRecord inside the same transaction as the mutation.

Usage:
    from audit.tracking import HookOrchestrator, SnapshotCache, AuditRecorder

    cache = SnapshotCache.from_settings(get_change_tracking_settings())
    orchestrator = HookOrchestrator(cache, AuditRecorder(store), loader)
    orchestrator.enable_tracking("Lead", ["status", "priority"])
"""

from .errors import (
    AuditAbort,
    AuditError,
    AuditErrorKind,
    Err,
    Ok,
    Result,
    Severity,
)
from .types import (
    ChangeData,
    ChangeRecord,
    Operation,
    StateEntity,
    TrackableEntity,
)
from .context import (
    ActorContext,
    MutationContext,
    bind_mutation_context,
    current_mutation_context,
    reset_mutation_context,
)
from .field_diff import FieldDiffEngine, detect_changes, get_nested_value, values_equal
from .snapshot_cache import SnapshotCache, SnapshotEntry
from .storage import ChangeRecordStore, InMemoryChangeRecordStore
from .recorder import AuditRecorder
from .orchestrator import (
    EntityLoader,
    HookOrchestrator,
    HookOutcome,
    MutationState,
    TrackingRegistration,
)

__all__ = [
    # Errors
    "AuditAbort",
    "AuditError",
    "AuditErrorKind",
    "Err",
    "Ok",
    "Result",
    "Severity",
    # Model
    "ChangeData",
    "ChangeRecord",
    "Operation",
    "StateEntity",
    "TrackableEntity",
    # Context
    "ActorContext",
    "MutationContext",
    "bind_mutation_context",
    "current_mutation_context",
    "reset_mutation_context",
    # Diff
    "FieldDiffEngine",
    "detect_changes",
    "get_nested_value",
    "values_equal",
    # Cache
    "SnapshotCache",
    "SnapshotEntry",
    # Storage
    "ChangeRecordStore",
    "InMemoryChangeRecordStore",
    "AuditRecorder",
    # Hooks
    "EntityLoader",
    "HookOrchestrator",
    "HookOutcome",
    "MutationState",
    "TrackingRegistration",
]
