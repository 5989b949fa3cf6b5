"""
Audit Trail Module.

Transactional change tracking for CRM entities:

    from audit.tracking import HookOrchestrator, SnapshotCache, AuditRecorder

Change records are written in the same transaction as the business
mutation they describe.
"""

from audit.tracking import (
    ActorContext,
    AuditRecorder,
    ChangeData,
    ChangeRecord,
    HookOrchestrator,
    MutationContext,
    Operation,
    SnapshotCache,
)

__all__ = [
    "ActorContext",
    "AuditRecorder",
    "ChangeData",
    "ChangeRecord",
    "HookOrchestrator",
    "MutationContext",
    "Operation",
    "SnapshotCache",
]
