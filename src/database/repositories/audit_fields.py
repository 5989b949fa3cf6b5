"""Audit sub-document stamping for mutating writes.

Every tracked entity carries an ``audit`` JSON sub-document:

    created_at, created_by, updated_at, updated_by, version,
    is_deleted, deleted_at, deleted_by

Timestamps are stored as ISO-8601 strings so the sub-document stays
JSON-serializable.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from audit.tracking.types import Operation


def stamp_audit_fields(
    audit: Optional[Mapping[str, Any]],
    operation: Operation,
    actor_id: Optional[str],
    now: Optional[datetime] = None,
    deleted_flag: str = "is_deleted",
) -> Dict[str, Any]:
    """
    Return a new audit sub-document stamped for ``operation``.

    Args:
        audit: Current audit sub-document (None for new entities)
        operation: Mutation being applied
        actor_id: Acting user; stored as None when unknown
        now: Timestamp to stamp (defaults to current UTC time)
        deleted_flag: Key of the soft-delete flag inside the sub-document
    """
    stamped: Dict[str, Any] = dict(audit or {})
    timestamp = (now or datetime.now(timezone.utc)).isoformat()

    if operation is Operation.CREATE:
        stamped.update({
            "created_at": timestamp,
            "created_by": actor_id,
            "updated_at": timestamp,
            "updated_by": actor_id,
            "version": 1,
            deleted_flag: False,
        })
        return stamped

    stamped["updated_at"] = timestamp
    stamped["updated_by"] = actor_id
    stamped["version"] = int(stamped.get("version") or 0) + 1

    if operation in (Operation.SOFT_DELETE, Operation.DELETE):
        stamped.update({
            deleted_flag: True,
            "deleted_at": timestamp,
            "deleted_by": actor_id,
        })

    return stamped
