"""
Change Tracking Data Model

ChangeRecord is the immutable description of one mutation's field-level
effects. Entities expose themselves to the tracker through the
TrackableEntity protocol instead of ORM-specific attributes.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable
import uuid


class Operation(str, Enum):
    """Kind of mutation a ChangeRecord describes."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SOFT_DELETE = "SOFT_DELETE"


@runtime_checkable
class TrackableEntity(Protocol):
    """Capability interface for entities whose mutations are tracked."""

    def id(self) -> Any:
        ...

    def type_name(self) -> str:
        ...

    def current_state(self) -> Mapping[str, Any]:
        ...


@dataclass(frozen=True)
class StateEntity:
    """TrackableEntity backed by a plain state mapping."""
    entity_type: str
    entity_id: Any
    state: Mapping[str, Any] = field(default_factory=dict)

    def id(self) -> Any:
        return self.entity_id

    def type_name(self) -> str:
        return self.entity_type

    def current_state(self) -> Mapping[str, Any]:
        return self.state


def serialize_value(value: Any) -> Any:
    """Convert a tracked value into a JSON-compatible form for storage."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize_value(v) for v in value]
    return value


@dataclass(frozen=True)
class ChangeData:
    """One tracked field whose value differs between pre- and post-image."""
    field: str
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "old_value": serialize_value(self.old_value),
            "new_value": serialize_value(self.new_value),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeData":
        return cls(
            field=data["field"],
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
        )


@dataclass(frozen=True)
class ChangeRecord:
    """
    Immutable change record.

    ``changed_at`` is None until the recorder stamps it at persistence time.
    ``changes`` is empty for CREATE, DELETE and SOFT_DELETE.
    """
    entity_id: str
    entity_type: str
    operation: Operation
    changes: Tuple[ChangeData, ...] = ()
    changed_by: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    changed_at: Optional[datetime] = None
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def with_changed_at(self, changed_at: datetime) -> "ChangeRecord":
        """Return a copy stamped with the persistence timestamp."""
        return replace(self, changed_at=changed_at)

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(change.field for change in self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "operation": self.operation.value,
            "changes": [change.to_dict() for change in self.changes],
            "changed_by": self.changed_by,
            "metadata": serialize_value(dict(self.metadata)),
            "changed_at": self.changed_at.isoformat() if self.changed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeRecord":
        changed_at = data.get("changed_at")
        if isinstance(changed_at, str):
            changed_at = datetime.fromisoformat(changed_at)
        return cls(
            record_id=data["record_id"],
            entity_id=data["entity_id"],
            entity_type=data["entity_type"],
            operation=Operation(data["operation"]),
            changes=tuple(ChangeData.from_dict(c) for c in data.get("changes") or []),
            changed_by=data.get("changed_by"),
            metadata=dict(data.get("metadata") or {}),
            changed_at=changed_at,
        )
