"""
SQLAlchemy ORM Models for the travel CRM change-tracking store.

Architecture:
- change_logs: immutable ChangeRecord rows (one per tracked mutation)
- leads: the CRM's tracked Lead entity, with an ``audit`` sub-document
  holding created/updated/deleted stamps
"""

from enum import Enum as PyEnum
from typing import Any, Dict
from uuid import uuid4
import copy

from sqlalchemy import (
    Column, String, DateTime, Text, Index, CheckConstraint,
    event, JSON
)
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from audit.tracking.types import ChangeData, ChangeRecord, Operation


# Cross-database compatible JSON type
# Uses JSONB on PostgreSQL, JSON on SQLite/others
class JSONB(TypeDecorator):
    """A portable JSONB type that works with both PostgreSQL and SQLite."""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PG_JSONB())
        else:
            return dialect.type_descriptor(JSON())


Base = declarative_base()


class LeadStatus(str, PyEnum):
    """Lead pipeline status."""
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    PROPOSAL_SENT = "proposal_sent"
    NEGOTIATION = "negotiation"
    BOOKED = "booked"
    LOST = "lost"


class LeadPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def generate_id() -> str:
    return str(uuid4())


# =============================================================================
# CHANGE LOG
# =============================================================================

class ChangeLog(Base):
    """
    Persisted ChangeRecord.

    Rows are insert-only; an UPDATE through the ORM is rejected.
    """
    __tablename__ = "change_logs"

    id = Column(String(36), primary_key=True, default=generate_id)
    entity_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(64), nullable=False, index=True)
    operation = Column(String(16), nullable=False)
    changes = Column(JSONB, nullable=False, default=list)
    changed_by = Column(String(64), nullable=False, index=True)
    changed_at = Column(DateTime(timezone=True), nullable=False, index=True)
    # "metadata" is reserved on declarative classes
    record_metadata = Column("metadata", JSONB, nullable=True, default=dict)

    __table_args__ = (
        CheckConstraint(
            "operation IN ('CREATE', 'UPDATE', 'DELETE', 'SOFT_DELETE')",
            name='ck_change_log_operation',
        ),
        Index('ix_change_log_entity', 'entity_type', 'entity_id', 'changed_at'),
    )

    @classmethod
    def from_record(cls, record: ChangeRecord) -> "ChangeLog":
        data = record.to_dict()
        return cls(
            id=record.record_id,
            entity_id=record.entity_id,
            entity_type=record.entity_type,
            operation=record.operation.value,
            changes=data["changes"],
            changed_by=record.changed_by,
            changed_at=record.changed_at,
            record_metadata=data["metadata"],
        )

    def to_record(self) -> ChangeRecord:
        return ChangeRecord(
            record_id=self.id,
            entity_id=self.entity_id,
            entity_type=self.entity_type,
            operation=Operation(self.operation),
            changes=tuple(ChangeData.from_dict(c) for c in self.changes or []),
            changed_by=self.changed_by,
            metadata=dict(self.record_metadata or {}),
            changed_at=self.changed_at,
        )

    def __repr__(self) -> str:
        return f"<ChangeLog {self.operation} {self.entity_type}:{self.entity_id}>"


# =============================================================================
# LEADS
# =============================================================================

class Lead(Base):
    """Travel lead. ``travel_details`` and ``audit`` are JSON sub-documents."""
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=generate_id)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    status = Column(String(32), nullable=False, default=LeadStatus.NEW.value, index=True)
    priority = Column(String(16), nullable=False, default=LeadPriority.MEDIUM.value)
    source = Column(String(64), nullable=True)
    assigned_to = Column(String(64), nullable=True, index=True)
    travel_details = Column(JSONB, nullable=True, default=dict)
    next_follow_up = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    # Cache bookkeeping, not tracked
    score_cached_at = Column(DateTime(timezone=True), nullable=True)
    audit = Column(JSONB, nullable=False, default=dict)

    STATE_FIELDS = (
        "id", "full_name", "email", "phone", "status", "priority", "source",
        "assigned_to", "travel_details", "next_follow_up", "notes",
        "score_cached_at", "audit",
    )

    def to_state(self) -> Dict[str, Any]:
        """Detached copy of the row's field values."""
        return {name: copy.deepcopy(getattr(self, name)) for name in self.STATE_FIELDS}

    def __repr__(self) -> str:
        return f"<Lead {self.id} {self.status}>"


# =============================================================================
# EVENT LISTENERS
# =============================================================================

@event.listens_for(ChangeLog, 'before_update')
def reject_change_log_update(mapper, connection, target):
    """Change records are immutable once persisted."""
    raise ValueError(f"ChangeLog {target.id} is immutable")
