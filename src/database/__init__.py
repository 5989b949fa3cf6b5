"""
Database Layer for the Travel CRM.

This module provides:
- SQLAlchemy ORM models (leads, change logs)
- Async database engine with connection pooling
- Transaction coordination for tracked mutations
- Repositories that drive the change-tracking hooks
"""

from .models import (
    Base,
    ChangeLog,
    Lead,
    LeadPriority,
    LeadStatus,
)

from .async_engine import (
    get_async_engine,
    get_async_session_factory,
    check_database_connection,
    init_database,
    close_database,
    reset_database_state,
)

from .transaction import TransactionCoordinator

from .repositories import (
    LeadRepository,
    SqlAlchemyChangeRecordStore,
    SqlAlchemyEntityLoader,
    stamp_audit_fields,
)

from .change_tracking import ChangeTracking, build_change_tracking

__all__ = [
    # Models
    "Base",
    "ChangeLog",
    "Lead",
    "LeadPriority",
    "LeadStatus",
    # Async Engine
    "get_async_engine",
    "get_async_session_factory",
    "check_database_connection",
    "init_database",
    "close_database",
    "reset_database_state",
    # Transaction Management
    "TransactionCoordinator",
    # Repositories
    "LeadRepository",
    "SqlAlchemyChangeRecordStore",
    "SqlAlchemyEntityLoader",
    "stamp_audit_fields",
    # Wiring
    "ChangeTracking",
    "build_change_tracking",
]
