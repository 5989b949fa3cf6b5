"""Repository implementations for the change-tracked CRM entities."""

from .audit_fields import stamp_audit_fields
from .change_log_repository import SqlAlchemyChangeRecordStore
from .entity_loader import OrmEntity, SqlAlchemyEntityLoader
from .lead_repository import LEAD_ENTITY_TYPE, LeadNotFoundError, LeadRepository

__all__ = [
    "stamp_audit_fields",
    "SqlAlchemyChangeRecordStore",
    "OrmEntity",
    "SqlAlchemyEntityLoader",
    "LEAD_ENTITY_TYPE",
    "LeadNotFoundError",
    "LeadRepository",
]
