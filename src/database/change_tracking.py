"""Change-tracking wiring for the database layer.

Builds the snapshot cache, recorder, orchestrator and transaction
coordinator as one explicitly owned set of components.

Usage:
    tracking = build_change_tracking()
    try:
        result = await tracking.coordinator.with_transaction(actor, operation)
    finally:
        tracking.shutdown()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit.tracking.orchestrator import HookOrchestrator
from audit.tracking.recorder import AuditRecorder
from audit.tracking.snapshot_cache import SnapshotCache
from audit.tracking.storage import ChangeRecordStore
from config.change_tracking import ChangeTrackingSettings, get_change_tracking_settings
from database.models import Lead
from database.repositories.change_log_repository import SqlAlchemyChangeRecordStore
from database.repositories.entity_loader import SqlAlchemyEntityLoader
from database.repositories.lead_repository import LEAD_ENTITY_TYPE, LeadRepository
from database.transaction import TransactionCoordinator

logger = logging.getLogger(__name__)


@dataclass
class ChangeTracking:
    """Owned change-tracking components. Call ``shutdown()`` on exit."""
    settings: ChangeTrackingSettings
    cache: SnapshotCache
    recorder: AuditRecorder
    orchestrator: HookOrchestrator
    coordinator: TransactionCoordinator

    def lead_repository(self, session: AsyncSession) -> LeadRepository:
        return LeadRepository(session, self.orchestrator)

    def shutdown(self) -> None:
        self.cache.shutdown()
        logger.info("Change tracking shut down")


def build_change_tracking(
    settings: Optional[ChangeTrackingSettings] = None,
    store: Optional[ChangeRecordStore] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    start_sweeper: bool = True,
) -> ChangeTracking:
    """
    Create the change-tracking components.

    Args:
        settings: Change tracking settings (defaults to environment).
        store: Change record sink (defaults to the change_logs table).
        session_factory: Session factory (defaults to the global one).
        start_sweeper: Start the snapshot sweeper thread immediately.

    Returns:
        ChangeTracking with the configured entity types registered. When
        tracking is disabled in settings no types are registered, so every
        hook is a no-op.
    """
    settings = settings or get_change_tracking_settings()
    store = store or SqlAlchemyChangeRecordStore(session_factory)

    cache = SnapshotCache.from_settings(settings, autostart=start_sweeper)
    recorder = AuditRecorder(store)
    loader = SqlAlchemyEntityLoader({LEAD_ENTITY_TYPE: Lead}, session_factory)
    orchestrator = HookOrchestrator(cache, recorder, loader)

    if settings.enabled:
        for entity_type, fields in settings.tracked_fields.items():
            orchestrator.enable_tracking(
                entity_type,
                fields,
                soft_delete_field=settings.soft_delete_field,
            )
    else:
        logger.info("Change tracking disabled by configuration")

    coordinator = TransactionCoordinator(session_factory, cache)
    return ChangeTracking(
        settings=settings,
        cache=cache,
        recorder=recorder,
        orchestrator=orchestrator,
        coordinator=coordinator,
    )
