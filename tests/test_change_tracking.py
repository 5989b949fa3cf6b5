"""Tests for wiring the change-tracking components."""

import pytest

from audit.tracking.context import ActorContext
from audit.tracking.storage import InMemoryChangeRecordStore
from audit.tracking.types import Operation
from config.change_tracking import ChangeTrackingSettings
from database.change_tracking import build_change_tracking
from database.repositories import LeadRepository, SqlAlchemyChangeRecordStore


class TestBuildChangeTracking:
    """Tests for build_change_tracking."""

    def test_registers_configured_types(self):
        tracking = build_change_tracking(ChangeTrackingSettings(), start_sweeper=False)
        try:
            assert tracking.orchestrator.is_tracked("Lead")
            assert isinstance(tracking.recorder.store, SqlAlchemyChangeRecordStore)
            assert tracking.orchestrator.cache is tracking.cache
            assert not tracking.cache.is_running
        finally:
            tracking.shutdown()

    def test_disabled_registers_nothing(self):
        tracking = build_change_tracking(ChangeTrackingSettings(enabled=False), start_sweeper=False)
        assert not tracking.orchestrator.is_tracked("Lead")
        tracking.shutdown()

    def test_shutdown_stops_sweeper(self):
        tracking = build_change_tracking(ChangeTrackingSettings())
        assert tracking.cache.is_running

        tracking.shutdown()

        assert not tracking.cache.is_running

    @pytest.mark.asyncio
    async def test_end_to_end_with_custom_store(self, session_factory):
        store = InMemoryChangeRecordStore()
        tracking = build_change_tracking(ChangeTrackingSettings(), store=store,
                                         session_factory=session_factory, start_sweeper=False)
        actor = ActorContext(actor_id="agent-7")

        async def create(session):
            lead = await tracking.lead_repository(session).create({"full_name": "Mia"})
            return lead.id

        async def qualify(session):
            await LeadRepository(session, tracking.orchestrator).update(
                lead_id, {"status": "qualified", "assigned_to": "agent-7"}
            )

        try:
            lead_id = (await tracking.coordinator.with_transaction(actor, create)).unwrap()
            result = await tracking.coordinator.with_transaction(actor, qualify)
        finally:
            tracking.shutdown()

        assert result.is_ok
        records = await store.history("Lead", lead_id)
        assert [r.operation for r in records] == [Operation.UPDATE, Operation.CREATE]
        assert records[0].fields == ("status", "assigned_to")
