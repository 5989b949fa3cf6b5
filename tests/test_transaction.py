"""Integration tests for tracked transactions on a temporary SQLite database."""

import logging
import warnings
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SADeprecationWarning

from audit.tracking.context import ActorContext, current_mutation_context
from audit.tracking.errors import AuditAbort, AuditError, AuditErrorKind, Severity
from audit.tracking.orchestrator import HookOrchestrator
from audit.tracking.recorder import AuditRecorder
from audit.tracking.snapshot_cache import SnapshotCache
from audit.tracking.types import ChangeData, ChangeRecord, Operation, StateEntity
from config.change_tracking import DEFAULT_TRACKED_FIELDS
from config.logging_config import actor_id_var, tracking_session_var
from database.models import ChangeLog, Lead
from database.repositories import (
    LeadNotFoundError,
    LeadRepository,
    SqlAlchemyChangeRecordStore,
    SqlAlchemyEntityLoader,
)
from database.transaction import TransactionCoordinator

# Check if aiosqlite is available for tests that need real database connections
try:
    import aiosqlite  # noqa: F401
    HAS_AIOSQLITE = True
except ImportError:
    HAS_AIOSQLITE = False

pytestmark = pytest.mark.skipif(not HAS_AIOSQLITE, reason="aiosqlite not installed")

ACTOR = ActorContext(actor_id="u1", ip="10.0.0.1", user_agent="pytest", location="Lisbon, PT")


class FailingChangeRecordStore(SqlAlchemyChangeRecordStore):
    """Store whose writes always fail."""

    async def save(self, record: ChangeRecord, session=None) -> ChangeRecord:
        raise RuntimeError("change_logs unavailable")


def _orchestrator(session_factory, cache, store):
    return HookOrchestrator(
        cache,
        AuditRecorder(store),
        SqlAlchemyEntityLoader({"Lead": Lead}, session_factory),
        tracked_fields=DEFAULT_TRACKED_FIELDS,
    )


@pytest.fixture
def snapshot_cache():
    cache = SnapshotCache(autostart=False)
    yield cache
    cache.shutdown()


@pytest.fixture
def store(session_factory):
    return SqlAlchemyChangeRecordStore(session_factory)


@pytest.fixture
def orchestrator(session_factory, snapshot_cache, store):
    return _orchestrator(session_factory, snapshot_cache, store)


@pytest.fixture
def coordinator(session_factory, snapshot_cache):
    return TransactionCoordinator(session_factory, snapshot_cache)


async def _create_lead(coordinator, orchestrator, **data):
    values = {"full_name": "Ana Silva", "status": "new", "priority": "medium",
              "travel_details": {"destination": "Lisbon", "budget": {"value": 5000}}}
    values.update(data)

    async def operation(session):
        lead = await LeadRepository(session, orchestrator).create(values)
        return lead.id

    result = await coordinator.with_transaction(ACTOR, operation)
    assert result.is_ok, result
    return result.value


async def _load(session_factory, lead_id):
    async with session_factory() as session:
        return await session.get(Lead, lead_id)


class TestTrackedWrites:
    """Change records written by the repository inside transactions."""

    @pytest.mark.asyncio
    async def test_create_records_create(self, coordinator, orchestrator, store):
        lead_id = await _create_lead(coordinator, orchestrator)

        (record,) = await store.history("Lead", lead_id)
        assert record.operation is Operation.CREATE
        assert record.changes == ()
        assert record.changed_by == "u1"
        assert record.metadata == {"ip": "10.0.0.1", "user_agent": "pytest", "location": "Lisbon, PT"}

    @pytest.mark.asyncio
    async def test_create_stamps_audit_fields(self, coordinator, orchestrator, session_factory):
        lead_id = await _create_lead(coordinator, orchestrator)

        lead = await _load(session_factory, lead_id)
        assert lead.audit["created_by"] == "u1"
        assert lead.audit["version"] == 1
        assert lead.audit["is_deleted"] is False

    @pytest.mark.asyncio
    async def test_update_records_tracked_change(self, coordinator, orchestrator, store):
        lead_id = await _create_lead(coordinator, orchestrator)

        async def operation(session):
            return await LeadRepository(session, orchestrator).update(lead_id, {"status": "contacted"})

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_ok
        records = await store.history("Lead", lead_id)
        updates = [r for r in records if r.operation is Operation.UPDATE]
        assert len(updates) == 1
        assert updates[0].changes == (ChangeData("status", "new", "contacted"),)

    @pytest.mark.asyncio
    async def test_nested_json_field_change(self, coordinator, orchestrator, store, session_factory):
        lead_id = await _create_lead(coordinator, orchestrator)

        async def operation(session):
            await LeadRepository(session, orchestrator).update(
                lead_id, {"travel_details.budget.value": 7200}
            )

        await coordinator.with_transaction(ACTOR, operation)

        updates = await store.query(entity_id=lead_id, operation=Operation.UPDATE)
        assert updates[0].changes == (ChangeData("travel_details.budget.value", 5000, 7200),)
        lead = await _load(session_factory, lead_id)
        assert lead.travel_details == {"destination": "Lisbon", "budget": {"value": 7200}}

    @pytest.mark.asyncio
    async def test_untracked_update_records_nothing(self, coordinator, orchestrator, store):
        lead_id = await _create_lead(coordinator, orchestrator)

        async def operation(session):
            await LeadRepository(session, orchestrator).update(lead_id, {"notes": "called twice"})

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_ok
        assert [r.operation for r in await store.history("Lead", lead_id)] == [Operation.CREATE]

    @pytest.mark.asyncio
    async def test_soft_delete_then_delete(self, coordinator, orchestrator, store, session_factory):
        lead_id = await _create_lead(coordinator, orchestrator)

        async def soft_delete(session):
            repo = LeadRepository(session, orchestrator)
            await repo.soft_delete(lead_id)
            return await repo.get(lead_id)

        result = await coordinator.with_transaction(ACTOR, soft_delete)
        assert result.is_ok
        assert result.value is None

        async def delete(session):
            return await LeadRepository(session, orchestrator).delete(lead_id)

        result = await coordinator.with_transaction(ACTOR, delete)
        assert result.value is True

        assert await _load(session_factory, lead_id) is None
        operations = [r.operation for r in await store.history("Lead", lead_id)]
        assert operations.count(Operation.SOFT_DELETE) == 2
        assert Operation.DELETE not in operations

    @pytest.mark.asyncio
    async def test_hard_delete_of_live_lead(self, coordinator, orchestrator, store):
        lead_id = await _create_lead(coordinator, orchestrator)

        async def delete(session):
            return await LeadRepository(session, orchestrator).delete(lead_id)

        await coordinator.with_transaction(ACTOR, delete)

        deletes = await store.query(entity_id=lead_id, operation=Operation.DELETE)
        assert len(deletes) == 1

    @pytest.mark.asyncio
    async def test_writes_emit_no_deprecation_warnings(self, coordinator, orchestrator):
        with warnings.catch_warnings():
            warnings.simplefilter("error", SADeprecationWarning)
            lead_id = await _create_lead(coordinator, orchestrator)

            async def operation(session):
                await LeadRepository(session, orchestrator).update(lead_id, {"status": "contacted"})

            result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_ok, result

    @pytest.mark.asyncio
    async def test_update_of_missing_lead(self, coordinator, orchestrator):
        async def operation(session):
            await LeadRepository(session, orchestrator).update("missing", {"status": "lost"})

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_err
        assert result.error.kind is AuditErrorKind.OPERATION
        assert isinstance(result.error.cause, LeadNotFoundError)

    @pytest.mark.asyncio
    async def test_snapshots_do_not_outlive_transaction(self, coordinator, orchestrator, snapshot_cache):
        lead_id = await _create_lead(coordinator, orchestrator)

        async def operation(session):
            await orchestrator.before_update("Lead", lead_id)
            assert len(snapshot_cache) == 1

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_ok
        assert len(snapshot_cache) == 0


class TestAtomicity:
    """Business writes and change records commit or roll back together."""

    @pytest.mark.asyncio
    async def test_audit_write_failure_rolls_back_update(
        self, coordinator, orchestrator, session_factory, snapshot_cache, store
    ):
        lead_id = await _create_lead(coordinator, orchestrator)
        failing = _orchestrator(session_factory, snapshot_cache, FailingChangeRecordStore(session_factory))

        async def operation(session):
            await LeadRepository(session, failing).update(lead_id, {"status": "contacted"})

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_err
        assert result.error.severity is Severity.FATAL
        assert result.error.kind is AuditErrorKind.PERSIST

        lead = await _load(session_factory, lead_id)
        assert lead.status == "new"
        assert lead.audit["version"] == 1
        assert [r.operation for r in await store.history("Lead", lead_id)] == [Operation.CREATE]

    @pytest.mark.asyncio
    async def test_repository_raises_audit_abort(self, coordinator, orchestrator, session_factory, snapshot_cache):
        lead_id = await _create_lead(coordinator, orchestrator)
        failing = _orchestrator(session_factory, snapshot_cache, FailingChangeRecordStore(session_factory))
        raised = []

        async def operation(session):
            try:
                await LeadRepository(session, failing).update(lead_id, {"status": "lost"})
            except AuditAbort as e:
                raised.append(e)
                raise

        await coordinator.with_transaction(ACTOR, operation)

        assert len(raised) == 1
        assert raised[0].error.is_fatal

    @pytest.mark.asyncio
    async def test_fatal_mark_aborts_even_if_operation_swallows(
        self, coordinator, orchestrator, session_factory, snapshot_cache
    ):
        lead_id = await _create_lead(coordinator, orchestrator)
        failing = _orchestrator(session_factory, snapshot_cache, FailingChangeRecordStore(session_factory))

        async def operation(session):
            try:
                await LeadRepository(session, failing).update(lead_id, {"status": "lost"})
            except AuditAbort:
                pass
            return "swallowed"

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_err
        assert (await _load(session_factory, lead_id)).status == "new"

    @pytest.mark.asyncio
    async def test_operation_error_rolls_back_create(self, coordinator, orchestrator, session_factory, store):
        created = []

        async def operation(session):
            lead = await LeadRepository(session, orchestrator).create({"full_name": "Rui"})
            created.append(lead.id)
            raise ValueError("validation failed")

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_err
        assert result.error.kind is AuditErrorKind.OPERATION
        assert result.error.is_fatal
        assert await _load(session_factory, created[0]) is None
        assert await store.history("Lead", created[0]) == []

    @pytest.mark.asyncio
    async def test_context_is_bound_during_operation_only(self, coordinator):
        seen = []

        async def operation(session):
            ctx = current_mutation_context()
            seen.append((ctx.session is session, ctx.actor_id))

        await coordinator.with_transaction(ACTOR, operation)

        assert seen == [(True, "u1")]
        assert current_mutation_context() is None


class TestTransactionContextManager:
    """Tests for the raising context-manager form."""

    @pytest.mark.asyncio
    async def test_commits(self, coordinator, orchestrator, session_factory):
        lead_id = await _create_lead(coordinator, orchestrator)

        async with coordinator.transaction(ACTOR) as session:
            await LeadRepository(session, orchestrator).update(lead_id, {"priority": "high"})

        assert (await _load(session_factory, lead_id)).priority == "high"

    @pytest.mark.asyncio
    async def test_raises_fatal_error(self, coordinator, orchestrator, session_factory, snapshot_cache):
        lead_id = await _create_lead(coordinator, orchestrator)
        failing = _orchestrator(session_factory, snapshot_cache, FailingChangeRecordStore(session_factory))

        with pytest.raises(AuditError) as exc_info:
            async with coordinator.transaction(ACTOR) as session:
                await LeadRepository(session, failing).update(lead_id, {"priority": "high"})

        assert exc_info.value.kind is AuditErrorKind.PERSIST
        assert (await _load(session_factory, lead_id)).priority == "medium"

    @pytest.mark.asyncio
    async def test_binds_logging_context(self, coordinator):
        async with coordinator.transaction(ACTOR):
            assert actor_id_var.get() == "u1"
            assert tracking_session_var.get() == current_mutation_context().session_id

        assert actor_id_var.get() is None
        assert tracking_session_var.get() is None


class TestChangeLogModel:
    """Tests for ChangeLog rows."""

    @pytest.mark.asyncio
    async def test_change_logs_are_immutable(self, coordinator, orchestrator, session_factory):
        lead_id = await _create_lead(coordinator, orchestrator)

        async with session_factory() as session:
            row = (await session.execute(
                select(ChangeLog).where(ChangeLog.entity_id == lead_id)
            )).scalars().one()
            row.changed_by = "someone-else"
            with pytest.raises(ValueError):
                await session.flush()

    @pytest.mark.asyncio
    async def test_save_without_session_commits(self, store):
        record = ChangeRecord(entity_id="lead-9", entity_type="Lead",
                              operation=Operation.CREATE, changed_by="u9")

        await store.save(record.with_changed_at(datetime(2026, 1, 1)))

        (saved,) = await store.history("Lead", "lead-9")
        assert saved.record_id == record.record_id
        assert saved.changed_by == "u9"


class TestRolledBackOutput:
    """Nothing recorded inside a rolled-back transaction outlives it."""

    @pytest.fixture
    def staging(self, snapshot_cache, memory_store, loader):
        return HookOrchestrator(
            snapshot_cache, AuditRecorder(memory_store), loader, tracked_fields={"Lead": ["status"]}
        )

    @pytest.mark.asyncio
    async def test_staged_records_are_dropped(self, coordinator, staging, memory_store):
        session_ids = []

        async def operation(session):
            session_ids.append(current_mutation_context().session_id)
            result = await staging.log_change(
                StateEntity("Lead", "lead-1", {"id": "lead-1", "status": "new"}), Operation.CREATE
            )
            assert result.is_ok
            assert len(memory_store.staged(session_ids[0])) == 1
            raise RuntimeError("rejected")

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_err
        assert memory_store.staged(session_ids[0]) == []
        assert memory_store.records == []

    @pytest.mark.asyncio
    async def test_staged_records_are_published_on_commit(self, coordinator, staging, memory_store):
        async def operation(session):
            await staging.log_change(
                StateEntity("Lead", "lead-1", {"id": "lead-1", "status": "new"}), Operation.CREATE
            )

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_ok
        assert [r.operation for r in memory_store.records] == [Operation.CREATE]

    @pytest.mark.asyncio
    async def test_no_audit_line_for_rolled_back_create(self, coordinator, orchestrator, store, caplog):
        created = []

        async def operation(session):
            lead = await LeadRepository(session, orchestrator).create({"full_name": "Rui"})
            created.append(lead.id)
            raise RuntimeError("rejected")

        with caplog.at_level(logging.INFO, logger="audit.tracking.recorder"):
            result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_err
        assert await store.history("Lead", created[0]) == []
        assert "AUDIT:" not in caplog.text

    @pytest.mark.asyncio
    async def test_audit_line_logged_after_commit(self, coordinator, orchestrator, caplog):
        with caplog.at_level(logging.INFO, logger="audit.tracking.recorder"):
            lead_id = await _create_lead(coordinator, orchestrator)

        assert f"AUDIT: CREATE | Lead:{lead_id} | user=u1" in caplog.text


class TestSoftDeleteFlag:
    """The soft-delete flag key follows the Lead registration."""

    @pytest.mark.asyncio
    async def test_configured_flag_key(self, coordinator, session_factory, snapshot_cache, store):
        archiving = _orchestrator(session_factory, snapshot_cache, store)
        archiving.enable_tracking("Lead", DEFAULT_TRACKED_FIELDS["Lead"], soft_delete_field="audit.archived")
        lead_id = await _create_lead(coordinator, archiving)

        async def operation(session):
            repo = LeadRepository(session, archiving)
            await repo.soft_delete(lead_id)
            return await repo.get(lead_id)

        result = await coordinator.with_transaction(ACTOR, operation)

        assert result.is_ok
        assert result.value is None
        lead = await _load(session_factory, lead_id)
        assert lead.audit["archived"] is True
        assert "is_deleted" not in lead.audit
        assert len(await store.query(entity_id=lead_id, operation=Operation.SOFT_DELETE)) == 1

    def test_flag_outside_audit_is_rejected(self, snapshot_cache, memory_store):
        orchestrator = _orchestrator(None, snapshot_cache, memory_store)
        orchestrator.enable_tracking("Lead", ["status"], soft_delete_field="archived")

        with pytest.raises(ValueError):
            LeadRepository(MagicMock(), orchestrator)
