"""
Test suite for period rollover
"""

from datetime import date, datetime, timezone
from unittest.mock import patch

import pytest

from filing_workflow.audit import AuditEventType, AuditTrail
from filing_workflow.clients import ClientManager
from filing_workflow.engine import WorkflowEngine
from filing_workflow.exceptions import ConcurrencyConflict, RolloverFailure, ValidationError
from filing_workflow.registry_client import MockRegistryClient, RegistrySnapshot
from filing_workflow.storage import InMemoryStorage
from filing_workflow.store import WORKFLOWS_TABLE, WorkflowStore
from filing_workflow.workflows import Actor


NOW = datetime(2025, 10, 3, 15, 30, tzinfo=timezone.utc)
STAFF = Actor("u1", "Jo Bloggs")


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def registry():
    return MockRegistryClient()


@pytest.fixture
def store(storage):
    return WorkflowStore(storage)


@pytest.fixture
def engine(store, registry, audit_trail):
    return WorkflowEngine(store, registry, audit_trail, clock=lambda: NOW)


@pytest.fixture
def client_manager(store, audit_trail):
    return ClientManager(store, audit_trail)


@pytest.fixture
def client(client_manager):
    return client_manager.create_client(
        "Acme Widgets Ltd",
        company_number="01234567",
        year_end=date(2024, 12, 31),
        accounts_due=date(2025, 9, 30),
        confirmation_due=date(2025, 3, 14),
        vat_quarter_group="3_6_9_12",
        ltd_assigned_user_id="u1",
        vat_assigned_user_id="u5",
    )


@pytest.fixture
def filed_workflow(engine, client):
    """Ltd workflow sitting at the Companies House filing stage"""
    return engine.start_workflow(client.id, "LTD", actor=STAFF, stage="FILED_TO_COMPANIES_HOUSE")


@pytest.fixture
def snapshot():
    return RegistrySnapshot(
        company_number="01234567",
        year_end=date(2025, 12, 31),
        accounts_due=date(2026, 9, 30),
        accounting_reference_date=(31, 12),
        confirmation_due=date(2026, 3, 14),
    )


class TestLtdRollover:

    def test_closes_and_opens_next_period(self, engine, registry, store, client, filed_workflow, snapshot):
        registry.set_snapshot(snapshot)

        result = engine.perform_rollover(filed_workflow.id, STAFF)

        closed = store.load_workflow(filed_workflow.id)
        assert closed.is_completed
        assert closed.current_stage == "FILED_TO_HMRC"
        assert closed.completed_at == NOW
        assert closed.milestones["FILED_TO_HMRC"].by_user_id == "u1"

        new = store.load_workflow(result.new_workflow.id)
        assert new.period_start == date(2025, 1, 1)
        assert new.period_end == date(2025, 12, 31)
        assert new.current_stage == "WAITING_FOR_YEAR_END"
        assert not new.is_completed
        assert list(new.milestones) == ["WAITING_FOR_YEAR_END"]
        assert new.accounts_due == date(2026, 9, 30)
        assert new.corporation_tax_due == date(2026, 12, 31)
        assert new.confirmation_due == date(2026, 3, 14)
        assert new.assigned_user_id == "u1"

    def test_updates_client_cache(self, engine, registry, store, client, filed_workflow, snapshot):
        registry.set_snapshot(snapshot)

        result = engine.perform_rollover(filed_workflow.id, STAFF)

        updated = store.load_client(client.id)
        assert updated.year_end == date(2025, 12, 31)
        assert updated.accounts_due == date(2026, 9, 30)
        assert updated.corporation_tax_due == date(2026, 12, 31)
        assert updated.accounting_reference_date == (31, 12)
        assert updated.registry_refreshed_at == NOW
        assert updated.version == 2
        assert result.updated_deadlines["year_end"] == "2025-12-31"

    def test_writes_history_and_audit(self, engine, registry, client, filed_workflow, snapshot, audit_trail):
        registry.set_snapshot(snapshot)

        result = engine.perform_rollover(filed_workflow.id, STAFF)

        closing = engine.get_history(filed_workflow.id)[-1]
        assert (closing.from_stage, closing.to_stage) == ("FILED_TO_COMPANIES_HOUSE", "FILED_TO_HMRC")
        opening = engine.get_history(result.new_workflow.id)
        assert [(h.from_stage, h.to_stage) for h in opening] == [(None, "WAITING_FOR_YEAR_END")]

        event = audit_trail.get_events_by_type(AuditEventType.ROLLOVER_COMPLETED)[-1]
        assert event.entity_id == filed_workflow.id
        assert event.metadata["successor_workflow_id"] == result.new_workflow.id
        assert audit_trail.verify_integrity()["valid"]

    def test_registry_year_end_defines_short_period(self, engine, registry, store, filed_workflow):
        # Company shortened its accounting period
        registry.set_snapshot(RegistrySnapshot(
            company_number="01234567",
            year_end=date(2025, 6, 30),
            accounts_due=date(2025, 9, 30),
        ))

        result = engine.perform_rollover(filed_workflow.id, STAFF)

        new = store.load_workflow(result.new_workflow.id)
        assert new.period_end == date(2025, 6, 30)
        assert new.accounts_due == date(2025, 9, 30)

    def test_snapshot_without_year_end_uses_next_year(self, engine, registry, store, filed_workflow):
        registry.set_snapshot(RegistrySnapshot(company_number="01234567"))

        result = engine.perform_rollover(filed_workflow.id, STAFF)

        new = store.load_workflow(result.new_workflow.id)
        assert new.period_end == date(2025, 12, 31)
        assert new.accounts_due == date(2026, 9, 30)
        assert new.confirmation_due == date(2025, 3, 14)

    def test_no_company_number_skips_registry(self, engine, registry, store, client_manager):
        client = client_manager.create_client("No Number Ltd", year_end=date(2025, 3, 31))
        record = engine.start_workflow(client.id, "LTD", stage="FILED_TO_COMPANIES_HOUSE")

        result = engine.perform_rollover(record.id, STAFF)

        assert registry.calls == 0
        assert result.snapshot is None
        assert result.new_workflow.period_end == date(2026, 3, 31)
        assert store.load_client(client.id).registry_refreshed_at is None


class TestRolloverFailures:

    def test_registry_failure_leaves_everything_unchanged(self, engine, registry, storage, store, client,
                                                          filed_workflow):
        registry.fail_with("01234567")

        with pytest.raises(RolloverFailure) as exc_info:
            engine.perform_rollover(filed_workflow.id, STAFF)

        assert exc_info.value.step == 2
        assert exc_info.value.retryable
        record = store.load_workflow(filed_workflow.id)
        assert record.current_stage == "FILED_TO_COMPANIES_HOUSE"
        assert not record.is_completed
        assert record.version == 1
        assert storage.count(WORKFLOWS_TABLE) == 1
        assert store.load_client(client.id).version == 1

    def test_stale_registry_year_end(self, engine, registry, storage, filed_workflow):
        registry.set_snapshot(RegistrySnapshot(company_number="01234567", year_end=date(2024, 12, 31)))

        with pytest.raises(RolloverFailure) as exc_info:
            engine.perform_rollover(filed_workflow.id, STAFF)

        assert exc_info.value.step == 3
        assert storage.count(WORKFLOWS_TABLE) == 1

    def test_commit_failure_rolls_back(self, engine, registry, storage, store, client, filed_workflow, snapshot):
        registry.set_snapshot(snapshot)

        with patch.object(store, "_apply_client_update", side_effect=RuntimeError("disk full")):
            with pytest.raises(RolloverFailure) as exc_info:
                engine.perform_rollover(filed_workflow.id, STAFF)

        assert exc_info.value.step == 7
        assert storage.count(WORKFLOWS_TABLE) == 1
        assert store.load_workflow(filed_workflow.id).current_stage == "FILED_TO_COMPANIES_HOUSE"
        assert store.load_history(filed_workflow.id)[-1].to_stage == "FILED_TO_COMPANIES_HOUSE"

    def test_completed_workflow_rejected(self, engine, registry, filed_workflow, snapshot):
        registry.set_snapshot(snapshot)
        engine.perform_rollover(filed_workflow.id, STAFF)

        with pytest.raises(ValidationError):
            engine.perform_rollover(filed_workflow.id, STAFF)

    def test_ltd_must_be_filed_at_companies_house(self, engine, registry, storage, store, client):
        record = engine.start_workflow(client.id, "LTD", actor=STAFF, stage="WORK_IN_PROGRESS")

        with pytest.raises(ValidationError):
            engine.perform_rollover(record.id, STAFF)

        assert registry.calls == 0
        assert storage.count(WORKFLOWS_TABLE) == 1
        assert not store.load_workflow(record.id).is_completed

    def test_reclosing_reopened_workflow_reuses_successor(self, engine, registry, storage, store, client,
                                                          filed_workflow, snapshot, audit_trail):
        registry.set_snapshot(snapshot)
        first = engine.perform_rollover(filed_workflow.id, STAFF)
        engine.reopen_workflow(filed_workflow.id, STAFF)

        second = engine.perform_rollover(filed_workflow.id, STAFF)

        assert not second.successor_created
        assert second.new_workflow.id == first.new_workflow.id
        assert second.snapshot is None
        assert store.load_workflow(filed_workflow.id).is_completed
        assert storage.count(WORKFLOWS_TABLE) == 2
        # Client cache is only written by the first rollover
        assert store.load_client(client.id).version == 2
        event = audit_trail.get_events_by_type(AuditEventType.ROLLOVER_COMPLETED)[-1]
        assert event.metadata["successor_created"] is False

    def test_store_refusal_is_not_retryable(self, engine, registry, store, filed_workflow, snapshot):
        registry.set_snapshot(snapshot)

        with patch.object(store, "successor_of", return_value=None):
            with patch.object(store, "_apply_workflow_create",
                              side_effect=ValidationError("Client already has an open LTD workflow")):
                with pytest.raises(ValidationError) as exc_info:
                    engine.perform_rollover(filed_workflow.id, STAFF)

        assert not isinstance(exc_info.value, RolloverFailure)
        assert not store.load_workflow(filed_workflow.id).is_completed

    def test_stale_base_state(self, engine, registry, filed_workflow, snapshot):
        registry.set_snapshot(snapshot)
        stale = dict(filed_workflow.base_state, version=0)

        with pytest.raises(ConcurrencyConflict):
            engine.rollover.perform_rollover(filed_workflow.id, STAFF, expected=stale)


class TestVatRollover:

    def test_opens_next_quarter(self, engine, store, client):
        record = engine.start_workflow(client.id, "VAT", period_end=date(2025, 9, 30), stage="CLIENT_APPROVED")
        assert (record.period_start, record.period_end) == (date(2025, 7, 1), date(2025, 9, 30))

        result = engine.perform_rollover(record.id, STAFF)

        new = store.load_workflow(result.new_workflow.id)
        assert new.period_start == date(2025, 10, 1)
        assert new.period_end == date(2025, 12, 31)
        assert new.filing_due == date(2026, 1, 31)
        assert new.current_stage == "CLIENT_BOOKKEEPING"
        assert new.assigned_user_id == "u5"
        assert store.load_workflow(record.id).current_stage == "FILED_TO_HMRC"
        # Ltd deadline cache is untouched
        assert store.load_client(client.id).version == 1
        assert result.updated_deadlines["filing_due"] == "2026-01-31"
