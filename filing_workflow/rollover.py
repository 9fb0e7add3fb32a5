"""
Rollover Engine Module

Closes a completed filing period and opens the next one. Everything the
rollover writes (the closed record, the successor, the client's deadline
cache and the history rows) goes into one WorkflowTransaction, so either
all of it lands or none of it does.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .clients import ClientRecord
from .dates import (
    ACCOUNTS_DUE_MONTHS, CORPORATION_TAX_DUE_MONTHS, accounts_due, corporation_tax_due,
    next_vat_quarter, next_year_end,
)
from .exceptions import (
    ConcurrencyConflict, ExternalLookupFailure, FilingWorkflowError, RolloverFailure,
    ValidationError,
)
from .logging_config import get_logger, log_action
from .registry_client import RegistryClient, RegistrySnapshot
from .stages import WorkflowType, catalog
from .store import WorkflowStore, WorkflowTransaction
from .workflows import Actor, SYSTEM_ACTOR, WorkflowRecord, history_entry

logger = get_logger("filing.rollover")


@dataclass
class RolloverResult:
    """Both records and the refreshed deadlines, for display after a rollover"""
    closed_workflow: WorkflowRecord
    new_workflow: WorkflowRecord
    updated_deadlines: Dict[str, Any]
    snapshot: Optional[RegistrySnapshot] = None
    successor_created: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "closed_workflow": self.closed_workflow.to_dict(),
            "new_workflow": self.new_workflow.to_dict(),
            "updated_deadlines": self.updated_deadlines,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "successor_created": self.successor_created,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RolloverEngine:
    """Atomic close-current/open-next for Ltd accounts periods and VAT quarters"""

    def __init__(self, store: WorkflowStore, registry: RegistryClient, audit: AuditTrail,
                 clock: Optional[Callable[[], datetime]] = None,
                 accounts_due_months: int = ACCOUNTS_DUE_MONTHS,
                 corporation_tax_due_months: int = CORPORATION_TAX_DUE_MONTHS):
        self.store = store
        self.registry = registry
        self.audit = audit
        self.clock = clock or _utcnow
        self.accounts_due_months = accounts_due_months
        self.corporation_tax_due_months = corporation_tax_due_months

    def perform_rollover(self, workflow_id: str, actor: Actor = SYSTEM_ACTOR,
                         expected: Optional[Dict[str, Any]] = None,
                         notes: Optional[str] = None) -> RolloverResult:
        """
        Close the workflow at its terminal stage and open the next period.

        A record re-closed after a reopen already has its successor, so it
        is only closed; the next period is never opened twice.

        Args:
            workflow_id: Workflow to close
            actor: Who triggered the rollover
            expected: Base state the caller read (current_stage, is_completed,
                version); defaults to the state loaded here
            notes: Optional note for the history entry

        Returns:
            RolloverResult

        Raises:
            NotFoundError: unknown workflow
            ValidationError: workflow already completed, an Ltd record not at
                the Companies House filing stage, or a write the store refuses
            ConcurrencyConflict: workflow changed since it was read
            RolloverFailure: a step failed; nothing was written
        """
        record = self.store.load_workflow(workflow_id)
        if record.is_completed:
            raise ValidationError(f"Workflow {workflow_id} is already completed")
        self.check_ready_to_close(record)

        base = dict(expected) if expected else record.base_state
        actual = {key: record.base_state[key] for key in base}
        if actual != base:
            raise ConcurrencyConflict(workflow_id, base, actual)

        now = self.clock()

        # Step 1: close the current record
        try:
            closed = self._close(record, now, actor)
        except FilingWorkflowError as e:
            raise RolloverFailure(workflow_id, 1, e, retryable=False) from e

        client = self.store.load_client(record.client_id)
        existing = self.store.successor_of(record)

        snapshot = None
        if existing is not None:
            logger.info(f"Workflow {workflow_id} already has successor {existing.id}; closing only")
            successor, updated_client = existing, None
        elif record.workflow_type == WorkflowType.VAT:
            successor, updated_client = self._next_vat_quarter(record, client, now, actor)
        else:
            snapshot = self._fetch_snapshot(record, client)
            successor, updated_client = self._next_accounts_period(record, client, snapshot, now, actor)

        # Step 7: commit everything as one unit
        txn = WorkflowTransaction(f"rollover {workflow_id}")
        txn.update_workflow(closed, base)
        txn.add_history(history_entry(record.id, record.current_stage, closed.current_stage,
                                      now, actor, notes))
        if existing is None:
            txn.create_workflow(successor)
            txn.add_history(history_entry(successor.id, None, successor.current_stage, now, actor,
                                          f"Opened after {record.id}"))
        if updated_client is not None:
            txn.update_client(updated_client, expected_version=client.version)

        try:
            self.store.save_workflow_transaction(txn)
        except (ConcurrencyConflict, ValidationError):
            raise
        except Exception as e:
            logger.error(f"Rollover of {workflow_id} failed to commit: {e}")
            raise RolloverFailure(workflow_id, 7, e, retryable=True) from e

        if updated_client is not None:
            updated_deadlines = updated_client.deadlines()
        else:
            updated_deadlines = {
                "period_start": successor.period_start.isoformat(),
                "period_end": successor.period_end.isoformat(),
                "filing_due": successor.filing_due.isoformat() if successor.filing_due else None,
            }

        self.audit.record_activity(
            AuditEventType.ROLLOVER_COMPLETED, actor.user_id, now,
            {
                "workflow_id": closed.id,
                "successor_workflow_id": successor.id,
                "client_id": record.client_id,
                "workflow_type": record.workflow_type.value,
                "new_period_start": successor.period_start,
                "new_period_end": successor.period_end,
                "updated_deadlines": updated_deadlines,
                "registry_checked": snapshot is not None,
                "successor_created": existing is None,
            }
        )
        log_action(
            logger, "info", f"Rolled over {record.workflow_type.value} workflow {closed.id} -> {successor.id}",
            user_id=actor.user_id, action="perform_rollover", resource=f"workflow:{closed.id}",
            extra={"new_period_start": successor.period_start.isoformat(),
                   "new_period_end": successor.period_end.isoformat(),
                   "registry_checked": snapshot is not None,
                   "successor_created": existing is None}
        )
        return RolloverResult(closed, successor, updated_deadlines, snapshot,
                              successor_created=existing is None)

    def check_ready_to_close(self, record: WorkflowRecord) -> None:
        """Ltd records close only from the Companies House filing stage, after its check has run"""
        filing_stage = catalog.registry_filing_stage(record.workflow_type)
        if filing_stage is not None and record.current_stage != filing_stage.key:
            raise ValidationError(
                f"Workflow {record.id} is at {record.current_stage}; it must reach "
                f"{filing_stage.key} before it can be closed"
            )

    def _close(self, record: WorkflowRecord, now: datetime, actor: Actor) -> WorkflowRecord:
        terminal = catalog.terminal_stage(record.workflow_type).key
        closed = replace(record, current_stage=terminal, is_completed=True, completed_at=now)
        closed.record_milestone(terminal, now, actor)
        return closed

    def _fetch_snapshot(self, record: WorkflowRecord, client: ClientRecord) -> Optional[RegistrySnapshot]:
        # Step 2
        if not client.company_number:
            logger.warning(
                f"Client {client.id} has no company number; rolling {record.id} over without a registry check"
            )
            return None
        try:
            return self.registry.fetch_company_snapshot(client.company_number)
        except ExternalLookupFailure as e:
            logger.error(f"Registry lookup failed during rollover of {record.id}: {e}")
            raise RolloverFailure(record.id, 2, e, retryable=True) from e

    def _next_accounts_period(self, record: WorkflowRecord, client: ClientRecord,
                              snapshot: Optional[RegistrySnapshot], now: datetime, actor: Actor):
        # Step 3: successor period
        new_start = record.period_end + timedelta(days=1)
        if snapshot is not None and snapshot.year_end is not None:
            new_end = snapshot.year_end
        else:
            new_end = next_year_end(record.period_end)
        if new_end <= record.period_end:
            cause = ValidationError(
                f"Registry year end {new_end} does not follow the closing period end {record.period_end}"
            )
            raise RolloverFailure(record.id, 3, cause, retryable=True)

        # Step 4: successor deadlines
        try:
            deadlines = self._derive_deadlines(record, client, snapshot, new_end)
        except (ValueError, FilingWorkflowError) as e:
            raise RolloverFailure(record.id, 4, e, retryable=False) from e

        # Step 5: successor record
        successor = self._new_record(
            record, new_start, new_end, now, actor,
            assignee=record.assigned_user_id or client.ltd_assigned_user_id,
            accounts_due=deadlines["accounts_due"],
            corporation_tax_due=deadlines["corporation_tax_due"],
            confirmation_due=deadlines["confirmation_due"],
        )

        # Step 6: client deadline cache
        updated_client = replace(
            client,
            year_end=new_end,
            accounts_due=deadlines["accounts_due"],
            corporation_tax_due=deadlines["corporation_tax_due"],
            confirmation_due=deadlines["confirmation_due"],
            accounting_reference_date=(
                snapshot.accounting_reference_date
                if snapshot is not None and snapshot.accounting_reference_date
                else client.accounting_reference_date
            ),
            registry_refreshed_at=now if snapshot is not None else client.registry_refreshed_at,
        )
        return successor, updated_client

    def _derive_deadlines(self, record: WorkflowRecord, client: ClientRecord,
                          snapshot: Optional[RegistrySnapshot], new_end: date) -> Dict[str, Optional[date]]:
        ard = client.accounting_reference_date
        if snapshot is not None and snapshot.accounting_reference_date:
            ard = snapshot.accounting_reference_date

        # The registry's accounts due only applies when it describes the same period
        if snapshot is not None and snapshot.accounts_due and snapshot.year_end == new_end:
            accounts = snapshot.accounts_due
        else:
            accounts = accounts_due(new_end, self.accounts_due_months)

        if snapshot is not None and snapshot.confirmation_due:
            confirmation = snapshot.confirmation_due
        else:
            confirmation = record.confirmation_due or client.confirmation_due

        return {
            "accounts_due": accounts,
            "corporation_tax_due": corporation_tax_due(new_end, ard, self.corporation_tax_due_months),
            "confirmation_due": confirmation,
        }

    def _next_vat_quarter(self, record: WorkflowRecord, client: ClientRecord,
                          now: datetime, actor: Actor):
        quarter_group = record.quarter_group or client.vat_quarter_group
        if not quarter_group:
            cause = ValidationError(f"Client {client.id} has no VAT quarter group")
            raise RolloverFailure(record.id, 3, cause, retryable=False)
        try:
            quarter = next_vat_quarter(quarter_group, record.period_end)
        except ValidationError as e:
            raise RolloverFailure(record.id, 3, e, retryable=False) from e

        successor = self._new_record(
            record, quarter.start, quarter.end, now, actor,
            assignee=record.assigned_user_id or client.vat_assigned_user_id,
            quarter_group=quarter_group,
            filing_due=quarter.filing_due,
        )
        # VAT quarters leave the client's Ltd deadline cache alone
        return successor, None

    def _new_record(self, record: WorkflowRecord, start: date, end: date, now: datetime,
                    actor: Actor, assignee: Optional[str], **deadlines) -> WorkflowRecord:
        initial = catalog.initial_stage(record.workflow_type).key
        successor = WorkflowRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=record.client_id,
            workflow_type=record.workflow_type,
            period_start=start,
            period_end=end,
            current_stage=initial,
            is_completed=False,
            assigned_user_id=assignee,
            **deadlines
        )
        successor.record_milestone(initial, now, actor)
        return successor
