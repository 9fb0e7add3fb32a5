"""
Workflow Engine Module

Front door for filing workflow operations. Stage changes use a two-phase
protocol: propose_stage_change works out whether the move needs an explicit
confirmation (skipped stages, backward move, reconciliation advisory) and
apply_stage_change writes it once the caller has confirmed. The base state a
proposal was computed from is re-checked at write time.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .clients import ClientRecord
from .dates import (
    ACCOUNTS_DUE_MONTHS, CORPORATION_TAX_DUE_MONTHS, accounts_due, add_months,
    corporation_tax_due, vat_quarter_for,
)
from .exceptions import (
    ConcurrencyConflict, ConfirmationRequired, ExternalLookupFailure, ReconciliationBlocked,
    ValidationError,
)
from .logging_config import get_logger, log_action
from .reconciliation import (
    DeadlineDates, ReconciliationResult, classify_reconciliation, lookup_failed,
)
from .registry_client import RegistryClient, RegistrySnapshot
from .rollover import RolloverEngine, RolloverResult
from .stages import REVIEW_REJECT_STAGE, WorkflowType, catalog, parse_workflow_type
from .store import WorkflowStore, WorkflowTransaction
from .transitions import TransitionKind, TransitionResult, validate_stage_transition
from .workflows import Actor, SYSTEM_ACTOR, WorkflowHistoryEntry, WorkflowRecord, history_entry

logger = get_logger("filing.engine")


# Reasons a proposal needs confirmation
REASON_SKIP = "SKIPS_STAGES"
REASON_BACKWARD = "BACKWARD_MOVE"
REASON_RECONCILIATION = "RECONCILIATION_ADVISORY"


@dataclass
class StageChangeProposal:
    """Everything the caller needs to decide whether to confirm a stage change"""
    workflow_id: str
    workflow_type: WorkflowType
    target_stage: str
    transition: TransitionResult
    base_stage: str
    base_completed: bool
    base_version: int
    reasons: List[str] = field(default_factory=list)
    reconciliation: Optional[ReconciliationResult] = None
    triggers_rollover: bool = False

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.reasons)

    @property
    def blocked(self) -> bool:
        return self.reconciliation is not None and not self.reconciliation.can_proceed

    @property
    def base_state(self) -> Dict[str, Any]:
        return {
            "current_stage": self.base_stage,
            "is_completed": self.base_completed,
            "version": self.base_version,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "workflow_type": self.workflow_type.value,
            "target_stage": self.target_stage,
            "requires_confirmation": self.requires_confirmation,
            "blocked": self.blocked,
            "reasons": list(self.reasons),
            "transition": self.transition.to_dict(),
            "reconciliation": self.reconciliation.to_dict() if self.reconciliation else None,
            "triggers_rollover": self.triggers_rollover,
            "base_stage": self.base_stage,
            "base_completed": self.base_completed,
            "base_version": self.base_version,
        }


@dataclass
class StageChangeOutcome:
    workflow: WorkflowRecord
    rollover: Optional[RolloverResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow": self.workflow.to_dict(),
            "rollover": self.rollover.to_dict() if self.rollover else None,
        }


@dataclass
class RefreshResult:
    """Outcome of a manual registry refresh; lookup failures are reported, not raised"""
    success: bool
    client: ClientRecord
    message: str
    snapshot: Optional[RegistrySnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "client": self.client.to_dict(),
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """Stage changes, rollover, reopen and registry refresh for filing workflows"""

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
        self.rollover = RolloverEngine(
            store, registry, audit, clock=self.clock,
            accounts_due_months=accounts_due_months,
            corporation_tax_due_months=corporation_tax_due_months,
        )

    # Workflow lifecycle

    def start_workflow(self, client_id: str, workflow_type, actor: Actor = SYSTEM_ACTOR,
                       period_end: Optional[date] = None, period_start: Optional[date] = None,
                       stage: Optional[str] = None,
                       assigned_user_id: Optional[str] = None) -> WorkflowRecord:
        """
        Open a workflow for a client.

        Ltd periods default to the year ending on the client's cached year
        end; VAT periods default to the quarter containing today.

        Raises:
            ValidationError: bad type or stage, missing year end or quarter
                group, or an open workflow of this type already exists
        """
        wf_type = parse_workflow_type(workflow_type)
        client = self.store.load_client(client_id)
        now = self.clock()
        stage_key = stage or catalog.initial_stage(wf_type).key
        validate_stage_transition(None, stage_key, wf_type)
        if stage_key == catalog.terminal_stage(wf_type).key:
            raise ValidationError(f"A workflow cannot start at {stage_key}")

        deadlines: Dict[str, Any] = {}
        if wf_type == WorkflowType.LTD:
            period_end = period_end or client.year_end
            if period_end is None:
                raise ValidationError(f"Client {client_id} has no year end; pass period_end")
            period_start = period_start or add_months(period_end, -12) + timedelta(days=1)
            if client.year_end == period_end and client.accounts_due:
                deadlines["accounts_due"] = client.accounts_due
            else:
                deadlines["accounts_due"] = accounts_due(period_end, self.accounts_due_months)
            if client.year_end == period_end and client.corporation_tax_due:
                deadlines["corporation_tax_due"] = client.corporation_tax_due
            else:
                deadlines["corporation_tax_due"] = corporation_tax_due(
                    period_end, client.accounting_reference_date, self.corporation_tax_due_months
                )
            deadlines["confirmation_due"] = client.confirmation_due
            assignee = assigned_user_id or client.ltd_assigned_user_id
        else:
            if not client.vat_quarter_group:
                raise ValidationError(f"Client {client_id} has no VAT quarter group")
            quarter = vat_quarter_for(client.vat_quarter_group, period_end or now.date())
            period_start, period_end = quarter.start, quarter.end
            deadlines["quarter_group"] = quarter.quarter_group
            deadlines["filing_due"] = quarter.filing_due
            assignee = assigned_user_id or client.vat_assigned_user_id

        if period_start > period_end:
            raise ValidationError(f"Period start {period_start} is after period end {period_end}")

        record = WorkflowRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            workflow_type=wf_type,
            period_start=period_start,
            period_end=period_end,
            current_stage=stage_key,
            assigned_user_id=assignee,
            **deadlines
        )
        record.record_milestone(stage_key, now, actor)

        txn = WorkflowTransaction(f"start {wf_type.value} workflow")
        txn.create_workflow(record)
        txn.add_history(history_entry(record.id, None, stage_key, now, actor, None))
        self.store.save_workflow_transaction(txn)

        self.audit.record_activity(
            AuditEventType.WORKFLOW_CREATED, actor.user_id, now,
            {"workflow_id": record.id, "client_id": client_id, "workflow_type": wf_type.value,
             "period_start": period_start, "period_end": period_end, "stage": stage_key}
        )
        logger.info(f"Started {wf_type.value} workflow {record.id} for client {client_id}")
        return record

    def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        return self.store.load_workflow(workflow_id)

    def get_history(self, workflow_id: str) -> List[WorkflowHistoryEntry]:
        self.store.load_workflow(workflow_id)
        return self.store.load_history(workflow_id)

    # Pure checks

    def validate_stage_transition(self, current_stage: Optional[str], target_stage: str,
                                  workflow_type) -> TransitionResult:
        return validate_stage_transition(current_stage, target_stage, workflow_type)

    def classify_reconciliation(self, tracked: DeadlineDates,
                                snapshot: DeadlineDates) -> ReconciliationResult:
        return classify_reconciliation(tracked, snapshot)

    # Two-phase stage change

    def propose_stage_change(self, workflow_id: str, target_stage: str,
                             actor: Actor = SYSTEM_ACTOR,
                             system_initiated: bool = False) -> StageChangeProposal:
        """
        Work out what a stage change would mean without writing it.

        Args:
            workflow_id: Workflow to move
            target_stage: Requested stage
            actor: Who is asking (recorded against the reconciliation decision)
            system_initiated: Allow system-only stages such as review sign-offs

        Returns:
            StageChangeProposal; pass it to apply_stage_change

        Raises:
            NotFoundError: unknown workflow
            ValidationError: unknown or system-only stage, completed workflow,
                or an Ltd close requested before the Companies House filing
        """
        record = self.store.load_workflow(workflow_id)
        if record.is_completed:
            raise ValidationError(f"Workflow {workflow_id} is completed; reopen it before changing stage")

        stage = catalog.get_stage(target_stage, record.workflow_type)
        if not stage.user_selectable and not system_initiated:
            raise ValidationError(f"{target_stage} is set automatically and cannot be selected")

        transition = validate_stage_transition(record.current_stage, target_stage, record.workflow_type)

        terminal = catalog.terminal_stage(record.workflow_type).key
        if target_stage == terminal:
            self.rollover.check_ready_to_close(record)

        reasons = []
        if transition.kind == TransitionKind.SKIP_FORWARD:
            reasons.append(REASON_SKIP)
        elif transition.kind == TransitionKind.BACKWARD:
            reasons.append(REASON_BACKWARD)

        reconciliation = None
        filing_stage = catalog.registry_filing_stage(record.workflow_type)
        if (filing_stage is not None and target_stage == filing_stage.key
                and transition.kind != TransitionKind.NO_CHANGE):
            reconciliation = self._reconcile(record, actor)
            if reconciliation.can_proceed and reconciliation.requires_acknowledgement:
                reasons.append(REASON_RECONCILIATION)

        return StageChangeProposal(
            workflow_id=record.id,
            workflow_type=record.workflow_type,
            target_stage=target_stage,
            transition=transition,
            base_stage=record.current_stage,
            base_completed=record.is_completed,
            base_version=record.version,
            reasons=reasons,
            reconciliation=reconciliation,
            triggers_rollover=target_stage == terminal,
        )

    def apply_stage_change(self, proposal: StageChangeProposal, actor: Actor = SYSTEM_ACTOR,
                           confirmed: bool = False, notes: Optional[str] = None) -> StageChangeOutcome:
        """
        Write a proposed stage change.

        Moving into the terminal stage runs the rollover instead of a plain
        stage write.

        Raises:
            ReconciliationBlocked: the registry does not confirm the filing
            ConfirmationRequired: the proposal needs confirmed=True
            ConcurrencyConflict: the workflow changed since the proposal
            RolloverFailure: the rollover failed; nothing was written
        """
        if proposal.blocked:
            raise ReconciliationBlocked(proposal.reconciliation)
        if proposal.requires_confirmation and not confirmed:
            raise ConfirmationRequired(proposal.reasons, proposal.transition.message
                                       if proposal.transition.requires_confirmation
                                       else proposal.reconciliation.message)

        if proposal.transition.kind == TransitionKind.NO_CHANGE:
            record = self.store.load_workflow(proposal.workflow_id)
            self._check_base(record, proposal)
            return StageChangeOutcome(record)

        if proposal.triggers_rollover:
            result = self.rollover.perform_rollover(
                proposal.workflow_id, actor, expected=proposal.base_state, notes=notes
            )
            self._record_stage_change(proposal, actor, confirmed, result.closed_workflow)
            return StageChangeOutcome(result.closed_workflow, result)

        now = self.clock()
        record = self.store.load_workflow(proposal.workflow_id)
        self._check_base(record, proposal)

        updated = replace(record, current_stage=proposal.target_stage, updated_at=now)
        updated.record_milestone(proposal.target_stage, now, actor)

        txn = WorkflowTransaction(f"stage change {proposal.workflow_id}")
        txn.update_workflow(updated, proposal.base_state)
        txn.add_history(history_entry(record.id, proposal.base_stage, proposal.target_stage,
                                      now, actor, notes))
        self.store.save_workflow_transaction(txn)

        self._record_stage_change(proposal, actor, confirmed, updated)
        return StageChangeOutcome(updated)

    def change_stage(self, workflow_id: str, target_stage: str, actor: Actor = SYSTEM_ACTOR,
                     confirmed: bool = False, notes: Optional[str] = None) -> StageChangeOutcome:
        """Propose and apply in one call"""
        proposal = self.propose_stage_change(workflow_id, target_stage, actor)
        return self.apply_stage_change(proposal, actor, confirmed=confirmed, notes=notes)

    def perform_rollover(self, workflow_id: str, actor: Actor = SYSTEM_ACTOR) -> RolloverResult:
        return self.rollover.perform_rollover(workflow_id, actor)

    def review_workflow(self, workflow_id: str, actor: Actor = SYSTEM_ACTOR, approve: bool = True,
                        comments: Optional[str] = None) -> StageChangeOutcome:
        """
        Record a manager or partner review decision.

        Approval moves the record onto the reviewed-by stage that follows its
        review stage. Rejection sends it back to work in progress.

        Raises:
            ValidationError: the workflow is not waiting for a review
            ConcurrencyConflict: the workflow changed while the decision was written
        """
        record = self.store.load_workflow(workflow_id)
        signoff = catalog.review_signoff_stage(record.current_stage, record.workflow_type)
        if signoff is None or record.is_completed:
            raise ValidationError(f"Workflow {workflow_id} is not awaiting review (at {record.current_stage})")

        target = signoff.key if approve else REVIEW_REJECT_STAGE
        reviewer = actor.user_name or actor.user_id or "system"
        note = f"Review {'approved' if approve else 'sent back for rework'} by {reviewer}"
        if comments:
            note = f"{note}: {comments}"

        proposal = self.propose_stage_change(workflow_id, target, actor, system_initiated=True)
        return self.apply_stage_change(proposal, actor, confirmed=True, notes=note)

    # Undo

    def reopen_workflow(self, workflow_id: str, actor: Actor = SYSTEM_ACTOR,
                        notes: Optional[str] = None) -> WorkflowRecord:
        """
        Undo completion: back to the penultimate stage, open again.

        A successor created by an earlier rollover is left in place; the
        reopen goes ahead and the overlap is logged and audited. Closing the
        record again reuses that successor.

        Raises:
            NotFoundError: unknown workflow
            ValidationError: workflow is not completed
            ConcurrencyConflict: workflow changed while reopening
        """
        record = self.store.load_workflow(workflow_id)
        if not record.is_completed:
            raise ValidationError(f"Workflow {workflow_id} is not completed")

        now = self.clock()
        penultimate = catalog.penultimate_stage(record.workflow_type).key
        successor = self.store.successor_of(record)

        note = f"Reopened by {actor.user_name or actor.user_id or 'system'} on {now.date().isoformat()}"
        if notes:
            note = f"{note}: {notes}"
        updated = replace(
            record, current_stage=penultimate, is_completed=False, completed_at=None,
            notes=record.notes + [note], updated_at=now,
        )

        txn = WorkflowTransaction(f"reopen {workflow_id}")
        txn.update_workflow(updated, record.base_state)
        txn.add_history(history_entry(record.id, record.current_stage, penultimate, now, actor, note))
        self.store.save_workflow_transaction(txn)

        if successor is not None:
            logger.warning(
                f"Reopened workflow {workflow_id} while successor {successor.id} exists; "
                f"client {record.client_id} now has two open {record.workflow_type.value} workflows"
            )

        self.audit.record_activity(
            AuditEventType.WORKFLOW_REOPENED, actor.user_id, now,
            {"workflow_id": workflow_id, "client_id": record.client_id,
             "from_stage": record.current_stage, "to_stage": penultimate, "note": note,
             "successor_workflow_id": successor.id if successor else None}
        )
        return updated

    # Registry refresh

    def refresh_client_deadlines(self, client_id: str, actor: Actor = SYSTEM_ACTOR) -> RefreshResult:
        """Pull fresh dates from the registry into the client's deadline cache.

        Lookup failures come back as success=False with the client unchanged.
        """
        client = self.store.load_client(client_id)
        if not client.company_number:
            return RefreshResult(False, client, "Client has no company number")

        try:
            snapshot = self.registry.fetch_company_snapshot(client.company_number)
        except ExternalLookupFailure as e:
            logger.warning(f"Registry refresh for client {client_id} failed: {e}")
            return RefreshResult(False, client, str(e))

        now = self.clock()
        year_end = snapshot.year_end or client.year_end
        ard = snapshot.accounting_reference_date or client.accounting_reference_date
        updated = replace(
            client,
            company_name=snapshot.company_name or client.company_name,
            year_end=year_end,
            accounts_due=snapshot.accounts_due or client.accounts_due,
            corporation_tax_due=(
                corporation_tax_due(year_end, ard, self.corporation_tax_due_months)
                if year_end else client.corporation_tax_due
            ),
            confirmation_due=snapshot.confirmation_due or client.confirmation_due,
            accounting_reference_date=ard,
            registry_refreshed_at=now,
        )
        self.store.save_client(updated, expected_version=client.version)

        self.audit.record_activity(
            AuditEventType.CLIENT_DEADLINES_REFRESHED, actor.user_id, now,
            {"entity_type": "client", "client_id": client_id,
             "before": client.deadlines(), "after": updated.deadlines()}
        )
        return RefreshResult(True, updated, "Deadlines refreshed from Companies House", snapshot)

    # Internals

    def _reconcile(self, record: WorkflowRecord, actor: Actor) -> ReconciliationResult:
        client = self.store.load_client(record.client_id)
        tracked = DeadlineDates(year_end=record.period_end,
                                accounts_due=record.accounts_due or client.accounts_due)

        if not client.company_number:
            result = lookup_failed(tracked, "client has no company number")
        else:
            try:
                snapshot = self.registry.fetch_company_snapshot(client.company_number)
                result = classify_reconciliation(tracked, snapshot.deadlines)
            except ExternalLookupFailure as e:
                logger.warning(f"Reconciliation lookup for workflow {record.id} failed: {e}")
                result = lookup_failed(tracked, e.message)

        self.audit.record_activity(
            AuditEventType.RECONCILIATION_DECIDED, actor.user_id, self.clock(),
            {"workflow_id": record.id, "client_id": record.client_id, **result.to_dict()}
        )
        return result

    @staticmethod
    def _check_base(record: WorkflowRecord, proposal: StageChangeProposal) -> None:
        if record.base_state != proposal.base_state:
            raise ConcurrencyConflict(record.id, proposal.base_state, record.base_state)

    def _record_stage_change(self, proposal: StageChangeProposal, actor: Actor,
                             confirmed: bool, record: WorkflowRecord) -> None:
        self.audit.record_activity(
            AuditEventType.STAGE_CHANGED, actor.user_id, self.clock(),
            {
                "workflow_id": record.id,
                "client_id": record.client_id,
                "from_stage": proposal.base_stage,
                "to_stage": proposal.target_stage,
                "kind": proposal.transition.kind.value,
                "skipped_stages": proposal.transition.skipped_stages,
                "confirmed_reasons": proposal.reasons if confirmed else [],
                "reconciliation": proposal.reconciliation.outcome.value if proposal.reconciliation else None,
            }
        )
        log_action(
            logger, "info", f"Workflow {record.id}: {proposal.base_stage} -> {proposal.target_stage}",
            user_id=actor.user_id, action="change_stage", resource=f"workflow:{record.id}",
            extra={"kind": proposal.transition.kind.value, "reasons": proposal.reasons}
        )
