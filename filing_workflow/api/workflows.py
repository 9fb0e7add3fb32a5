"""
Workflow endpoints
"""

from fastapi import APIRouter, Depends, status

from .schemas import (
    ApplyStageChangeRequest,
    ProposeStageChangeRequest,
    ReopenRequest,
    ReviewRequest,
    RolloverRequest,
    StartWorkflowRequest,
    ValidateTransitionRequest,
)
from .system import FilingSystem, get_filing_system
from ..engine import REASON_RECONCILIATION
from ..exceptions import ConcurrencyConflict, ConfirmationRequired
from ..stages import catalog
from ..transitions import validate_stage_transition


router = APIRouter()


@router.post("/validate-transition")
async def validate_transition(request: ValidateTransitionRequest):
    """Classify a stage change without touching any workflow"""
    result = validate_stage_transition(request.current_stage, request.target_stage, request.workflow_type)
    return result.to_dict()


@router.get("/stages/{workflow_type}")
async def list_stages(workflow_type: str):
    """Stage catalog for a workflow type"""
    return {"stages": [stage.to_dict() for stage in catalog.stages_for(workflow_type)]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_workflow(
    request: StartWorkflowRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Open a workflow for a client"""
    record = system.engine.start_workflow(
        request.client_id,
        request.workflow_type,
        actor=request.to_actor(),
        period_end=request.period_end,
        period_start=request.period_start,
        stage=request.stage,
        assigned_user_id=request.assigned_user_id,
    )
    return {"workflow": record.to_dict(), "message": "Workflow created successfully"}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    system: FilingSystem = Depends(get_filing_system)
):
    """Get workflow by ID, with its progress through the catalog"""
    record = system.engine.get_workflow(workflow_id)
    return {
        "workflow": record.to_dict(),
        "progress": catalog.progress(record.current_stage, record.workflow_type),
    }


@router.get("/{workflow_id}/history")
async def get_workflow_history(
    workflow_id: str,
    system: FilingSystem = Depends(get_filing_system)
):
    """Stage changes on a workflow, oldest first"""
    entries = system.engine.get_history(workflow_id)
    return {"history": [entry.to_dict() for entry in entries]}


# Registry lookups block, so these run as plain functions in the threadpool

@router.post("/{workflow_id}/stage/propose")
def propose_stage_change(
    workflow_id: str,
    request: ProposeStageChangeRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Work out whether a stage change needs confirmation"""
    proposal = system.engine.propose_stage_change(workflow_id, request.target_stage, request.to_actor())
    return proposal.to_dict()


@router.post("/{workflow_id}/stage/apply")
def apply_stage_change(
    workflow_id: str,
    request: ApplyStageChangeRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Write a stage change against the base state the caller proposed from"""
    actor = request.to_actor()
    expected = {
        "current_stage": request.base_stage,
        "is_completed": request.base_completed,
        "version": request.base_version,
    }
    current = system.engine.get_workflow(workflow_id)
    if current.base_state != expected:
        raise ConcurrencyConflict(workflow_id, expected, current.base_state)

    proposal = system.engine.propose_stage_change(workflow_id, request.target_stage, actor)
    if proposal.base_state != expected:
        raise ConcurrencyConflict(workflow_id, expected, proposal.base_state)

    # The registry is asked again here; an acknowledgement only covers the outcome it was given for
    if (request.confirmed and not proposal.blocked and REASON_RECONCILIATION in proposal.reasons
            and proposal.reconciliation.outcome.value != request.reconciliation_outcome):
        raise ConfirmationRequired(
            proposal.reasons,
            f"Companies House check now reports {proposal.reconciliation.outcome.value}: "
            f"{proposal.reconciliation.message}",
        )

    outcome = system.engine.apply_stage_change(
        proposal, actor, confirmed=request.confirmed, notes=request.notes
    )
    return outcome.to_dict()


@router.post("/{workflow_id}/review")
async def review_workflow(
    workflow_id: str,
    request: ReviewRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Approve a manager/partner review or send the work back"""
    outcome = system.engine.review_workflow(
        workflow_id, request.to_actor(), approve=request.approve, comments=request.comments
    )
    return outcome.to_dict()


@router.post("/{workflow_id}/rollover")
def perform_rollover(
    workflow_id: str,
    request: RolloverRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Close the workflow and open the next period"""
    result = system.engine.perform_rollover(workflow_id, request.to_actor())
    return result.to_dict()


@router.post("/{workflow_id}/reopen")
async def reopen_workflow(
    workflow_id: str,
    request: ReopenRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Undo completion of a workflow"""
    record = system.engine.reopen_workflow(workflow_id, request.to_actor(), notes=request.notes)
    successor = system.store.successor_of(record)
    return {
        "workflow": record.to_dict(),
        "successor_workflow_id": successor.id if successor else None,
    }
