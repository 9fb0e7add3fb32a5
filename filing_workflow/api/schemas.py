"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field

from ..reconciliation import DeadlineDates
from ..workflows import Actor


class ActorFields(BaseModel):
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    def to_actor(self) -> Actor:
        return Actor(user_id=self.user_id, user_name=self.user_name)


class DeadlineDatesModel(BaseModel):
    year_end: Optional[date] = None
    accounts_due: Optional[date] = None

    def to_deadlines(self) -> DeadlineDates:
        return DeadlineDates(year_end=self.year_end, accounts_due=self.accounts_due)


# Pure checks
class ValidateTransitionRequest(BaseModel):
    current_stage: Optional[str] = Field(None, description="Omit for a workflow that has no stage yet")
    target_stage: str
    workflow_type: str = Field(..., description="LTD or VAT")


class ClassifyReconciliationRequest(BaseModel):
    tracked: DeadlineDatesModel
    snapshot: DeadlineDatesModel


# Client schemas
class CreateClientRequest(ActorFields):
    company_name: str
    company_number: Optional[str] = None
    year_end: Optional[date] = None
    accounts_due: Optional[date] = None
    corporation_tax_due: Optional[date] = None
    confirmation_due: Optional[date] = None
    accounting_reference_day: Optional[int] = Field(None, ge=1, le=31)
    accounting_reference_month: Optional[int] = Field(None, ge=1, le=12)
    vat_quarter_group: Optional[str] = Field(None, description="1_4_7_10, 2_5_8_11 or 3_6_9_12")
    ltd_assigned_user_id: Optional[str] = None
    vat_assigned_user_id: Optional[str] = None


class UpdateClientRequest(ActorFields):
    company_name: Optional[str] = None
    company_number: Optional[str] = None
    year_end: Optional[date] = None
    accounts_due: Optional[date] = None
    corporation_tax_due: Optional[date] = None
    confirmation_due: Optional[date] = None
    vat_quarter_group: Optional[str] = None
    ltd_assigned_user_id: Optional[str] = None
    vat_assigned_user_id: Optional[str] = None


# Workflow schemas
class StartWorkflowRequest(ActorFields):
    client_id: str
    workflow_type: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    stage: Optional[str] = None
    assigned_user_id: Optional[str] = None


class ProposeStageChangeRequest(ActorFields):
    target_stage: str


class ApplyStageChangeRequest(ActorFields):
    """Echoes the base state returned by the proposal"""
    target_stage: str
    base_stage: str
    base_completed: bool = False
    base_version: int
    confirmed: bool = False
    reconciliation_outcome: Optional[str] = Field(
        None, description="Companies House outcome the caller acknowledged, from the proposal"
    )
    notes: Optional[str] = None


class ReviewRequest(ActorFields):
    approve: bool
    comments: Optional[str] = None


class RolloverRequest(ActorFields):
    pass


class ReopenRequest(ActorFields):
    notes: Optional[str] = None
