"""
Reconciliation Classifier Module

Decides whether a Companies House filing has actually landed by comparing
the deadlines we track against a freshly fetched registry snapshot. When the
registry accepts a set of accounts it moves the company's next period on, so
both dates advancing is the signal that the filing went through.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, Optional


class ReconciliationOutcome(Enum):
    WORKFLOW_DATES_WRONG = "WORKFLOW_DATES_WRONG"
    MISSING_DATA = "MISSING_DATA"
    SAME_DATES = "SAME_DATES"
    BACKWARD_DATES = "BACKWARD_DATES"
    FORWARD_DATES = "FORWARD_DATES"
    DIFFERENT_DATES = "DIFFERENT_DATES"
    LOOKUP_FAILED = "LOOKUP_FAILED"


# outcome: (can_proceed, requires_acknowledgement, override_allowed)
_POLICY = {
    ReconciliationOutcome.WORKFLOW_DATES_WRONG: (False, False, False),
    ReconciliationOutcome.MISSING_DATA: (True, True, True),
    ReconciliationOutcome.SAME_DATES: (False, False, False),
    ReconciliationOutcome.BACKWARD_DATES: (False, False, False),
    ReconciliationOutcome.FORWARD_DATES: (True, False, True),
    ReconciliationOutcome.DIFFERENT_DATES: (True, True, True),
    ReconciliationOutcome.LOOKUP_FAILED: (True, True, True),
}


@dataclass(frozen=True)
class DeadlineDates:
    """Year end and accounts due date, tracked or as reported by the registry"""
    year_end: Optional[date] = None
    accounts_due: Optional[date] = None

    @property
    def complete(self) -> bool:
        return self.year_end is not None and self.accounts_due is not None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "year_end": self.year_end.isoformat() if self.year_end else None,
            "accounts_due": self.accounts_due.isoformat() if self.accounts_due else None,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    can_proceed: bool
    requires_acknowledgement: bool
    override_allowed: bool
    tracked: DeadlineDates
    snapshot: Optional[DeadlineDates]
    message: str

    @property
    def blocked(self) -> bool:
        return not self.can_proceed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "can_proceed": self.can_proceed,
            "requires_acknowledgement": self.requires_acknowledgement,
            "override_allowed": self.override_allowed,
            "tracked": self.tracked.to_dict(),
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "message": self.message,
        }


def _result(outcome: ReconciliationOutcome, tracked: DeadlineDates,
            snapshot: Optional[DeadlineDates], message: str) -> ReconciliationResult:
    can_proceed, requires_ack, override_allowed = _POLICY[outcome]
    return ReconciliationResult(
        outcome=outcome,
        can_proceed=can_proceed,
        requires_acknowledgement=requires_ack,
        override_allowed=override_allowed,
        tracked=tracked,
        snapshot=snapshot,
        message=message,
    )


def classify_reconciliation(tracked: DeadlineDates, snapshot: DeadlineDates) -> ReconciliationResult:
    """
    Compare tracked dates against a registry snapshot. First match wins.

    Args:
        tracked: Year end and accounts due held on the workflow/client
        snapshot: Year end and accounts due just fetched from the registry

    Returns:
        ReconciliationResult carrying both date sets
    """
    if not tracked.complete:
        return _result(ReconciliationOutcome.WORKFLOW_DATES_WRONG, tracked, snapshot,
                       "Tracked year end or accounts due date is missing; fix the workflow dates first")
    if tracked.accounts_due <= tracked.year_end:
        return _result(ReconciliationOutcome.WORKFLOW_DATES_WRONG, tracked, snapshot,
                       "Tracked accounts due date is not after the year end; fix the workflow dates first")

    if not snapshot.complete:
        return _result(ReconciliationOutcome.MISSING_DATA, tracked, snapshot,
                       "Companies House returned no accounts dates; confirm the filing manually")

    if snapshot.year_end == tracked.year_end and snapshot.accounts_due == tracked.accounts_due:
        return _result(ReconciliationOutcome.SAME_DATES, tracked, snapshot,
                       "Companies House still shows the same dates; the filing is not reflected yet")

    if snapshot.year_end < tracked.year_end or snapshot.accounts_due < tracked.accounts_due:
        return _result(ReconciliationOutcome.BACKWARD_DATES, tracked, snapshot,
                       "Companies House shows earlier dates than tracked; the data looks stale or wrong")

    if snapshot.year_end > tracked.year_end and snapshot.accounts_due > tracked.accounts_due:
        return _result(ReconciliationOutcome.FORWARD_DATES, tracked, snapshot,
                       "Companies House dates have moved forward; filing confirmed")

    return _result(ReconciliationOutcome.DIFFERENT_DATES, tracked, snapshot,
                   "Only some Companies House dates have moved; review before continuing")


def lookup_failed(tracked: DeadlineDates, reason: str) -> ReconciliationResult:
    """Advisory result used when the registry could not be reached"""
    return _result(ReconciliationOutcome.LOOKUP_FAILED, tracked, None,
                   f"Could not check Companies House ({reason}); confirm the filing manually")
