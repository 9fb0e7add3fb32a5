"""
Typed exceptions for the filing workflow engine.

Every error carries a machine-readable ``code`` and structured attributes so
the API layer (and tests) can branch on type instead of message text.

    FilingWorkflowError
    +-- ValidationError           unknown stage, bad workflow type, illegal edit
    |   +-- NotFoundError         missing workflow or client
    |   +-- ConfirmationRequired  proposal needs explicit confirmation
    +-- ConcurrencyConflict       stale base state at write time
    +-- ExternalLookupFailure     registry unreachable, timed out or errored
    +-- ReconciliationBlocked     registry snapshot does not confirm the filing
    +-- RolloverFailure           a rollover step failed; nothing was persisted
"""

from typing import Any, Dict, List, Optional


class FilingWorkflowError(Exception):
    """Base class for all engine errors"""

    code: str = "FILING_WORKFLOW_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(FilingWorkflowError):
    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ConfirmationRequired(ValidationError):
    code = "CONFIRMATION_REQUIRED"

    def __init__(self, reasons: List[str], message: Optional[str] = None):
        self.reasons = list(reasons)
        super().__init__(message or f"Confirmation required: {', '.join(self.reasons)}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reasons"] = self.reasons
        return data


class ConcurrencyConflict(FilingWorkflowError):
    code = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_id: str, expected: Dict[str, Any], actual: Dict[str, Any]):
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{entity_id} changed since it was read (expected {expected}, found {actual}); reload and retry"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"entity_id": self.entity_id, "expected": self.expected, "actual": self.actual})
        return data


class ExternalLookupFailure(FilingWorkflowError):
    code = "EXTERNAL_LOOKUP_FAILURE"

    def __init__(self, message: str, company_number: Optional[str] = None,
                 status_code: Optional[int] = None):
        self.company_number = company_number
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"company_number": self.company_number, "status_code": self.status_code})
        return data


class ReconciliationBlocked(FilingWorkflowError):
    code = "RECONCILIATION_BLOCKED"

    def __init__(self, result):
        # result is a reconciliation.ReconciliationResult
        self.result = result
        super().__init__(result.message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reconciliation"] = self.result.to_dict()
        return data


class RolloverFailure(FilingWorkflowError):
    code = "ROLLOVER_FAILURE"

    STEP_NAMES = {
        1: "close_current_workflow",
        2: "fetch_registry_snapshot",
        3: "compute_successor_period",
        4: "derive_successor_deadlines",
        5: "create_successor_workflow",
        6: "update_client_deadlines",
        7: "commit_transaction",
    }

    def __init__(self, workflow_id: str, step: int, cause: Optional[BaseException] = None,
                 retryable: bool = True):
        self.workflow_id = workflow_id
        self.step = step
        self.step_name = self.STEP_NAMES.get(step, "unknown")
        self.cause = cause
        self.retryable = retryable
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Rollover of workflow {workflow_id} failed at step {step} ({self.step_name}){detail}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "workflow_id": self.workflow_id,
            "step": self.step,
            "step_name": self.step_name,
            "retryable": self.retryable,
        })
        return data
