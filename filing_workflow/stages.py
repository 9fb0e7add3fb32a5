"""
Stage Catalog Module

Static ordered stage definitions for the Ltd Accounts and VAT filing
workflows. Ordinal is the only basis for forward/backward comparisons;
labels are for display.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Union

from .exceptions import ValidationError, NotFoundError


class WorkflowType(Enum):
    """Filing workflow types"""
    LTD = "LTD"
    VAT = "VAT"


def parse_workflow_type(value: Union[str, WorkflowType]) -> WorkflowType:
    """Accept a WorkflowType or its name in any case"""
    if isinstance(value, WorkflowType):
        return value
    if isinstance(value, str):
        try:
            return WorkflowType(value.strip().upper())
        except ValueError:
            pass
    raise ValidationError(f"Unknown workflow type: {value!r} (expected LTD or VAT)")


@dataclass(frozen=True)
class StageDefinition:
    """One step in a workflow's fixed ordinal sequence"""
    key: str
    ordinal: int
    user_selectable: bool
    label: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "ordinal": self.ordinal,
            "user_selectable": self.user_selectable,
            "label": self.label,
        }


def _build(entries) -> List[StageDefinition]:
    return [
        StageDefinition(key=key, ordinal=i, user_selectable=selectable, label=label)
        for i, (key, label, selectable) in enumerate(entries)
    ]


# Reviewed-by stages are set by the review sign-off, never picked by staff
LTD_STAGES = _build([
    ("WAITING_FOR_YEAR_END", "Waiting for Year End", True),
    ("PAPERWORK_PENDING_CHASE", "Awaiting Records", True),
    ("PAPERWORK_CHASED", "Records Chased", True),
    ("PAPERWORK_RECEIVED", "Records Received", True),
    ("WORK_IN_PROGRESS", "Work in Progress", True),
    ("DISCUSS_WITH_MANAGER", "Manager Discussion", True),
    ("REVIEWED_BY_MANAGER", "Reviewed by Manager", False),
    ("REVIEW_BY_PARTNER", "Partner Review", True),
    ("REVIEWED_BY_PARTNER", "Reviewed by Partner", False),
    ("REVIEW_DONE_HELLO_SIGN", "Review Complete", True),
    ("SENT_TO_CLIENT_HELLO_SIGN", "Sent to Client", True),
    ("APPROVED_BY_CLIENT", "Client Approved", True),
    ("SUBMISSION_APPROVED_PARTNER", "Partner Approved", True),
    ("FILED_TO_COMPANIES_HOUSE", "Filed to Companies House", True),
    ("FILED_TO_HMRC", "Filed to HMRC", True),
])

VAT_STAGES = _build([
    ("CLIENT_BOOKKEEPING", "Client Bookkeeping", True),
    ("WORK_IN_PROGRESS", "Work in Progress", True),
    ("QUERIES_PENDING", "Queries Pending", True),
    ("REVIEW_PENDING_MANAGER", "Review Pending (Manager)", True),
    ("REVIEWED_BY_MANAGER", "Reviewed by Manager", False),
    ("REVIEW_PENDING_PARTNER", "Review Pending (Partner)", True),
    ("REVIEWED_BY_PARTNER", "Reviewed by Partner", False),
    ("EMAILED_TO_PARTNER", "Emailed to Partner", True),
    ("EMAILED_TO_CLIENT", "Emailed to Client", True),
    ("CLIENT_APPROVED", "Client Approved", True),
    ("FILED_TO_HMRC", "Filed to HMRC", True),
])

# Earlier stages a record may be sent back to for rework
REWORK_STAGES = {
    WorkflowType.LTD: ("PAPERWORK_PENDING_CHASE", "PAPERWORK_CHASED",
                       "PAPERWORK_RECEIVED", "WORK_IN_PROGRESS"),
    WorkflowType.VAT: ("CLIENT_BOOKKEEPING", "WORK_IN_PROGRESS", "QUERIES_PENDING"),
}

# Where a rejected review sends the record back to
REVIEW_REJECT_STAGE = "WORK_IN_PROGRESS"

REGISTRY_FILING_STAGES = {
    WorkflowType.LTD: "FILED_TO_COMPANIES_HOUSE",
    WorkflowType.VAT: None,
}


class StageCatalog:
    """Lookup over the ordered stage lists of both workflow types"""

    def __init__(self):
        self._stages = {
            WorkflowType.LTD: LTD_STAGES,
            WorkflowType.VAT: VAT_STAGES,
        }
        self._index = {
            workflow_type: {stage.key: stage for stage in stages}
            for workflow_type, stages in self._stages.items()
        }

    def stages_for(self, workflow_type) -> List[StageDefinition]:
        return list(self._stages[parse_workflow_type(workflow_type)])

    def get_stage(self, stage_key: str, workflow_type) -> StageDefinition:
        """Return the stage definition or raise NotFoundError"""
        wf_type = parse_workflow_type(workflow_type)
        stage = self._index[wf_type].get(stage_key)
        if stage is None:
            raise NotFoundError(f"{wf_type.value} stage", str(stage_key))
        return stage

    def ordinal_of(self, stage_key: str, workflow_type) -> int:
        return self.get_stage(stage_key, workflow_type).ordinal

    def is_member(self, stage_key: str, workflow_type) -> bool:
        return stage_key in self._index[parse_workflow_type(workflow_type)]

    def selectable_stages(self, workflow_type) -> List[StageDefinition]:
        return [s for s in self.stages_for(workflow_type) if s.user_selectable]

    def initial_stage(self, workflow_type) -> StageDefinition:
        return self.stages_for(workflow_type)[0]

    def terminal_stage(self, workflow_type) -> StageDefinition:
        return self.stages_for(workflow_type)[-1]

    def penultimate_stage(self, workflow_type) -> StageDefinition:
        return self.stages_for(workflow_type)[-2]

    def registry_filing_stage(self, workflow_type) -> Optional[StageDefinition]:
        key = REGISTRY_FILING_STAGES[parse_workflow_type(workflow_type)]
        return self.get_stage(key, workflow_type) if key else None

    def rework_stages(self, workflow_type) -> List[StageDefinition]:
        wf_type = parse_workflow_type(workflow_type)
        return [self.get_stage(key, wf_type) for key in REWORK_STAGES[wf_type]]

    def review_signoff_stage(self, stage_key: str, workflow_type) -> Optional[StageDefinition]:
        """The system-set reviewed-by stage a review at stage_key leads to, if any"""
        following = self.next_stage(stage_key, workflow_type)
        if following is not None and not following.user_selectable:
            return following
        return None

    def next_stage(self, stage_key: str, workflow_type) -> Optional[StageDefinition]:
        stages = self.stages_for(workflow_type)
        ordinal = self.ordinal_of(stage_key, workflow_type)
        return stages[ordinal + 1] if ordinal + 1 < len(stages) else None

    def previous_stage(self, stage_key: str, workflow_type) -> Optional[StageDefinition]:
        stages = self.stages_for(workflow_type)
        ordinal = self.ordinal_of(stage_key, workflow_type)
        return stages[ordinal - 1] if ordinal > 0 else None

    def stages_between(self, from_key: str, to_key: str, workflow_type,
                       selectable_only: bool = True) -> List[StageDefinition]:
        """Stages with ordinal strictly between the two keys, in catalog order"""
        low = self.ordinal_of(from_key, workflow_type)
        high = self.ordinal_of(to_key, workflow_type)
        if low > high:
            low, high = high, low
        return [
            s for s in self.stages_for(workflow_type)
            if low < s.ordinal < high and (s.user_selectable or not selectable_only)
        ]

    def progress(self, stage_key: str, workflow_type) -> Dict[str, object]:
        total = len(self.stages_for(workflow_type))
        ordinal = self.ordinal_of(stage_key, workflow_type)
        return {
            "current_index": ordinal,
            "total_stages": total,
            "progress_percentage": round((ordinal + 1) / total * 100, 2),
        }


catalog = StageCatalog()


def stages_for(workflow_type) -> List[StageDefinition]:
    return catalog.stages_for(workflow_type)


def ordinal_of(stage_key: str, workflow_type) -> int:
    return catalog.ordinal_of(stage_key, workflow_type)
