"""
Transition Validator Module

Classifies a requested stage change against the stage catalog. Pure: the
validator never touches a record, it only reports what kind of move it is
and which stages it would skip.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .stages import StageCatalog, catalog as default_catalog, parse_workflow_type


class TransitionKind(Enum):
    INITIAL = "initial"
    NO_CHANGE = "no_change"
    FORWARD = "forward"
    SKIP_FORWARD = "skip_forward"
    BACKWARD = "backward"


@dataclass
class TransitionResult:
    """Outcome of classifying one stage change"""
    is_valid: bool
    is_skipping: bool
    is_backward: bool
    kind: TransitionKind
    message: str
    skipped_stages: List[str] = field(default_factory=list)
    allowed_next_stages: List[str] = field(default_factory=list)

    @property
    def requires_confirmation(self) -> bool:
        """Skips and backward moves both need an explicit go-ahead"""
        return self.kind in (TransitionKind.SKIP_FORWARD, TransitionKind.BACKWARD)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "is_skipping": self.is_skipping,
            "is_backward": self.is_backward,
            "kind": self.kind.value,
            "message": self.message,
            "skipped_stages": list(self.skipped_stages),
            "allowed_next_stages": list(self.allowed_next_stages),
            "requires_confirmation": self.requires_confirmation,
        }


def allowed_next_stages(current_stage: str, workflow_type,
                        stage_catalog: Optional[StageCatalog] = None) -> List[str]:
    """The next stage plus any earlier rework stage the record can be sent back to"""
    stage_catalog = stage_catalog or default_catalog
    current_ordinal = stage_catalog.ordinal_of(current_stage, workflow_type)

    allowed = []
    following = stage_catalog.next_stage(current_stage, workflow_type)
    if following is not None:
        allowed.append(following.key)
    for stage in stage_catalog.rework_stages(workflow_type):
        if stage.ordinal < current_ordinal and stage.key not in allowed:
            allowed.append(stage.key)
    return allowed


def validate_stage_transition(current_stage: Optional[str], target_stage: str, workflow_type,
                              stage_catalog: Optional[StageCatalog] = None) -> TransitionResult:
    """
    Classify a move from current_stage to target_stage.

    Args:
        current_stage: Stage the record is at, or None for a new workflow
        target_stage: Requested stage
        workflow_type: LTD or VAT

    Returns:
        TransitionResult. Forward skips come back with is_valid False until
        the caller confirms; backward moves are valid but still flagged for
        confirmation.

    Raises:
        ValidationError: Unknown workflow type or stage key
    """
    stage_catalog = stage_catalog or default_catalog
    wf_type = parse_workflow_type(workflow_type)
    j = stage_catalog.ordinal_of(target_stage, wf_type)

    if current_stage is None:
        return TransitionResult(
            is_valid=True, is_skipping=False, is_backward=False,
            kind=TransitionKind.INITIAL,
            message="Valid initial stage selection",
            allowed_next_stages=allowed_next_stages(target_stage, wf_type, stage_catalog),
        )

    i = stage_catalog.ordinal_of(current_stage, wf_type)

    if j == i:
        return TransitionResult(
            is_valid=True, is_skipping=False, is_backward=False,
            kind=TransitionKind.NO_CHANGE,
            message="No stage change",
            allowed_next_stages=allowed_next_stages(current_stage, wf_type, stage_catalog),
        )

    if j > i + 1:
        skipped = [s.key for s in stage_catalog.stages_between(current_stage, target_stage, wf_type)]
        if skipped:
            message = f"Moving to {target_stage} skips: {', '.join(skipped)}"
        else:
            # Only system-set stages lie in between
            message = f"Moving to {target_stage} passes over system-set stages"
        return TransitionResult(
            is_valid=False, is_skipping=True, is_backward=False,
            kind=TransitionKind.SKIP_FORWARD,
            message=message,
            skipped_stages=skipped,
            allowed_next_stages=allowed_next_stages(current_stage, wf_type, stage_catalog),
        )

    if j < i:
        return TransitionResult(
            is_valid=True, is_skipping=False, is_backward=True,
            kind=TransitionKind.BACKWARD,
            message=f"Moving back from {current_stage} to {target_stage}; milestones already reached are kept",
            allowed_next_stages=allowed_next_stages(target_stage, wf_type, stage_catalog),
        )

    return TransitionResult(
        is_valid=True, is_skipping=False, is_backward=False,
        kind=TransitionKind.FORWARD,
        message="Valid stage progression",
        allowed_next_stages=allowed_next_stages(target_stage, wf_type, stage_catalog),
    )
