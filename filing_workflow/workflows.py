"""
Workflow Records Module

Filing period records, their per-stage milestones and the stage history.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import uuid

from .stages import WorkflowType
from .storage import StorageRecord


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Actor:
    """The staff member (or the system) making a change"""
    user_id: Optional[str] = None
    user_name: Optional[str] = None


SYSTEM_ACTOR = Actor(user_id="system", user_name="System")


@dataclass(frozen=True)
class Milestone:
    """When a stage was first reached, and by whom"""
    reached_at: datetime
    by_user_id: Optional[str] = None
    by_user_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reached_at": self.reached_at.isoformat(),
            "by_user_id": self.by_user_id,
            "by_user_name": self.by_user_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Milestone':
        return cls(
            reached_at=_datetime(data["reached_at"]),
            by_user_id=data.get("by_user_id"),
            by_user_name=data.get("by_user_name"),
        )


@dataclass
class WorkflowRecord(StorageRecord):
    """One filing period for a client and workflow type"""
    client_id: str
    workflow_type: WorkflowType
    period_start: date
    period_end: date
    current_stage: str
    is_completed: bool = False
    assigned_user_id: Optional[str] = None
    milestones: Dict[str, Milestone] = field(default_factory=dict)
    version: int = 1
    # Ltd deadlines
    accounts_due: Optional[date] = None
    corporation_tax_due: Optional[date] = None
    confirmation_due: Optional[date] = None
    # VAT quarter
    quarter_group: Optional[str] = None
    filing_due: Optional[date] = None
    completed_at: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)

    @property
    def base_state(self) -> Dict[str, Any]:
        """The fields a write is checked against"""
        return {
            "current_stage": self.current_stage,
            "is_completed": self.is_completed,
            "version": self.version,
        }

    def record_milestone(self, stage_key: str, reached_at: datetime, actor: Actor) -> bool:
        """Set the milestone for a stage unless it is already set"""
        if stage_key in self.milestones:
            return False
        self.milestones = dict(self.milestones)
        self.milestones[stage_key] = Milestone(reached_at, actor.user_id, actor.user_name)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "client_id": self.client_id,
            "workflow_type": self.workflow_type.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "current_stage": self.current_stage,
            "is_completed": self.is_completed,
            "assigned_user_id": self.assigned_user_id,
            "milestones": {key: m.to_dict() for key, m in self.milestones.items()},
            "version": self.version,
            "accounts_due": _iso(self.accounts_due),
            "corporation_tax_due": _iso(self.corporation_tax_due),
            "confirmation_due": _iso(self.confirmation_due),
            "quarter_group": self.quarter_group,
            "filing_due": _iso(self.filing_due),
            "completed_at": _iso(self.completed_at),
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowRecord':
        data = dict(data)
        data["created_at"] = _datetime(data["created_at"])
        data["updated_at"] = _datetime(data["updated_at"])
        data["workflow_type"] = WorkflowType(data["workflow_type"])
        for key in ("period_start", "period_end", "accounts_due", "corporation_tax_due",
                    "confirmation_due", "filing_due"):
            data[key] = _date(data.get(key))
        data["completed_at"] = _datetime(data.get("completed_at"))
        data["milestones"] = {
            key: Milestone.from_dict(m) for key, m in (data.get("milestones") or {}).items()
        }
        data["notes"] = list(data.get("notes") or [])
        return cls(**data)


@dataclass
class WorkflowHistoryEntry(StorageRecord):
    """One stage change on a workflow"""
    workflow_id: str
    from_stage: Optional[str]
    to_stage: str
    changed_at: datetime
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowHistoryEntry':
        data = dict(data)
        data["changed_at"] = _datetime(data["changed_at"])
        return super().from_dict(data)


def history_entry(workflow_id: str, from_stage: Optional[str], to_stage: str, changed_at: datetime,
                  actor: Actor, notes: Optional[str] = None) -> WorkflowHistoryEntry:
    return WorkflowHistoryEntry(
        id=str(uuid.uuid4()),
        created_at=changed_at,
        updated_at=changed_at,
        workflow_id=workflow_id,
        from_stage=from_stage,
        to_stage=to_stage,
        changed_at=changed_at,
        user_id=actor.user_id,
        user_name=actor.user_name,
        notes=notes,
    )
