"""
Workflow Store Module

Persists workflow records, their stage history and client deadline caches.
Writes are grouped into a WorkflowTransaction and committed atomically with
optimistic concurrency: every update names the base state it was computed
from and is refused if the stored record has moved on since.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from .clients import ClientRecord
from .exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from .stages import catalog, parse_workflow_type
from .storage import StorageInterface
from .workflows import WorkflowHistoryEntry, WorkflowRecord

logger = logging.getLogger("filing.store")


WORKFLOWS_TABLE = "filing_workflows"
HISTORY_TABLE = "workflow_history"
CLIENTS_TABLE = "clients"


class OperationKind(Enum):
    UPDATE_WORKFLOW = "update_workflow"
    CREATE_WORKFLOW = "create_workflow"
    UPDATE_CLIENT = "update_client"
    ADD_HISTORY = "add_history"


@dataclass
class WriteOperation:
    kind: OperationKind
    record: Any
    expected: Optional[Dict[str, Any]] = None


class WorkflowTransaction:
    """A batch of writes that commits as one unit"""

    def __init__(self, description: str = ""):
        self.description = description
        self.operations: List[WriteOperation] = []

    def update_workflow(self, record: WorkflowRecord, expected: Dict[str, Any]) -> 'WorkflowTransaction':
        """Update a workflow; expected is the base_state it was read with"""
        self.operations.append(WriteOperation(OperationKind.UPDATE_WORKFLOW, record, dict(expected)))
        return self

    def create_workflow(self, record: WorkflowRecord) -> 'WorkflowTransaction':
        self.operations.append(WriteOperation(OperationKind.CREATE_WORKFLOW, record))
        return self

    def update_client(self, client: ClientRecord, expected_version: int) -> 'WorkflowTransaction':
        self.operations.append(
            WriteOperation(OperationKind.UPDATE_CLIENT, client, {"version": expected_version})
        )
        return self

    def add_history(self, entry: WorkflowHistoryEntry) -> 'WorkflowTransaction':
        self.operations.append(WriteOperation(OperationKind.ADD_HISTORY, entry))
        return self

    def __len__(self) -> int:
        return len(self.operations)


class WorkflowStore:
    """Persistence for workflows, history and client deadline caches"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    # Workflows

    def find_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        data = self.storage.load(WORKFLOWS_TABLE, workflow_id)
        return WorkflowRecord.from_dict(data) if data else None

    def load_workflow(self, workflow_id: str) -> WorkflowRecord:
        record = self.find_workflow(workflow_id)
        if record is None:
            raise NotFoundError("Workflow", workflow_id)
        return record

    def list_workflows(self, client_id: Optional[str] = None,
                       workflow_type=None) -> List[WorkflowRecord]:
        """Workflows ordered by period start, optionally filtered"""
        filters: Dict[str, Any] = {}
        if client_id:
            filters["client_id"] = client_id
        if workflow_type:
            filters["workflow_type"] = parse_workflow_type(workflow_type).value
        records = [WorkflowRecord.from_dict(d) for d in self.storage.find(WORKFLOWS_TABLE, filters)]
        return sorted(records, key=lambda r: (r.period_start, r.created_at))

    def open_workflows(self, client_id: str, workflow_type) -> List[WorkflowRecord]:
        return [r for r in self.list_workflows(client_id, workflow_type) if not r.is_completed]

    def current_workflow(self, client_id: str, workflow_type) -> Optional[WorkflowRecord]:
        open_records = self.open_workflows(client_id, workflow_type)
        return open_records[-1] if open_records else None

    def successor_of(self, record: WorkflowRecord) -> Optional[WorkflowRecord]:
        """The record for the period that follows this one, if any"""
        for other in self.list_workflows(record.client_id, record.workflow_type):
            if other.id != record.id and other.period_start > record.period_end:
                return other
        return None

    def load_history(self, workflow_id: str) -> List[WorkflowHistoryEntry]:
        entries = [
            WorkflowHistoryEntry.from_dict(d)
            for d in self.storage.find(HISTORY_TABLE, {"workflow_id": workflow_id})
        ]
        return sorted(entries, key=lambda e: e.changed_at)

    # Clients

    def find_client(self, client_id: str) -> Optional[ClientRecord]:
        data = self.storage.load(CLIENTS_TABLE, client_id)
        return ClientRecord.from_dict(data) if data else None

    def load_client(self, client_id: str) -> ClientRecord:
        client = self.find_client(client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        return client

    def create_client(self, client: ClientRecord) -> None:
        with self.storage.atomic():
            if self.storage.exists(CLIENTS_TABLE, client.id):
                raise ValidationError(f"Client {client.id} already exists")
            self.storage.save(CLIENTS_TABLE, client.id, client.to_dict())

    def save_client(self, client: ClientRecord, expected_version: int) -> ClientRecord:
        txn = WorkflowTransaction("save client").update_client(client, expected_version)
        self.save_workflow_transaction(txn)
        return client

    # Transactions

    def save_workflow_transaction(self, transaction: WorkflowTransaction) -> None:
        """
        Apply every write of the transaction atomically.

        Records are updated in place with their new version only once the
        whole batch has committed.

        Raises:
            ConcurrencyConflict: a workflow or client moved on since it was read
            ValidationError: milestone rewrite, duplicate open workflow, bad stage
            NotFoundError: an updated record does not exist
        """
        now = datetime.now(timezone.utc)
        staged = []
        with self.storage.atomic():
            for op in transaction.operations:
                if op.kind == OperationKind.UPDATE_WORKFLOW:
                    staged.append((op.record, self._apply_workflow_update(op.record, op.expected, now)))
                elif op.kind == OperationKind.CREATE_WORKFLOW:
                    staged.append((op.record, self._apply_workflow_create(op.record, now)))
                elif op.kind == OperationKind.UPDATE_CLIENT:
                    staged.append((op.record, self._apply_client_update(op.record, op.expected, now)))
                elif op.kind == OperationKind.ADD_HISTORY:
                    self.storage.save(HISTORY_TABLE, op.record.id, op.record.to_dict())

        for record, version in staged:
            record.version = version
            record.updated_at = now

        logger.debug(f"Committed transaction '{transaction.description}' with {len(transaction)} writes")

    def _apply_workflow_update(self, record: WorkflowRecord, expected: Dict[str, Any],
                               now: datetime) -> int:
        data = self.storage.load(WORKFLOWS_TABLE, record.id)
        if data is None:
            raise NotFoundError("Workflow", record.id)
        stored = WorkflowRecord.from_dict(data)

        actual = {key: stored.base_state[key] for key in expected}
        if actual != expected:
            raise ConcurrencyConflict(record.id, expected, actual)

        self._check_milestones(stored, record)
        self._check_stage(record)

        version = stored.version + 1
        self.storage.save(WORKFLOWS_TABLE, record.id,
                          replace(record, version=version, updated_at=now).to_dict())
        return version

    def _apply_workflow_create(self, record: WorkflowRecord, now: datetime) -> int:
        if self.storage.exists(WORKFLOWS_TABLE, record.id):
            raise ValidationError(f"Workflow {record.id} already exists")
        self._check_stage(record)
        if not record.is_completed:
            existing = self.storage.find(WORKFLOWS_TABLE, {
                "client_id": record.client_id,
                "workflow_type": record.workflow_type.value,
                "is_completed": False,
            })
            if existing:
                raise ValidationError(
                    f"Client {record.client_id} already has an open {record.workflow_type.value} "
                    f"workflow ({existing[0]['id']})"
                )
        self.storage.save(WORKFLOWS_TABLE, record.id,
                          replace(record, version=1, updated_at=now).to_dict())
        return 1

    def _apply_client_update(self, client: ClientRecord, expected: Dict[str, Any],
                             now: datetime) -> int:
        data = self.storage.load(CLIENTS_TABLE, client.id)
        if data is None:
            raise NotFoundError("Client", client.id)
        stored_version = data.get("version", 1)
        if stored_version != expected["version"]:
            raise ConcurrencyConflict(client.id, expected, {"version": stored_version})
        version = stored_version + 1
        self.storage.save(CLIENTS_TABLE, client.id,
                          replace(client, version=version, updated_at=now).to_dict())
        return version

    @staticmethod
    def _check_milestones(stored: WorkflowRecord, record: WorkflowRecord) -> None:
        """Milestones are append-only: existing entries may not change or disappear"""
        for stage_key, milestone in stored.milestones.items():
            if stage_key not in record.milestones:
                raise ValidationError(f"Milestone for {stage_key} cannot be removed")
            if record.milestones[stage_key] != milestone:
                raise ValidationError(f"Milestone for {stage_key} is already set and cannot be changed")

    @staticmethod
    def _check_stage(record: WorkflowRecord) -> None:
        if not catalog.is_member(record.current_stage, record.workflow_type):
            raise ValidationError(
                f"{record.current_stage} is not a {record.workflow_type.value} stage"
            )
