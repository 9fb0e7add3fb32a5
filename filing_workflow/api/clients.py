"""
Client management endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .schemas import ActorFields, CreateClientRequest, UpdateClientRequest
from .system import FilingSystem, get_filing_system
from ..exceptions import ValidationError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_client(
    request: CreateClientRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Create a new client"""
    fields = request.model_dump(exclude={
        "company_name", "user_id", "user_name",
        "accounting_reference_day", "accounting_reference_month",
    }, exclude_none=True)

    day, month = request.accounting_reference_day, request.accounting_reference_month
    if (day is None) != (month is None):
        raise ValidationError("Accounting reference day and month must be given together")
    if day is not None:
        fields["accounting_reference_date"] = (day, month)

    client = system.client_manager.create_client(request.company_name, request.user_id, **fields)
    return {"client_id": client.id, "client": client.to_dict(), "message": "Client created successfully"}


@router.get("/{client_id}")
async def get_client(
    client_id: str,
    system: FilingSystem = Depends(get_filing_system)
):
    """Get client by ID"""
    client = system.client_manager.get_client(client_id)
    return client.to_dict()


@router.patch("/{client_id}")
async def update_client(
    client_id: str,
    request: UpdateClientRequest,
    system: FilingSystem = Depends(get_filing_system)
):
    """Edit client details; deadline fields are locked once refreshed from the registry"""
    changes = request.model_dump(exclude={"user_id", "user_name"}, exclude_unset=True)
    client = system.client_manager.update_client(client_id, changes, request.user_id)
    return client.to_dict()


@router.get("/{client_id}/workflows")
async def list_client_workflows(
    client_id: str,
    workflow_type: Optional[str] = None,
    system: FilingSystem = Depends(get_filing_system)
):
    """All workflows of a client, oldest period first"""
    system.client_manager.get_client(client_id)
    records = system.store.list_workflows(client_id, workflow_type)
    return {"workflows": [record.to_dict() for record in records]}


@router.post("/{client_id}/refresh-registry")
def refresh_registry(
    client_id: str,
    request: ActorFields,
    system: FilingSystem = Depends(get_filing_system)
):
    """Refresh cached deadlines from Companies House"""
    result = system.engine.refresh_client_deadlines(client_id, request.to_actor())
    return result.to_dict()
