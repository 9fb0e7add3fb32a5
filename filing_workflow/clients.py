"""
Client Records Module

Client records and their statutory deadline cache. Deadlines are derived
values: once a registry snapshot has been applied they can only change
through a registry refresh or a rollover, never by hand.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .dates import QUARTER_GROUPS
from .exceptions import ValidationError
from .storage import StorageRecord

logger = logging.getLogger("filing.clients")


DEADLINE_FIELDS = ("year_end", "accounts_due", "corporation_tax_due", "confirmation_due",
                   "accounting_reference_date")

EDITABLE_FIELDS = ("company_name", "company_number", "vat_quarter_group",
                   "ltd_assigned_user_id", "vat_assigned_user_id") + DEADLINE_FIELDS


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _date(value) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass
class ClientRecord(StorageRecord):
    """A client company and its cached deadlines"""
    company_name: str
    company_number: Optional[str] = None
    year_end: Optional[date] = None
    accounts_due: Optional[date] = None
    corporation_tax_due: Optional[date] = None
    confirmation_due: Optional[date] = None
    accounting_reference_date: Optional[Tuple[int, int]] = None  # (day, month)
    vat_quarter_group: Optional[str] = None
    ltd_assigned_user_id: Optional[str] = None
    vat_assigned_user_id: Optional[str] = None
    registry_refreshed_at: Optional[datetime] = None
    version: int = 1

    @property
    def deadlines_locked(self) -> bool:
        return self.registry_refreshed_at is not None

    def deadlines(self) -> Dict[str, Any]:
        ard = self.accounting_reference_date
        return {
            "year_end": _iso(self.year_end),
            "accounts_due": _iso(self.accounts_due),
            "corporation_tax_due": _iso(self.corporation_tax_due),
            "confirmation_due": _iso(self.confirmation_due),
            "accounting_reference_date": {"day": ard[0], "month": ard[1]} if ard else None,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "company_name": self.company_name,
            "company_number": self.company_number,
            "vat_quarter_group": self.vat_quarter_group,
            "ltd_assigned_user_id": self.ltd_assigned_user_id,
            "vat_assigned_user_id": self.vat_assigned_user_id,
            "registry_refreshed_at": _iso(self.registry_refreshed_at),
            "version": self.version,
        }
        data.update(self.deadlines())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClientRecord':
        data = dict(data)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        for key in ("year_end", "accounts_due", "corporation_tax_due", "confirmation_due"):
            data[key] = _date(data.get(key))
        if data.get("registry_refreshed_at"):
            data["registry_refreshed_at"] = datetime.fromisoformat(data["registry_refreshed_at"])
        ard = data.get("accounting_reference_date")
        if isinstance(ard, dict):
            data["accounting_reference_date"] = (int(ard["day"]), int(ard["month"]))
        elif ard is not None:
            data["accounting_reference_date"] = tuple(ard)
        return cls(**data)


def _check_quarter_group(quarter_group: Optional[str]) -> None:
    if quarter_group is not None and quarter_group not in QUARTER_GROUPS:
        raise ValidationError(f"Invalid quarter group: {quarter_group!r}")


class ClientManager:
    """Creates clients and guards hand edits to their deadline cache"""

    def __init__(self, store, audit: AuditTrail):
        self.store = store
        self.audit = audit

    def create_client(self, company_name: str, actor_id: Optional[str] = None,
                      **fields) -> ClientRecord:
        """Create a client. Deadlines given here seed the cache until the first registry refresh."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown client fields: {', '.join(sorted(unknown))}")
        if not company_name or not company_name.strip():
            raise ValidationError("Company name is required")
        _check_quarter_group(fields.get("vat_quarter_group"))

        now = datetime.now(timezone.utc)
        client = ClientRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            company_name=company_name.strip(),
            **fields
        )
        self.store.create_client(client)

        self.audit.record_activity(
            AuditEventType.CLIENT_CREATED, actor_id, now,
            {"entity_type": "client", "client_id": client.id,
             "company_name": client.company_name, "company_number": client.company_number}
        )
        logger.info(f"Created client {client.id} ({client.company_name})")
        return client

    def get_client(self, client_id: str) -> ClientRecord:
        return self.store.load_client(client_id)

    def update_client(self, client_id: str, changes: Dict[str, Any],
                      actor_id: Optional[str] = None) -> ClientRecord:
        """Apply hand edits to a client.

        Raises:
            ValidationError: unknown field, or a deadline edit after a registry refresh
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown client fields: {', '.join(sorted(unknown))}")

        client = self.store.load_client(client_id)
        touched = [k for k in DEADLINE_FIELDS if k in changes and changes[k] != getattr(client, k)]
        if touched and client.deadlines_locked:
            raise ValidationError(
                f"Deadline fields {', '.join(touched)} come from Companies House and cannot be edited; "
                "refresh from the registry instead"
            )
        _check_quarter_group(changes.get("vat_quarter_group"))
        if "company_name" in changes:
            name = changes["company_name"]
            if not name or not name.strip():
                raise ValidationError("Company name cannot be blank")
            changes = dict(changes, company_name=name.strip())

        updated = replace(client, **changes)
        self.store.save_client(updated, expected_version=client.version)
        logger.info(f"Client {client_id} updated by {actor_id or 'system'}: {', '.join(sorted(changes))}")
        return updated
