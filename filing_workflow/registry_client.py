"""
Company Registry Client Module

REST client for the Companies House public data API. Only the company
profile endpoint is used: it carries the accounts and confirmation
statement dates the filing workflows track.
"""

import httpx
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional, Tuple

from .exceptions import ExternalLookupFailure
from .reconciliation import DeadlineDates

logger = logging.getLogger("filing.registry")


@dataclass(frozen=True)
class RegistrySnapshot:
    """Point-in-time view of a company's statutory dates"""
    company_number: str
    year_end: Optional[date] = None          # accounts.next_made_up_to
    accounts_due: Optional[date] = None      # accounts.next_due
    accounting_reference_date: Optional[Tuple[int, int]] = None  # (day, month)
    confirmation_due: Optional[date] = None
    last_accounts_made_up_to: Optional[date] = None
    company_name: Optional[str] = None
    company_status: Optional[str] = None

    @property
    def deadlines(self) -> DeadlineDates:
        return DeadlineDates(year_end=self.year_end, accounts_due=self.accounts_due)

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None
        ard = self.accounting_reference_date
        return {
            "company_number": self.company_number,
            "year_end": iso(self.year_end),
            "accounts_due": iso(self.accounts_due),
            "accounting_reference_date": {"day": ard[0], "month": ard[1]} if ard else None,
            "confirmation_due": iso(self.confirmation_due),
            "last_accounts_made_up_to": iso(self.last_accounts_made_up_to),
            "company_name": self.company_name,
            "company_status": self.company_status,
        }


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning(f"Ignoring unparseable registry date: {value!r}")
        return None


def snapshot_from_profile(company_number: str, profile: Dict[str, Any]) -> RegistrySnapshot:
    """Build a snapshot from a Companies House company profile document"""
    accounts = profile.get("accounts") or {}
    confirmation = profile.get("confirmation_statement") or {}
    last_accounts = accounts.get("last_accounts") or {}

    ard = None
    raw_ard = accounts.get("accounting_reference_date") or {}
    if raw_ard.get("day") and raw_ard.get("month"):
        try:
            ard = (int(raw_ard["day"]), int(raw_ard["month"]))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable accounting reference date: {raw_ard!r}")

    return RegistrySnapshot(
        company_number=company_number,
        year_end=_parse_date(accounts.get("next_made_up_to")),
        accounts_due=_parse_date(accounts.get("next_due")),
        accounting_reference_date=ard,
        confirmation_due=_parse_date(confirmation.get("next_due")),
        last_accounts_made_up_to=_parse_date(last_accounts.get("made_up_to")),
        company_name=profile.get("company_name"),
        company_status=profile.get("company_status"),
    )


class RegistryClient(ABC):
    """Registry lookup contract"""

    @abstractmethod
    def fetch_company_snapshot(self, company_number: str) -> RegistrySnapshot:
        """Return a fresh snapshot or raise ExternalLookupFailure"""
        pass

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        pass


class CompaniesHouseClient(RegistryClient):
    """REST client for the Companies House API"""

    def __init__(
        self,
        base_url: str = "https://api.company-information.service.gov.uk",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        enabled: bool = True
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.enabled = enabled
        self._client = httpx.Client(timeout=timeout)

    def fetch_company_snapshot(self, company_number: str) -> RegistrySnapshot:
        """Fetch the company profile and extract its statutory dates

        Args:
            company_number: Companies House registration number

        Returns:
            RegistrySnapshot

        Raises:
            ExternalLookupFailure: lookup disabled, unreachable, timed out or non-200
        """
        if not self.enabled:
            raise ExternalLookupFailure("Companies House lookup is disabled", company_number)
        if not self.api_key:
            raise ExternalLookupFailure("Companies House API key not configured", company_number)

        number = company_number.strip().upper()
        start = time.time()
        try:
            response = self._client.get(
                f"{self.base_url}/company/{number}",
                auth=(self.api_key, ""),
                headers={"Accept": "application/json"}
            )
        except httpx.TimeoutException as e:
            logger.error(f"Companies House lookup for {number} timed out after {self.timeout}s")
            raise ExternalLookupFailure(f"Companies House lookup timed out: {e}", number) from e
        except httpx.HTTPError as e:
            logger.error(f"Companies House connection failed: {e}")
            raise ExternalLookupFailure(f"Failed to connect to Companies House: {e}", number) from e

        latency_ms = (time.time() - start) * 1000

        if response.status_code == 200:
            logger.info(f"Fetched Companies House profile for {number} in {latency_ms:.0f}ms")
            return snapshot_from_profile(number, response.json())

        if response.status_code == 404:
            message = "Company not found"
        elif response.status_code == 429:
            message = "Rate limit exceeded. Please try again later."
        elif response.status_code == 401:
            message = "Invalid API key"
        else:
            message = f"Companies House API error: {response.status_code}"
        logger.warning(f"Companies House returned {response.status_code} for {number}")
        raise ExternalLookupFailure(message, number, status_code=response.status_code)

    def health_check(self) -> bool:
        """Check if the API answers at all"""
        try:
            r = self._client.get(self.base_url)
            return r.status_code < 500
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()


class MockRegistryClient(RegistryClient):
    """In-memory registry for tests and local runs"""

    def __init__(self):
        self._snapshots: Dict[str, RegistrySnapshot] = {}
        self._failures: Dict[str, ExternalLookupFailure] = {}
        self.calls = 0

    def set_snapshot(self, snapshot: RegistrySnapshot) -> None:
        self._snapshots[snapshot.company_number] = snapshot
        self._failures.pop(snapshot.company_number, None)

    def fail_with(self, company_number: str, message: str = "Companies House lookup timed out") -> None:
        """Make subsequent lookups of this company fail"""
        self._failures[company_number] = ExternalLookupFailure(message, company_number)

    def fetch_company_snapshot(self, company_number: str) -> RegistrySnapshot:
        self.calls += 1
        if company_number in self._failures:
            raise self._failures[company_number]
        snapshot = self._snapshots.get(company_number)
        if snapshot is None:
            raise ExternalLookupFailure("Company not found", company_number, status_code=404)
        return snapshot
