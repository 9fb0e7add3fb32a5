"""
Reconciliation and VAT calendar endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter

from .schemas import ClassifyReconciliationRequest
from ..dates import next_vat_filing, vat_quarter_for
from ..reconciliation import classify_reconciliation


router = APIRouter()
vat_router = APIRouter()


@router.post("/classify")
async def classify(request: ClassifyReconciliationRequest):
    """Compare tracked dates against registry dates"""
    result = classify_reconciliation(request.tracked.to_deadlines(), request.snapshot.to_deadlines())
    return result.to_dict()


@vat_router.get("/next-filing")
async def get_next_vat_filing(quarter_group: str, on: Optional[date] = None):
    """Quarter whose return is due next for a quarter group"""
    quarter = next_vat_filing(quarter_group, on or date.today())
    return quarter.to_dict()


@vat_router.get("/quarter")
async def get_vat_quarter(quarter_group: str, reference: Optional[date] = None):
    """Quarter of a group containing the reference date"""
    quarter = vat_quarter_for(quarter_group, reference or date.today())
    return quarter.to_dict()
