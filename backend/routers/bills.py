"""
Bills Router

POST /api/bills/summary — per-participant amounts owed for a bill's items

Stateless: the bill owner sends its current items and roster whenever either
changes and gets the full ledger back.
"""
from fastapi import APIRouter

from models.schemas import ExpenseSummary, SummaryRequest
from services.split_service import compute_expense_summary

router = APIRouter()


@router.post("/summary", response_model=ExpenseSummary)
async def expense_summary(body: SummaryRequest):
    return compute_expense_summary(body.items, body.participants, body.tax_amount)
