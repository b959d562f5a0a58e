"""
Totals Service — locates subtotal / tax / total on a receipt and reconciles
them against the extracted items.

Missing totals are derived from the items so a receipt without a readable
footer still yields a usable result.  Disagreements between the declared and
computed amounts are reported as flags, never as errors: the user edits the
result afterwards.
"""
import logging
import re
from decimal import Decimal
from typing import NamedTuple, Optional, Sequence

from models.schemas import ExtractedLineItem, ReceiptParseResult, to_cents

logger = logging.getLogger("splitly.totals")

# Absolute tolerance for rounding noise between declared and computed totals
MISMATCH_TOLERANCE = Decimal("0.05")

_AMOUNT_RE = re.compile(r"\$?(\d+[.,]\d{2})(?!\d)")

SUBTOTAL_LINE_RE = re.compile(r"SUB.*?TOTAL", re.I)
TAX_LINE_RE      = re.compile(r"\bTAX(?!ABLE)", re.I)
# Costco prints "**** TOTAL"; tender lines carry the total when no TOTAL line was read
TOTAL_LINE_RE    = re.compile(
    r"^\*+\s*TOTAL|^(?!.*SUB).*TOTAL|DEBIT|VISA|CREDIT|PAID|AMOUNT DUE|BALANCE DUE", re.I
)
NOT_A_TOTAL_RE   = re.compile(r"SAVING|ITEMS|NUMBER OF|TAX", re.I)


class ExtractedTotals(NamedTuple):
    receipt_total: Optional[Decimal]   # subtotal as printed
    tax_amount: Decimal
    total_amount: Optional[Decimal]


def _last_amount(line: str) -> Optional[Decimal]:
    """Rightmost money amount on a line ("TAX 1 7.000 % 1.23" → 1.23)."""
    amounts = _AMOUNT_RE.findall(line)
    if not amounts:
        return None
    return Decimal(amounts[-1].replace(",", "."))


def extract_totals(lines: Sequence[str]) -> ExtractedTotals:
    """
    Scan receipt lines for the labelled subtotal, tax and total amounts.

    The first SUBTOTAL and the first positive TOTAL win; TAX lines are summed
    because receipts print one line per tax rate.
    """
    receipt_total: Optional[Decimal] = None
    tax_amount = Decimal("0")
    total_amount: Optional[Decimal] = None

    for line in lines:
        is_subtotal = bool(SUBTOTAL_LINE_RE.search(line))

        if receipt_total is None and is_subtotal:
            receipt_total = _last_amount(line)

        if TAX_LINE_RE.search(line) and "TOTAL" not in line.upper():
            amount = _last_amount(line)
            if amount is not None:
                tax_amount += amount

        if (
            total_amount is None
            and not is_subtotal
            and TOTAL_LINE_RE.search(line)
            and not NOT_A_TOTAL_RE.search(line)
        ):
            amount = _last_amount(line)
            if amount is not None and amount > 0:
                total_amount = amount

    return ExtractedTotals(receipt_total, tax_amount, total_amount)


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def amounts_mismatch(computed: Decimal, declared: Optional[Decimal],
                     tolerance: Decimal = MISMATCH_TOLERANCE) -> bool:
    """True when a declared amount exists and differs from the computed one by more than tolerance."""
    if declared is None:
        return False
    return abs(_as_decimal(computed) - _as_decimal(declared)) > tolerance


def finalize_receipt(
    items: Sequence[ExtractedLineItem],
    receipt_total: Optional[Decimal],
    tax_amount: Optional[Decimal],
    total_amount: Optional[Decimal],
    store_name: Optional[str] = None,
    receipt_date: Optional[str] = None,
) -> ReceiptParseResult:
    """
    Build the reconciled result.

    Mismatch flags compare what the receipt (or model) declared with what the
    items add up to.  Absent declarations are then filled from the items:
    subtotal = sum(items), total = subtotal + tax.
    """
    tax = to_cents(tax_amount or 0)
    calculated = to_cents(sum((i.price for i in items), Decimal("0")))
    calculated_with_tax = to_cents(calculated + tax)

    declared_subtotal = _as_decimal(receipt_total) if receipt_total else None
    declared_total = _as_decimal(total_amount) if total_amount else None

    subtotal_mismatch = amounts_mismatch(calculated, declared_subtotal)
    total_mismatch = amounts_mismatch(calculated_with_tax, declared_total)
    if declared_subtotal is not None:
        declared_subtotal = to_cents(declared_subtotal)
    if declared_total is not None:
        declared_total = to_cents(declared_total)
    if subtotal_mismatch or total_mismatch:
        logger.warning(
            "Totals mismatch: items %s (+tax %s = %s) vs receipt subtotal %s / total %s",
            calculated, tax, calculated_with_tax, declared_subtotal, declared_total,
        )

    subtotal = declared_subtotal
    total = declared_total
    if items and (subtotal is None or total is None):
        subtotal = subtotal if subtotal is not None else calculated
        total = total if total is not None else to_cents(subtotal + tax)

    return ReceiptParseResult(
        items=[ExtractedLineItem(name=i.name, price=i.price) for i in items],
        store_name=store_name or "Receipt",
        receipt_date=receipt_date,
        subtotal=subtotal,
        tax=tax,
        total=total,
        subtotal_mismatch=subtotal_mismatch,
        total_mismatch=total_mismatch,
        calculated_total=calculated,
        calculated_with_tax=calculated_with_tax,
    )
