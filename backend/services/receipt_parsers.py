"""
Receipt Parsers — turn OCR text into line items when the vision path is
unavailable.

parse_receipt_text() detects the store from the whole text and routes to a
store-specific parser (Walmart, Costco, Halal Market) or the generic one.
Every parser walks the lines top to bottom, drops lines the skip/summary
classifiers recognise, takes the rightmost price on what is left and builds
the item name from the text before it.  A line that can't be parsed is
skipped; it never aborts the receipt.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Sequence

from models.schemas import BillItem, EqualSplit, to_cents
from services.receipt_text import (
    clean_name,
    extract_date_from_lines,
    extract_discount,
    extract_price_from_line,
    has_price,
    is_calculation_line,
    is_non_item_name,
    is_summary_line,
    match_store,
    should_skip_line,
    split_lines,
    strip_leading_quantity,
)
from services.totals_service import extract_totals

logger = logging.getLogger("splitly.parsers")


@dataclass
class ParsedReceiptText:
    store_name: str
    receipt_date: Optional[str]
    items: list[BillItem]
    receipt_total: Optional[Decimal]
    tax_amount: Decimal
    total_amount: Optional[Decimal]
    expected_item_count: Optional[int] = None


class _ItemCollector:
    """Accumulates items for one receipt; every item gets an equal split over the participants."""

    def __init__(self, participant_ids: Sequence[str]):
        self.participant_ids = list(participant_ids)
        self.items: list[BillItem] = []

    def add(self, name: str, price: Decimal) -> None:
        self.items.append(BillItem(
            id=f"ocr{len(self.items)}",
            name=clean_name(name),
            price=price,
            split=EqualSplit(participant_ids=list(self.participant_ids)),
        ))

    def apply_discount(self, amount: Decimal) -> bool:
        """Subtract a discount from the most recent item.  False when there is none."""
        if not self.items:
            return False
        last = self.items[-1]
        new_price = to_cents(max(Decimal("0"), last.price - amount))
        self.items[-1] = last.model_copy(update={"price": new_price})
        logger.debug("Discount %s applied to '%s' → %s", amount, last.name, new_price)
        return True


def _usable_name(name: str, min_len: int, max_len: int) -> bool:
    return min_len <= len(name) <= max_len and not is_non_item_name(name)


def _trailer_is_tax_flag(line: str, end: int) -> bool:
    """True when nothing but an optional one/two-letter tax flag follows the price."""
    return bool(re.fullmatch(r"\s*[A-Z]{0,2}\s*", line[end:], re.I))


def _check_item_count(store: str, expected: Optional[int], found: int) -> None:
    if expected is not None and expected != found:
        logger.warning(
            "%s receipt says %d items sold but %d were parsed", store, expected, found
        )


def _find_item_count(lines: Sequence[str], pattern: re.Pattern) -> Optional[int]:
    for line in lines:
        m = pattern.search(line)
        if m:
            return int(m.group(1))
    return None


# ── Walmart ───────────────────────────────────────────────────────────────────
# "GV WHOLE MILK 007874235186 F   3.48 N"  name, barcode, tax code, price, flag.
# Weight lines ("2.38 lb @ 1.0 lb /1.12  2.67") and multi-buy lines
# ("3 AT 1 FOR 0.77  2.31") belong to the item above and are never items.

WALMART_COUNT_RE = re.compile(r"#\s*ITEMS\s*SOLD\s*(\d+)", re.I)
_WALMART_BARCODE_RE = re.compile(r"\s+\d{8,}\s*[A-Z]{0,2}\s*$", re.I)


def parse_walmart_receipt(lines: Sequence[str], participant_ids: Sequence[str]) -> tuple[list[BillItem], Optional[int]]:
    collector = _ItemCollector(participant_ids)
    used: set[int] = set()

    for i, line in enumerate(lines):
        if i in used or should_skip_line(line) or is_summary_line(line):
            continue

        discount = extract_discount(line)
        if discount is not None:
            collector.apply_discount(discount)
            continue

        match = extract_price_from_line(line)
        if not match or not _trailer_is_tax_flag(line, match.end):
            continue

        before = line[:match.start].strip()
        before = _WALMART_BARCODE_RE.sub("", before)
        before = re.sub(r"\s+[A-Z]\s*$", "", before, flags=re.I).strip()
        name = strip_leading_quantity(before)

        if i + 1 < len(lines) and is_calculation_line(lines[i + 1]):
            used.add(i + 1)

        if not _usable_name(name, 2, 60):
            continue
        collector.add(name, match.price)

    expected = _find_item_count(lines, WALMART_COUNT_RE)
    _check_item_count("Walmart", expected, len(collector.items))
    return collector.items, expected


# ── Costco ────────────────────────────────────────────────────────────────────
# "E  1892398 SMOOTHIES  16.99 A"  optional marker (or OCR junk), item code,
# name, price, tax flag.  "2 @ 3.99" quantity lines follow multi-buys and
# "0000349256 /1892398  3.00-" instant-savings lines discount the item above.

COSTCO_COUNT_RE = re.compile(r"NUMBER\s+OF\s+ITEMS\s+SOLD\s*=?\s*(\d+)", re.I)
_COSTCO_PREFIX_RE = re.compile(r"^(?:[A-Za-z]{1,5}\s+|\d{1,2}\s+)?\d{5,}\s+")


def parse_costco_receipt(lines: Sequence[str], participant_ids: Sequence[str]) -> tuple[list[BillItem], Optional[int]]:
    collector = _ItemCollector(participant_ids)
    used: set[int] = set()

    for i, line in enumerate(lines):
        if i in used or should_skip_line(line) or is_summary_line(line):
            continue

        discount = extract_discount(line)
        if discount is not None:
            collector.apply_discount(discount)
            continue

        match = extract_price_from_line(line)
        if not match or not _trailer_is_tax_flag(line, match.end):
            continue

        before = line[:match.start].strip()
        name = _COSTCO_PREFIX_RE.sub("", before).strip()

        if i + 1 < len(lines) and is_calculation_line(lines[i + 1]):
            used.add(i + 1)

        if not _usable_name(name, 2, 60):
            continue
        collector.add(name, match.price)

    expected = _find_item_count(lines, COSTCO_COUNT_RE)
    _check_item_count("Costco", expected, len(collector.items))
    return collector.items, expected


# ── Halal Market ──────────────────────────────────────────────────────────────
# Single line:  "Fruits & Vege  1  $3.50 N"
# Two lines:    "Crispy Gujarati" / "Roti 400g  2  $9.58 N"
# The price is always followed by an N (non-taxable) or T (taxable) flag and
# preceded by a quantity column.

_HALAL_PRICE_RE = re.compile(r"[$§]?(\d+\.\d{2})\s*[NT]\s*$", re.I)
_HALAL_QTY_RE = re.compile(r"^(.*?)\s+(\d{1,2})$")
_HALAL_HEADER_RE = re.compile(r"^(PRODUCT|QTY|AMT|CUSTOMER|CASHIER|REG)", re.I)


def parse_halal_receipt(lines: Sequence[str], participant_ids: Sequence[str]) -> tuple[list[BillItem], Optional[int]]:
    collector = _ItemCollector(participant_ids)
    used: set[int] = set()

    for i, line in enumerate(lines):
        if i in used or should_skip_line(line) or is_summary_line(line):
            continue

        m = _HALAL_PRICE_RE.search(line)
        if not m:
            continue
        price = Decimal(m.group(1))
        if price <= 0:
            continue

        name = line[:m.start()].strip()
        qty = _HALAL_QTY_RE.match(name)
        if qty:
            name = qty.group(1).strip()

        if i > 0 and (i - 1) not in used:
            prev = lines[i - 1]
            prev_is_header = should_skip_line(prev) or is_summary_line(prev) or _HALAL_HEADER_RE.match(prev)
            if not _HALAL_PRICE_RE.search(prev) and not has_price(prev) and not prev_is_header and len(prev) < 40:
                name = f"{prev} {name}"
                used.add(i - 1)

        name = strip_leading_quantity(name)
        if not _usable_name(name, 3, 80):
            continue
        collector.add(name, price)

    return collector.items, None


# ── Generic ───────────────────────────────────────────────────────────────────

_CONTINUATION_UNITS_RE = re.compile(r"\d+g$|\d+lb$", re.I)


def _is_name_fragment(line: str) -> bool:
    """A short, price-less line that could be the first half of an item name."""
    return (
        len(line) < 40
        and not has_price(line)
        and not should_skip_line(line)
        and not is_summary_line(line)
    )


def parse_generic_receipt(lines: Sequence[str], participant_ids: Sequence[str]) -> tuple[list[BillItem], Optional[int]]:
    collector = _ItemCollector(participant_ids)
    used: set[int] = set()

    for i, line in enumerate(lines):
        if i in used or should_skip_line(line) or is_summary_line(line):
            continue

        # Unknown layouts give no safe anchor for a discount; drop the line
        if extract_discount(line) is not None:
            continue

        match = extract_price_from_line(line)
        if not match:
            continue

        name = line[:match.start].strip()
        name = re.sub(r"^[EOX]\s+", "", name)
        name = strip_leading_quantity(name)
        name = re.sub(r"\s+@.*$", "", name)
        name = re.sub(r"\s+[A-Z]\d+$", "", name, flags=re.I).strip()

        # Name printed on the line above: "ORGANIC STRAWBERRIES" / "1LB  4.99"
        if len(name) < 3 and i > 0 and (i - 1) not in used and _is_name_fragment(lines[i - 1]):
            name = f"{lines[i - 1]} {name}".strip()
            used.add(i - 1)

        # Name wrapped onto the line below: "Greek Yogurt  5.49" / "plain 500g"
        if len(name) >= 3 and i + 1 < len(lines):
            nxt = lines[i + 1]
            if (
                not has_price(nxt)
                and len(nxt) < 30
                and (nxt[:1].islower() or _CONTINUATION_UNITS_RE.search(nxt))
            ):
                name = f"{name} {nxt}"
                used.add(i + 1)

        if not _usable_name(name, 3, 60):
            continue
        collector.add(name, match.price)

    return collector.items, None


# ── Router ────────────────────────────────────────────────────────────────────

StoreParser = Callable[[Sequence[str], Sequence[str]], tuple[list[BillItem], Optional[int]]]

STORE_PARSERS: dict[str, StoreParser] = {
    "Walmart":      parse_walmart_receipt,
    "Costco":       parse_costco_receipt,
    "Halal Market": parse_halal_receipt,
}


def parse_receipt_text(text: str, participant_ids: Sequence[str] = ()) -> ParsedReceiptText:
    """
    Parse OCR text into items and totals.

    Items are assigned to every participant with an equal split; the caller
    adjusts assignments afterwards.
    """
    lines = split_lines(text)
    store = match_store(text)
    parser = STORE_PARSERS.get(store, parse_generic_receipt)
    logger.info("Parsing %d lines as %s receipt", len(lines), store or "generic")

    items, expected = parser(lines, participant_ids)
    totals = extract_totals(lines)

    return ParsedReceiptText(
        store_name=store or "Receipt",
        receipt_date=extract_date_from_lines(lines),
        items=items,
        receipt_total=totals.receipt_total,
        tax_amount=totals.tax_amount,
        total_amount=totals.total_amount,
        expected_item_count=expected,
    )
