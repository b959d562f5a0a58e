"""
Receipt text helpers shared by every store parser and by the vision path.

Each heuristic is a small predicate or extractor so it can be tested on its
own; the parsers in receipt_parsers.py compose them in a fixed order:
skip-classifier → summary-classifier → price extractor → name cleaner.
"""
import re
from decimal import Decimal
from typing import NamedTuple, Optional

# ── Store detection ───────────────────────────────────────────────────────────

# Ordered (pattern, canonical name) table.  First match wins, so the more
# specific patterns sit above the generic ones.  Used both to classify OCR
# text and to normalise store names returned by the vision model.
STORE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"WAL[*\s\-_]?MART", re.I),                                  "Walmart"),
    (re.compile(r"HALAL\s*MARKET|FORT\s*WAYNE\s*HALAL|FWHALALMARKET|HALAL", re.I), "Halal Market"),
    (re.compile(r"COSTCO|WHOLESALE", re.I),                                    "Costco"),
    (re.compile(r"SAM'?S\s*CLUB", re.I),                                       "Sam's Club"),
    (re.compile(r"TARGET", re.I),                                              "Target"),
    (re.compile(r"KROGER", re.I),                                              "Kroger"),
    (re.compile(r"FRESH\s*THYME", re.I),                                       "Fresh Thyme"),
    (re.compile(r"TRADER\s*JOE", re.I),                                        "Trader Joe's"),
    (re.compile(r"WHOLE\s*FOODS", re.I),                                       "Whole Foods"),
    (re.compile(r"\bALDI\b", re.I),                                            "Aldi"),
    (re.compile(r"MEIJER", re.I),                                              "Meijer"),
    (re.compile(r"DOLLAR\s*GENERAL", re.I),                                    "Dollar General"),
    (re.compile(r"DOLLAR\s*TREE", re.I),                                       "Dollar Tree"),
]


def match_store(text: str) -> Optional[str]:
    """Return the canonical store name for the first matching pattern, else None."""
    for pattern, name in STORE_PATTERNS:
        if pattern.search(text):
            return name
    return None


def normalize_store_name(store_name: str) -> str:
    """Map a free-form store name onto its canonical spelling; unknown names pass through."""
    cleaned = store_name.strip()
    return match_store(cleaned) or cleaned


# ── Skip classifier ───────────────────────────────────────────────────────────

_SKIP_PATTERNS = [
    re.compile(r"^(ST#|OP#|TE#|TR#|TC#|TID|PID|AID|TVR|TSI|CV Member|Seq|App#|Tran ID|RRN|FID)(?![A-Za-z])", re.I),
    re.compile(r"^(STORE|CASHIER|CUSTOMER|CASH|REG|INVOICE|SALE|SELF-CHECKOUT)\b", re.I),
    re.compile(r"^(Resp:|Sales Check #|Entry Method|FTFM|APPROVED)", re.I),
    re.compile(r"^(WAL\*MART|Save money|Live better)", re.I),
    re.compile(r"^(DISCOVER|AMOUNT|CHANGE)\b", re.I),
    re.compile(r"^(VISA|MASTERCARD|DEBIT|CREDIT|TEND)", re.I),
    re.compile(r"^(DAIRY|FROZEN|PRODUCE|POULTRY|SEAFOOD|BAKERY|MEAT|DELI)$", re.I),
    re.compile(r"^(Thank You|Have A Nice Day|For Your Business)", re.I),
    re.compile(r"^#\s*ITEMS\s*SOLD", re.I),
]
_DATE_START_RE   = re.compile(r"^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}")
_TIME_START_RE   = re.compile(r"^\d{2}:\d{2}")
_DIGITS_ONLY_RE  = re.compile(r"^[\d\s:]+$")
_SEPARATOR_RE    = re.compile(r"^[|\-*=_]+$")
_LABEL_ONLY_RE   = re.compile(r"^[A-Z]{1,3}:\s*$")
_BARCODE_RE      = re.compile(r"^\d{10,}$")
_LONE_MARKER_RE  = re.compile(r"^[XE]\s*$")
_MASKED_CARD_RE  = re.compile(r"^\*{3,}")

# "2.38 lb @ 1.0 lb /1.12  2.67" and "3 AT 1 FOR 0.77  2.31" carry a trailing
# amount but belong to the item above them.
_WEIGHT_CALC_RE   = re.compile(r"^[\d.]+\s*lb\s*[@e]", re.I)
_QUANTITY_CALC_RE = re.compile(r"^\d+\s+AT\s+\d+\s+FOR", re.I)
_UNIT_PRICE_RE    = re.compile(r"^\d+\s*@\s*\$?\d+\.\d{2}\s*$")


def is_header_or_metadata(line: str) -> bool:
    return any(p.match(line) for p in _SKIP_PATTERNS)


def is_date_or_time(line: str) -> bool:
    return bool(_DATE_START_RE.match(line) or _TIME_START_RE.match(line))


def is_separator(line: str) -> bool:
    return bool(_SEPARATOR_RE.match(line) or _MASKED_CARD_RE.match(line))


def is_numeric_noise(line: str) -> bool:
    """Pure digits, barcodes, lone label/marker fragments."""
    return bool(
        _DIGITS_ONLY_RE.match(line)
        or _BARCODE_RE.match(line)
        or _LABEL_ONLY_RE.match(line)
        or _LONE_MARKER_RE.match(line)
    )


def is_calculation_line(line: str) -> bool:
    """Weight / multi-buy / unit-price detail lines printed under an item."""
    return bool(
        _WEIGHT_CALC_RE.match(line)
        or _QUANTITY_CALC_RE.match(line)
        or _UNIT_PRICE_RE.match(line)
    )


def should_skip_line(line: str) -> bool:
    line = line.strip()
    if len(line) < 2:
        return True
    return (
        is_header_or_metadata(line)
        or is_date_or_time(line)
        or is_separator(line)
        or is_numeric_noise(line)
        or is_calculation_line(line)
    )


_SUMMARY_RE = re.compile(
    r"^(SUB.*?TOTAL|TAX|TOTAL|BALANCE|CHANGE|VISA|CREDIT|DEBIT|APPROVED|THANK|MASTERCARD|\*+\s*TOTAL)",
    re.I,
)


def is_summary_line(line: str) -> bool:
    """Subtotal / tax / total / tender lines.  Checked before any item parsing."""
    return bool(_SUMMARY_RE.match(line.strip()))


# ── Price extraction ──────────────────────────────────────────────────────────

class PriceMatch(NamedTuple):
    price: Decimal
    start: int
    end: int


# Each pattern yields (dollars, cents).  The rightmost hit across all patterns
# wins because calculation lines put the computed amount last.
PRICE_PATTERNS = [
    re.compile(r"[$§](\d+)[.\s](\d{2})\b"),                  # $1.48, $1 48
    re.compile(r"\b(\d{1,4})\.(\d{2})\b"),                   # 4.99, 50.35
    re.compile(r"\b(\d{1,4})\.(\d{2})\s+[A-Z]\s*[A-Z]?$"),   # 4.99 N F
    re.compile(r"\b(\d{1,4}):(\d{2})$"),                     # 9:58 (OCR misread of 9.58)
]

MAX_ITEM_PRICE = Decimal("1000")


def extract_price_from_line(line: str) -> Optional[PriceMatch]:
    """Return the rightmost plausible price on the line, or None."""
    best: Optional[PriceMatch] = None
    for pattern in PRICE_PATTERNS:
        for m in pattern.finditer(line):
            price = Decimal(f"{m.group(1)}.{m.group(2)}")
            if not (0 < price < MAX_ITEM_PRICE):
                continue
            if best is None or m.start() >= best.start:
                best = PriceMatch(price, m.start(), m.end())
    return best


_ANY_PRICE_RE = re.compile(r"\d{1,4}[.\s:]\d{2}\b")


def has_price(line: str) -> bool:
    return bool(_ANY_PRICE_RE.search(line))


_DISCOUNT_RE = re.compile(r"(?:^|\s)(?:-\s*\$?(\d{1,4}\.\d{2})|\$?(\d{1,4}\.\d{2})-)\s*[A-Z]?\s*$")


def extract_discount(line: str) -> Optional[Decimal]:
    """Amount of a discount line ("3.00-" or "-3.00" at the line end), else None."""
    m = _DISCOUNT_RE.search(line)
    if not m:
        return None
    return Decimal(m.group(1) or m.group(2))


# ── Item names ────────────────────────────────────────────────────────────────

NON_ITEM_NAMES = re.compile(
    r"^(PRODUCT|QTY|AMT|ITEM|ITEMS|PRICE|SUBTOTAL|SUB TOTAL|TOTAL|TAX|BALANCE|"
    r"ST#|OP#|TE#|TR#|FID|Seq|App#|"
    r"DAIRY|FROZEN|POULTRY|PRODUCE|SEAFOOD|BAKERY|MEAT|DELI)$",
    re.I,
)


def is_non_item_name(name: str) -> bool:
    return bool(NON_ITEM_NAMES.match(name.strip()))


def strip_leading_quantity(name: str) -> str:
    return re.sub(r"^[0-9/\s]+", "", name).strip()


def clean_name(raw: str) -> str:
    """Remove OCR artifacts, codes and tax markers from an item name."""
    name = raw.strip()
    name = re.sub(r"\s+\d{1,3}CT$", "", name, flags=re.I)    # "36CT" suffix
    name = re.sub(r"\s+[A-Z]\d+$", "", name, flags=re.I)     # code suffixes like "A1"
    name = re.sub(r"\s+[|/].*$", "", name)                   # | or / and everything after
    name = re.sub(r"\s+[$§]\s*$", "", name)                  # trailing currency sign
    name = re.sub(r"\s{2,}", " ", name)
    name = re.sub(r"\s+[A-Z]$", "", name)                    # single tax letter (N, F, T)
    name = re.sub(r"\s+\d+$", "", name)                      # trailing quantity
    name = re.sub(r"\s+[NTF]F?$", "", name, flags=re.I)      # "N F" / "T" tax codes

    # Generic OCR corrections
    name = re.sub(r"0RG", "ORG", name, flags=re.I)
    name = re.sub(r"\b(\w+)\s+\1\b", r"\1", name, flags=re.I)   # ITEM ITEM -> ITEM
    return name.strip()


# ── Dates ─────────────────────────────────────────────────────────────────────

DATE_PATTERNS = [
    re.compile(r"(\d{1,2}/\d{1,2}/\d{4})\s+(\d{1,2}:\d{2}:\d{2})\s*(AM|PM)?", re.I),  # 10/17/2025 12:01:17 PM
    re.compile(r"(\d{1,2}/\d{1,2}/\d{2})\s+(\d{1,2}:\d{2}:\d{2})"),                  # 10/14/25 18:21:40
    re.compile(r"(\d{1,2}/\d{1,2}/\d{4})\s+(\d{1,2}:\d{2})"),                        # 03/14/2025 17:34
    re.compile(r"(\d{1,2}/\d{1,2}/\d{2})\s+(\d{1,2}:\d{2})"),
    re.compile(r"(\d{4}-\d{1,2}-\d{1,2})"),                                          # ISO
    re.compile(r"(\d{1,2}-\d{1,2}-\d{2,4})"),
    re.compile(r"(\d{1,2}/\d{1,2}/\d{2,4})"),
]


def extract_date_from_lines(lines: list[str]) -> Optional[str]:
    """First date-looking string in line order (pattern order breaks ties within a line)."""
    for line in lines:
        for pattern in DATE_PATTERNS:
            m = pattern.search(line)
            if m:
                return m.group(0).strip()
    return None


def split_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]
