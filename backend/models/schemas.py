from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

CENT = Decimal("0.01")


def to_cents(value) -> Decimal:
    """Coerce a number (float, str, int or Decimal) to a Decimal rounded to cents."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# ── Line Item ──────────────────────────────────────────
class ExtractedLineItem(BaseModel):
    name: str
    price: Decimal = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("price", mode="before")
    @classmethod
    def _price_to_cents(cls, v):
        return to_cents(v)


# ── Split Rules ────────────────────────────────────────
class EqualSplit(BaseModel):
    kind: Literal["equal"] = "equal"
    participant_ids: List[str] = Field(default_factory=list)


class PercentShare(BaseModel):
    participant_id: str
    percent: Decimal = Decimal("0")


class PercentSplit(BaseModel):
    kind: Literal["percent"] = "percent"
    shares: List[PercentShare] = Field(default_factory=list)


class FixedShare(BaseModel):
    participant_id: str
    amount: Decimal = Decimal("0")

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_to_cents(cls, v):
        return to_cents(v)


class FixedSplit(BaseModel):
    kind: Literal["fixed"] = "fixed"
    shares: List[FixedShare] = Field(default_factory=list)


SplitRule = Annotated[
    Union[EqualSplit, PercentSplit, FixedSplit],
    Field(discriminator="kind"),
]


class BillItem(ExtractedLineItem):
    id: Optional[str] = None
    split: SplitRule = Field(default_factory=EqualSplit)


# ── Receipt ────────────────────────────────────────────
class ReceiptParseResult(BaseModel):
    items: List[ExtractedLineItem] = []
    store_name: str = "Receipt"
    receipt_date: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax: Decimal = Decimal("0.00")
    total: Optional[Decimal] = None
    subtotal_mismatch: bool = False
    total_mismatch: bool = False
    calculated_total: Decimal = Decimal("0.00")      # sum of item prices
    calculated_with_tax: Decimal = Decimal("0.00")   # sum of item prices + tax

    def to_bill_items(self, participant_ids: List[str]) -> List[BillItem]:
        """Assign every extracted item to all participants with an equal split."""
        return [
            BillItem(
                id=f"scan{i}",
                name=item.name,
                price=item.price,
                split=EqualSplit(participant_ids=list(participant_ids)),
            )
            for i, item in enumerate(self.items)
        ]


# ── OCR / Scan ─────────────────────────────────────────
class OcrResult(BaseModel):
    text: str = ""
    confidence: float = 0.0
    success: bool = False
    variant: Optional[str] = None   # minimal | original | threshold


class ScanResult(BaseModel):
    success: bool
    source: Optional[Literal["vision", "ocr"]] = None
    result: Optional[ReceiptParseResult] = None
    bill_items: List[BillItem] = []
    error_kind: Optional[str] = None    # quality | unavailable | invalid_image
    error: Optional[str] = None
    vision_error: Optional[str] = None  # why the vision path was skipped, if it was
    ocr_confidence: Optional[float] = None


# ── Expense Summary ────────────────────────────────────
class ParticipantAmount(BaseModel):
    participant_id: str
    amount: Decimal


class ExpenseSummary(BaseModel):
    grand_total: Decimal
    per_participant: List[ParticipantAmount]

    def amount_for(self, participant_id: str) -> Optional[Decimal]:
        for entry in self.per_participant:
            if entry.participant_id == participant_id:
                return entry.amount
        return None


class SummaryRequest(BaseModel):
    """Sent by the bill owner whenever items or participants change."""
    participants: List[str]
    items: List[BillItem] = []
    tax_amount: Decimal = Decimal("0")

    @field_validator("tax_amount", mode="before")
    @classmethod
    def _tax_to_cents(cls, v):
        return to_cents(v if v is not None else 0)
