"""
Vision Service — extracts structured receipt data with Claude Vision.

This is the primary extraction path.  The image is normalised and
re-encoded, sent with a constrained JSON-only instruction, and the reply is
validated before it becomes a ReceiptParseResult.

Output budget: the initial max_tokens is picked from the prepared image size
(bigger receipts usually mean more items).  A reply cut off by the token
ceiling is never parsed; the ceiling is doubled and the request retried, up
to MAX_ATTEMPTS, capped at MAX_OUTPUT_TOKENS.  Refusals and empty or
malformed replies fail immediately since retrying will not change them.
"""
import base64
import io
import json
import logging
import os
import re
from decimal import Decimal, InvalidOperation
from typing import Optional

import anthropic
from PIL import Image, ImageOps
from pydantic import ValidationError

from models.schemas import ExtractedLineItem, ReceiptParseResult
from services.receipt_text import normalize_store_name
from services.totals_service import finalize_receipt

logger = logging.getLogger("splitly.vision")

VISION_MODEL = os.environ.get("VISION_MODEL", "claude-sonnet-4-5")

# Claude Vision's optimal long side for dense text
VISION_MAX_DIMENSION = 1568
VISION_JPEG_QUALITY = 92

# (payload size upper bound in bytes, initial max_tokens)
TOKEN_BUDGET_TIERS = [
    (100 * 1024, 2048),
    (300 * 1024, 4096),
    (600 * 1024, 6144),
]
MAX_OUTPUT_TOKENS = 8192
MAX_ATTEMPTS = 3

# Amounts at or above this are misreads, not receipt figures
MAX_AMOUNT = Decimal("1000000")

TEMPERATURE = 0.1
TOP_K = 40

RECEIPT_PROMPT = """You are a receipt data extractor. Read this store receipt image and output ONLY a JSON object (no prose, no markdown).

Rules:
1. One entry per purchased item. Clean the name: drop barcodes, item codes and trailing tax-code letters (N, F, T, A).
2. price is the final amount charged for the line, as a number with 2 decimals.
3. Discount lines (amounts ending in "-" or starting with "-", "INST SV", "SAVINGS") are NOT items: subtract them from the item they belong to.
4. Weight and quantity detail lines ("2.38 lb @ 1.12", "3 AT 1 FOR 0.77", "2 @ 3.99") belong to the item above; never emit them as items.
5. Copy SUBTOTAL, TAX and TOTAL as printed. Use null when a value is not on the receipt.

{"store_name": "string or null", "receipt_date": "string or null", "items": [{"name": "Item", "price": 12.99}], "subtotal": 100.00, "tax": 1.33, "total": 101.33}"""


# ── Errors ────────────────────────────────────────────────────────────────────

class VisionError(Exception):
    """Base class for vision extraction failures.  `kind` tells the caller how to react."""
    kind = "vision"


class VisionUnavailableError(VisionError):
    """No API key / client configured — fall back to local OCR."""
    kind = "configuration"


class VisionTruncatedError(VisionError):
    """Reply still cut off by the output ceiling after every retry."""
    kind = "too_complex"


class VisionContentError(VisionError):
    """Refused, empty, or not the JSON shape asked for."""
    kind = "content"


class VisionRequestError(VisionError):
    """SDK or network failure talking to the model."""
    kind = "request"


# ── Image preparation ─────────────────────────────────────────────────────────

def _detect_media_type(image_bytes: bytes) -> str:
    if image_bytes[:4] == b'\x89PNG':
        return "image/png"
    if image_bytes[:3] == b'\xff\xd8\xff':
        return "image/jpeg"
    if image_bytes[:4] == b'RIFF' and image_bytes[8:12] == b'WEBP':
        return "image/webp"
    if image_bytes[:4] == b'GIF8':
        return "image/gif"
    return "image/jpeg"   # HEIC etc. are re-encoded below


def _prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + compress an image so it fits Claude Vision limits:
    EXIF orientation applied, long side ≤ 1568px, re-encoded as JPEG.
    Returns (bytes, media_type).  Undecodable input is sent as-is.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        w, h = img.size
        long_side = max(w, h)
        if long_side > VISION_MAX_DIMENSION:
            scale = VISION_MAX_DIMENSION / long_side
            img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=VISION_JPEG_QUALITY, optimize=True)
        compressed = buf.getvalue()
        logger.debug("Image size: %d KB → %d KB", len(image_bytes) // 1024, len(compressed) // 1024)
        return compressed, "image/jpeg"
    except Exception as e:
        logger.warning("Image prep failed (%s), sending original", e)
        return image_bytes, _detect_media_type(image_bytes)


def budget_for_size(size_bytes: int) -> int:
    """Initial output-token ceiling for a prepared image of the given size."""
    for limit, tokens in TOKEN_BUDGET_TIERS:
        if size_bytes < limit:
            return tokens
    return MAX_OUTPUT_TOKENS


# ── Response handling ─────────────────────────────────────────────────────────

def strip_code_fences(raw: str) -> str:
    raw = raw.strip()
    raw = re.sub(r'^```[a-zA-Z]*\s*', '', raw)
    raw = re.sub(r'\s*```$', '', raw)
    return raw.strip()


def _response_text(message) -> str:
    return "".join(
        getattr(block, "text", "") for block in (message.content or [])
        if getattr(block, "type", "text") == "text"
    )


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or abs(amount) >= MAX_AMOUNT:
        return None
    return amount


def parse_vision_payload(raw: str) -> ReceiptParseResult:
    """Validate the model's JSON reply and reconcile it into a ReceiptParseResult."""
    text = strip_code_fences(raw)
    if not text:
        raise VisionContentError("Empty response from vision model")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise VisionContentError(f"Vision response is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("items"), list):
        raise VisionContentError("Invalid response structure: missing items array")

    items: list[ExtractedLineItem] = []
    for entry in data["items"]:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip()
        price = _to_decimal(entry.get("price"))
        if not name or price is None or price < 0:
            logger.debug("Skipping unusable vision item: %r", entry)
            continue
        items.append(ExtractedLineItem(name=name, price=price))

    store = data.get("store_name") or data.get("store")
    receipt_date = data.get("receipt_date")
    try:
        return finalize_receipt(
            items,
            receipt_total=_to_decimal(data.get("subtotal")),
            tax_amount=_to_decimal(data.get("tax")),
            total_amount=_to_decimal(data.get("total")),
            store_name=normalize_store_name(str(store)) if store else None,
            receipt_date=str(receipt_date) if receipt_date else None,
        )
    except (ValidationError, InvalidOperation) as e:
        raise VisionContentError(f"Vision response has unusable fields: {e}") from e


# ── Extractor ─────────────────────────────────────────────────────────────────

class VisionExtractor:
    """Claude Vision client wrapper.  Pass `client` to inject a fake in tests."""

    def __init__(self, client=None, api_key: Optional[str] = None, model: str = VISION_MODEL):
        if client is None and api_key:
            client = anthropic.AsyncAnthropic(api_key=api_key)
        self.client = client
        self.model = model

    @classmethod
    def from_env(cls) -> "VisionExtractor":
        return cls(api_key=os.environ.get("ANTHROPIC_API_KEY", ""))

    @property
    def available(self) -> bool:
        return self.client is not None

    async def _request(self, b64: str, media_type: str, max_tokens: int):
        try:
            return await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=TEMPERATURE,
                top_k=TOP_K,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": b64,
                            },
                        },
                        {"type": "text", "text": RECEIPT_PROMPT},
                    ],
                }],
            )
        except anthropic.APIError as e:
            raise VisionRequestError(f"Vision request failed: {e}") from e

    async def extract(self, image_bytes: bytes) -> ReceiptParseResult:
        """
        Extract a receipt from raw image bytes.

        Raises a VisionError subclass on failure; never returns a result
        built from a truncated reply.
        """
        if not self.available:
            raise VisionUnavailableError("Vision model not configured (ANTHROPIC_API_KEY missing)")

        vision_bytes, media_type = _prepare_image_for_vision(image_bytes)
        b64 = base64.standard_b64encode(vision_bytes).decode()
        max_tokens = budget_for_size(len(vision_bytes))

        for attempt in range(1, MAX_ATTEMPTS + 1):
            logger.info("Vision attempt %d/%d: %d KB %s, max_tokens=%d",
                        attempt, MAX_ATTEMPTS, len(vision_bytes) // 1024, media_type, max_tokens)
            message = await self._request(b64, media_type, max_tokens)
            stop_reason = getattr(message, "stop_reason", None)

            if stop_reason == "max_tokens":
                if max_tokens >= MAX_OUTPUT_TOKENS or attempt == MAX_ATTEMPTS:
                    break
                max_tokens = min(max_tokens * 2, MAX_OUTPUT_TOKENS)
                logger.warning("Vision reply truncated, retrying with max_tokens=%d", max_tokens)
                continue

            if stop_reason == "refusal":
                raise VisionContentError("Vision model refused the request (safety filter)")
            if stop_reason not in ("end_turn", "stop_sequence"):
                raise VisionContentError(f"Unexpected stop reason from vision model: {stop_reason}")

            result = parse_vision_payload(_response_text(message))
            logger.info("Vision extracted %d items from %s", len(result.items), result.store_name)
            return result

        raise VisionTruncatedError(
            f"Receipt too complex: reply still truncated at {max_tokens} output tokens "
            "(try cropping the receipt or a clearer photo)"
        )
