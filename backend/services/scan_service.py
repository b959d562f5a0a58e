"""
Scan Service — the receipt extraction pipeline.

Claude Vision is tried first.  When it is unconfigured or fails for any
reason, the image goes through local OCR and the store-aware text parsers.
Both paths end in the totals reconciler, and either way the caller gets a
ScanResult: pipeline failures are reported in it, not raised.
"""
import asyncio
import logging
import os
from typing import Optional, Sequence

from models.schemas import ScanResult
from services.image_preprocessing import InvalidImageError
from services.ocr_service import OcrUnavailableError, ProgressCallback, TextRecognizer
from services.receipt_parsers import parse_receipt_text
from services.totals_service import finalize_receipt
from services.vision_service import VisionError, VisionExtractor

logger = logging.getLogger("splitly.scan")

MAX_IMAGE_BYTES = int(os.environ.get("MAX_IMAGE_BYTES", 10 * 1024 * 1024))

POOR_QUALITY_MESSAGE = (
    "Could not read the receipt clearly. Try a sharper, well-lit photo "
    "with the whole receipt flat in frame, or enter the items manually."
)


class ImageTooLargeError(InvalidImageError):
    """Raised when the upload exceeds MAX_IMAGE_BYTES."""


class ReceiptScanner:
    """Vision-first extraction with local OCR fallback."""

    def __init__(self, vision: Optional[VisionExtractor] = None,
                 recognizer: Optional[TextRecognizer] = None,
                 max_image_bytes: int = MAX_IMAGE_BYTES):
        self.vision = vision if vision is not None else VisionExtractor.from_env()
        self.recognizer = recognizer if recognizer is not None else TextRecognizer()
        self.max_image_bytes = max_image_bytes

    def _check_size(self, image_bytes: bytes) -> None:
        if not image_bytes:
            raise InvalidImageError("Empty image upload")
        if len(image_bytes) > self.max_image_bytes:
            raise ImageTooLargeError(
                f"Image is {len(image_bytes) // 1024} KB; the limit is {self.max_image_bytes // 1024} KB"
            )

    async def scan(
        self,
        image_bytes: bytes,
        participant_ids: Sequence[str] = (),
        on_progress: Optional[ProgressCallback] = None,
    ) -> ScanResult:
        """
        Extract a receipt.  Raises InvalidImageError / ImageTooLargeError for
        unusable uploads; everything else comes back as a ScanResult.
        """
        self._check_size(image_bytes)
        participant_ids = list(participant_ids)

        vision_error: Optional[str] = None
        if self.vision.available:
            try:
                result = await self.vision.extract(image_bytes)
                return ScanResult(
                    success=True,
                    source="vision",
                    result=result,
                    bill_items=result.to_bill_items(participant_ids),
                )
            except VisionError as e:
                vision_error = f"{e.kind}: {e}"
                logger.warning("Vision extraction failed (%s) — falling back to OCR", vision_error)
        else:
            vision_error = "configuration: vision model not configured"
            logger.info("Vision unavailable — using local OCR")

        return await self._scan_with_ocr(image_bytes, participant_ids, vision_error, on_progress)

    async def _scan_with_ocr(self, image_bytes: bytes, participant_ids: list[str],
                             vision_error: Optional[str],
                             on_progress: Optional[ProgressCallback]) -> ScanResult:
        try:
            ocr = await asyncio.to_thread(self.recognizer.recognize, image_bytes, on_progress)
        except OcrUnavailableError as e:
            logger.error("OCR unavailable: %s", e)
            return ScanResult(success=False, error_kind="unavailable", error=str(e),
                              vision_error=vision_error)
        except InvalidImageError as e:
            return ScanResult(success=False, error_kind="invalid_image", error=str(e),
                              vision_error=vision_error)

        if not ocr.success:
            return ScanResult(success=False, error_kind="quality", error=POOR_QUALITY_MESSAGE,
                              vision_error=vision_error, ocr_confidence=ocr.confidence)

        parsed = parse_receipt_text(ocr.text, participant_ids)
        result = finalize_receipt(
            parsed.items,
            receipt_total=parsed.receipt_total,
            tax_amount=parsed.tax_amount,
            total_amount=parsed.total_amount,
            store_name=parsed.store_name,
            receipt_date=parsed.receipt_date,
        )
        if on_progress is not None:
            on_progress(100)
        logger.info("OCR extracted %d items from %s (conf %.1f)",
                    len(result.items), result.store_name, ocr.confidence)
        return ScanResult(
            success=True,
            source="ocr",
            result=result,
            bill_items=result.to_bill_items(participant_ids),
            vision_error=vision_error,
            ocr_confidence=ocr.confidence,
        )
