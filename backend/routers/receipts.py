"""
Receipts Router

POST /api/receipts/scan — upload a receipt image, extract items and totals

Nothing is stored: the caller merges the returned items into its bill.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from models.schemas import ScanResult
from services.image_preprocessing import InvalidImageError
from services.scan_service import ImageTooLargeError, ReceiptScanner

logger = logging.getLogger("splitly.receipts")
router = APIRouter()

_scanner: Optional[ReceiptScanner] = None


def get_scanner() -> ReceiptScanner:
    """Shared scanner built from the environment on first use."""
    global _scanner
    if _scanner is None:
        _scanner = ReceiptScanner()
    return _scanner


def _parse_participant_ids(raw: Optional[str]) -> list[str]:
    """participant_ids form field: a JSON list of strings (or empty)."""
    if not raw or not raw.strip():
        return []
    try:
        ids = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=422, detail="participant_ids must be a JSON list of strings")
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        raise HTTPException(status_code=422, detail="participant_ids must be a JSON list of strings")
    return ids


@router.post("/scan", response_model=ScanResult)
async def scan_receipt(
    file: UploadFile = File(...),
    participant_ids: Optional[str] = Form(None),   # JSON ["alice", "bob"]
    scanner: ReceiptScanner = Depends(get_scanner),
):
    """
    Run the extraction pipeline on an uploaded image.

    Every extracted item comes back as a bill item split equally between
    participant_ids.  A receipt with no readable items is still a 200 with an
    empty list; an unreadable photo is a 422 telling the user to retake it.
    """
    ids = _parse_participant_ids(participant_ids)
    contents = await file.read()

    try:
        result = await scanner.scan(contents, ids)
    except ImageTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except InvalidImageError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if not result.success:
        logger.warning("Scan of %s failed: %s (%s)", file.filename, result.error_kind, result.error)
        raise HTTPException(
            status_code=422,
            detail={"kind": result.error_kind, "message": result.error},
        )

    logger.info("Scanned %s via %s: %d items", file.filename, result.source, len(result.bill_items))
    return result
