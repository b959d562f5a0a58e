"""
OCR Service — extracts text from receipt images using Tesseract.

The image is run through up to three preprocessing variants in a fixed order
(minimal → original → threshold).  Each attempt is scored on confidence,
length and how many price-like strings it contains, so a long, price-rich
transcription beats a short confident one.  An excellent early attempt stops
the loop, which keeps easy receipts fast.
"""
import logging
import math
import os
import re
from typing import Callable, Optional

from models.schemas import OcrResult
from services.image_preprocessing import (  # noqa: F401
    DEFAULT_MAX_DIMENSION,
    InvalidImageError,
    build_variants,
    load_image,
    scale_image,
)

logger = logging.getLogger("splitly.ocr")

try:
    import pytesseract
    from PIL import Image
    OCR_AVAILABLE = True
except ImportError:
    OCR_AVAILABLE = False
    logger.warning("pytesseract/Pillow not available — OCR disabled")

OCR_MAX_DIMENSION = int(os.environ.get("OCR_MAX_DIMENSION", DEFAULT_MAX_DIMENSION))

TESSERACT_CONFIG = (
    "--psm 6 -c preserve_interword_spaces=1 "
    "-c tessedit_char_whitelist='0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz$.,:%&/-() '"
)

MIN_TEXT_LENGTH = 30
MIN_CONFIDENCE = 15.0

# Early exit: stop trying variants once one clears all three bars
EARLY_EXIT_CONFIDENCE = 70.0
EARLY_EXIT_PRICES = 3
EARLY_EXIT_LENGTH = 100

PRICE_RE = re.compile(r"\$?\d+\.\d{2}")

# (text, mean word confidence 0–100)
OcrEngine = Callable[["Image.Image"], tuple[str, float]]
ProgressCallback = Callable[[int], None]


class OcrUnavailableError(RuntimeError):
    """Raised when pytesseract or the tesseract binary is missing."""


def tesseract_engine(image: "Image.Image") -> tuple[str, float]:
    """Run Tesseract once; rebuild the text line by line from the word data."""
    if not OCR_AVAILABLE:
        raise OcrUnavailableError("OCR dependencies not installed (pytesseract, Pillow)")
    try:
        data = pytesseract.image_to_data(
            image, config=TESSERACT_CONFIG, output_type=pytesseract.Output.DICT
        )
    except pytesseract.TesseractNotFoundError as e:
        raise OcrUnavailableError("tesseract binary not found in PATH") from e

    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []
    for i, word in enumerate(data["text"]):
        conf = float(data["conf"][i])
        if conf < 0 or not word.strip():
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return text, confidence


def score_result(text: str, confidence: float) -> float:
    """confidence × √length × (1 + 2 × price matches)."""
    price_count = len(PRICE_RE.findall(text))
    return confidence * math.sqrt(len(text)) * (1 + 2 * price_count)


def _is_excellent(text: str, confidence: float) -> bool:
    return (
        confidence > EARLY_EXIT_CONFIDENCE
        and len(PRICE_RE.findall(text)) >= EARLY_EXIT_PRICES
        and len(text) >= EARLY_EXIT_LENGTH
    )


class _Progress:
    """Wraps a progress callback so reported percentages never go backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.last = 0

    def report(self, percent: int) -> None:
        if self.callback is None or percent <= self.last:
            return
        self.last = percent
        self.callback(percent)


class TextRecognizer:
    """Runs the OCR engine over preprocessed variants and keeps the best-scoring transcription."""

    def __init__(self, engine: Optional[OcrEngine] = None, max_dimension: int = OCR_MAX_DIMENSION):
        self.engine = engine or tesseract_engine
        self.max_dimension = max_dimension

    def recognize(self, image_bytes: bytes, on_progress: Optional[ProgressCallback] = None) -> OcrResult:
        """
        Return the best transcription.  success=False means the text is too
        short or too uncertain to parse; callers fall back to manual entry.
        """
        progress = _Progress(on_progress)

        image = load_image(image_bytes)
        progress.report(10)
        scaled = scale_image(image, self.max_dimension)
        progress.report(15)
        variants = build_variants(scaled, self.max_dimension)
        progress.report(20)

        best_text, best_conf, best_variant = "", 0.0, None
        best_score = -1.0
        for n, variant in enumerate(variants, start=1):
            text, conf = self.engine(variant.image)
            text = text.strip()
            score = score_result(text, conf)
            logger.debug("OCR variant %s: conf=%.1f len=%d score=%.1f",
                         variant.name, conf, len(text), score)
            progress.report(20 + (45 * n) // len(variants))

            if len(text) >= MIN_TEXT_LENGTH and score > best_score:
                best_text, best_conf, best_variant = text, conf, variant.name
                best_score = score

            if _is_excellent(text, conf):
                logger.info("OCR early exit on variant %s", variant.name)
                break

        progress.report(70)
        success = len(best_text) >= MIN_TEXT_LENGTH and best_conf >= MIN_CONFIDENCE
        if not success:
            logger.warning("OCR produced no usable text (best conf=%.1f, len=%d)",
                           best_conf, len(best_text))
        return OcrResult(text=best_text, confidence=best_conf, success=success, variant=best_variant)
