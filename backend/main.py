from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import time

from routers import bills, receipts

VERSION = "0.1.0"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

# HTTP client and access-log chatter; the Anthropic SDK runs on httpx
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "anthropic")


def configure_logging(level_name: str = LOG_LEVEL) -> None:
    """One root handler for the whole service; library loggers stay at WARNING unless DEBUG."""
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    library_level = logging.DEBUG if level_name == "DEBUG" else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def cors_settings(raw_origins: str) -> dict:
    """Explicit origins allow credentials; an empty list opens CORS to any origin without them."""
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()]
    return {
        "allow_origins": origins or ["*"],
        "allow_credentials": bool(origins),
        "allow_methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["*"],
    }


configure_logging()
logger = logging.getLogger("splitly")

app = FastAPI(
    title="Splitly — Receipt Scanning & Bill Splitting",
    description="Reads receipt photos into bill items and works out who owes what",
    version=VERSION,
)
app.add_middleware(CORSMiddleware, **cors_settings(os.environ.get("CORS_ORIGINS", "")))

app.include_router(receipts.router, prefix="/api/receipts", tags=["receipts"])
app.include_router(bills.router,    prefix="/api/bills",    tags=["bills"])


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Failed requests at WARNING with timing; everything else only at DEBUG."""
    started = time.perf_counter()
    response = await call_next(request)
    status = response.status_code
    level = logging.WARNING if status >= 400 else logging.DEBUG
    if logger.isEnabledFor(level):
        logger.log(level, "%s %s → %s (%.0fms)", request.method, request.url.path, status,
                   (time.perf_counter() - started) * 1000)
    return response


@app.on_event("startup")
async def on_startup():
    from services.ocr_service import OCR_AVAILABLE
    from services.vision_service import VISION_MODEL

    vision = VISION_MODEL if os.environ.get("ANTHROPIC_API_KEY") else "off"
    logger.info("Starting Splitly v%s  LOG_LEVEL=%s  vision=%s  ocr=%s",
                VERSION, LOG_LEVEL, vision, "on" if OCR_AVAILABLE else "off")


@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


# ── Diagnostics ───────────────────────────────────────────────────────────────

def _check_tesseract() -> dict:
    from services.ocr_service import OCR_AVAILABLE
    if not OCR_AVAILABLE:
        return {"ok": False, "error": "pytesseract not installed"}
    import pytesseract
    try:
        return {"ok": True, "version": str(pytesseract.get_tesseract_version())}
    except pytesseract.TesseractNotFoundError:
        return {"ok": False, "error": "tesseract binary not found in PATH"}
    except Exception as e:
        return {"ok": False, "error": str(e)}


def _check_imaging() -> dict:
    try:
        import numpy
        import PIL
    except ImportError as e:
        return {"ok": False, "error": str(e)}
    return {"ok": True, "pillow": PIL.__version__, "numpy": numpy.__version__}


def _check_heic() -> dict:
    from services.image_preprocessing import HEIF_AVAILABLE
    if HEIF_AVAILABLE:
        return {"ok": True}
    return {"ok": False, "error": "pillow-heif not installed — HEIC photos unsupported"}


def _check_vision() -> dict:
    from services.vision_service import VISION_MODEL
    # Report presence only, never key material
    key = os.environ.get("ANTHROPIC_API_KEY", "")
    return {"ok": key.startswith("sk-"), "set": bool(key), "model": VISION_MODEL}


@app.get("/api/diagnose")
async def diagnose():
    """Check that the OCR fallback and the vision model are usable in this deployment."""
    checks = {
        "tesseract": _check_tesseract(),
        "imaging": _check_imaging(),
        "heic_support": _check_heic(),
        "vision": _check_vision(),
    }
    return {"all_ok": all(c["ok"] for c in checks.values()), "checks": checks}
