"""
Image preprocessing for local OCR.

All transforms take a Pillow image and return a new one; the caller's image
is never modified.  Pixel work is done on numpy arrays:

  scale_image    — cap the long side (aspect ratio kept) to bound OCR cost
  enhance_image  — grayscale → histogram stretch → 3×3 sharpen → optional
                   adaptive (block-mean) threshold
  build_variants — the three OCR candidates, in trial order
"""
import io
import logging
from typing import NamedTuple

import numpy as np
from PIL import Image, ImageOps

logger = logging.getLogger("splitly.preprocess")

# Register HEIC/HEIF support via pillow-heif if available
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed — HEIC files will not be supported")

DEFAULT_MAX_DIMENSION = 1800

# Adaptive threshold: half-width of the averaging window and bias below the mean
THRESHOLD_BLOCK_SIZE = 15
THRESHOLD_BIAS = 5

SHARPEN_KERNEL = np.array([
    [0, -1, 0],
    [-1, 5, -1],
    [0, -1, 0],
], dtype=np.float64)


class InvalidImageError(ValueError):
    """Raised when the supplied bytes can't be decoded as an image."""


class ImageVariant(NamedTuple):
    name: str
    image: Image.Image


def load_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into an RGB/L Pillow image with EXIF orientation applied."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except Exception as e:
        msg = str(e)
        if ("heif" in msg.lower() or "cannot identify" in msg.lower()) and not HEIF_AVAILABLE:
            raise InvalidImageError(
                f"Cannot open image ({msg}). HEIC/HEIF files require pillow-heif."
            ) from e
        raise InvalidImageError(f"Cannot open image: {msg}") from e

    image = ImageOps.exif_transpose(image)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    return image


def scale_image(image: Image.Image, max_dimension: int = DEFAULT_MAX_DIMENSION) -> Image.Image:
    """Return a copy whose longer side is at most max_dimension pixels."""
    w, h = image.size
    if w <= max_dimension and h <= max_dimension:
        return image.copy()
    scale = max_dimension / max(w, h)
    size = (max(1, int(w * scale)), max(1, int(h * scale)))
    logger.debug("Scaling %d×%d → %d×%d", w, h, size[0], size[1])
    return image.resize(size, Image.LANCZOS)


# ── Pixel transforms (float64 arrays, 0–255) ──────────────────────────────────

def to_grayscale(rgb: np.ndarray) -> np.ndarray:
    """Luminance-weighted grayscale (ITU-R BT.601)."""
    if rgb.ndim == 2:
        return rgb.astype(np.float64)
    rgb = rgb[..., :3].astype(np.float64)
    return 0.299 * rgb[..., 0] + 0.587 * rgb[..., 1] + 0.114 * rgb[..., 2]


def stretch_contrast(gray: np.ndarray) -> np.ndarray:
    """Min/max histogram stretch to the full 0–255 range.  Flat images are returned unchanged."""
    lo, hi = float(gray.min()), float(gray.max())
    if hi - lo <= 0:
        return gray.copy()
    return (gray - lo) / (hi - lo) * 255.0


def sharpen(gray: np.ndarray) -> np.ndarray:
    """Apply the fixed 3×3 sharpening kernel to interior pixels; the border row/column is kept."""
    out = gray.copy()
    h, w = gray.shape
    if h < 3 or w < 3:
        return out
    acc = np.zeros((h - 2, w - 2), dtype=np.float64)
    for ky in range(3):
        for kx in range(3):
            weight = SHARPEN_KERNEL[ky, kx]
            if weight:
                acc += weight * gray[ky:ky + h - 2, kx:kx + w - 2]
    out[1:-1, 1:-1] = np.clip(acc, 0, 255)
    return out


def adaptive_threshold(gray: np.ndarray, block_size: int = THRESHOLD_BLOCK_SIZE,
                       bias: float = THRESHOLD_BIAS) -> np.ndarray:
    """
    Block-mean binarisation: a pixel becomes white when it is brighter than
    the mean of the window [y-block, y+block) × [x-block, x+block) minus bias.
    Window sums come from a summed-area table so cost is O(pixels).
    """
    h, w = gray.shape
    table = np.zeros((h + 1, w + 1), dtype=np.float64)
    table[1:, 1:] = gray.cumsum(axis=0).cumsum(axis=1)

    ys = np.arange(h)
    xs = np.arange(w)
    y0 = np.clip(ys - block_size, 0, h)
    y1 = np.clip(ys + block_size, 0, h)
    x0 = np.clip(xs - block_size, 0, w)
    x1 = np.clip(xs + block_size, 0, w)

    sums = (
        table[np.ix_(y1, x1)]
        - table[np.ix_(y0, x1)]
        - table[np.ix_(y1, x0)]
        + table[np.ix_(y0, x0)]
    )
    counts = np.outer(y1 - y0, x1 - x0)
    means = sums / counts
    return np.where(gray > means - bias, 255.0, 0.0)


def enhance_image(image: Image.Image, skip_threshold: bool = False) -> Image.Image:
    """Run the enhancement pipeline and return a new 8-bit grayscale image."""
    pixels = to_grayscale(np.asarray(image))
    pixels = stretch_contrast(pixels)
    pixels = sharpen(pixels)
    if not skip_threshold:
        pixels = adaptive_threshold(pixels)
    return Image.fromarray(np.clip(np.rint(pixels), 0, 255).astype(np.uint8))


def build_variants(image: Image.Image, max_dimension: int = DEFAULT_MAX_DIMENSION) -> list[ImageVariant]:
    """
    OCR candidates in trial order: lightly enhanced (best on clean photos),
    scaled original, and thresholded (best on dim / low-contrast photos).
    """
    scaled = scale_image(image, max_dimension)
    return [
        ImageVariant("minimal", enhance_image(scaled, skip_threshold=True)),
        ImageVariant("original", scaled),
        ImageVariant("threshold", enhance_image(scaled, skip_threshold=False)),
    ]
