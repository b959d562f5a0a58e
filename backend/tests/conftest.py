"""
Shared fixtures for backend tests.

No network and no Tesseract binary are needed: vision tests use the fake
Anthropic client from fakes.py and OCR tests inject a fake engine.
"""
from types import SimpleNamespace

import pytest

from fakes import (
    COSTCO_RECEIPT,
    GENERIC_RECEIPT,
    HALAL_RECEIPT,
    WALMART_RECEIPT,
    image_bytes,
)


@pytest.fixture
def png_bytes():
    return image_bytes()


@pytest.fixture
def receipts():
    return SimpleNamespace(
        walmart=WALMART_RECEIPT,
        costco=COSTCO_RECEIPT,
        halal=HALAL_RECEIPT,
        generic=GENERIC_RECEIPT,
    )
