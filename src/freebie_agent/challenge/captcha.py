from __future__ import annotations

import asyncio
import logging
import re
from io import BytesIO
from typing import Optional, Protocol

import pytesseract
from PIL import Image, ImageFilter, ImageOps


logger = logging.getLogger(__name__)

_TESSERACT_CONFIG = "--psm 7 --oem 3 -c tessedit_char_whitelist=ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class CaptchaSolver(Protocol):
    async def solve(self, image: bytes) -> str: ...


def recognize_captcha_text(image_bytes: bytes, *, min_length: int = 4, max_length: int = 8) -> str:
    """
    OCR an image challenge (distorted uppercase letters) and return the best candidate, or "" if none.

    Several cleaned-up variants of the image are tried in turn; the first that yields a plausible
    length wins.
    """
    with Image.open(BytesIO(image_bytes)) as img:
        base = img.convert("L")
        if base.width and base.width < 200:
            base = base.resize((base.width * 2, base.height * 2), Image.Resampling.LANCZOS)
        base = ImageOps.autocontrast(base)

        variants = [base, base.filter(ImageFilter.MedianFilter())]
        for threshold in (90, 110, 130, 150):
            variants.append(base.point(lambda x, t=threshold: 255 if x > t else 0))

        for variant in variants:
            text = pytesseract.image_to_string(variant, lang="eng", config=_TESSERACT_CONFIG)
            cleaned = re.sub(r"[^A-Za-z]", "", text).upper()
            if min_length <= len(cleaned) <= max_length:
                return cleaned

    return ""


class TesseractCaptchaSolver:
    """
    Local OCR solver. Runs tesseract in a worker thread so the event loop keeps running.
    """

    def __init__(self, *, tesseract_cmd: Optional[str] = None) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    async def solve(self, image: bytes) -> str:
        text = await asyncio.to_thread(recognize_captcha_text, image)
        logger.info("CAPTCHA OCR produced %d character(s)", len(text))
        return text
