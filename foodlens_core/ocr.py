"""Crop preprocessing, OCR providers and the per-region text extraction step."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Protocol

import cv2
import httpx
import numpy as np
import pytesseract
from pydantic import ValidationError

from foodlens_core.errors import OCRError, PipelineError
from foodlens_core.google_vision import GoogleVisionClient
from foodlens_core.image_io import encode_base64_jpeg
from foodlens_core.models import ParsedText
from foodlens_core.text_parser import build_search_candidates, clean_lines, extract_barcode, parse_lines

logger = logging.getLogger("foodlens_core.ocr")

DEFAULT_LANGUAGES: tuple[str, ...] = ("es", "en")
MAX_LANGUAGE_HINTS = 4

_LANGUAGE_ALIASES: dict[str, str] = {
    "es": "es", "spa": "es", "spanish": "es", "español": "es", "espanol": "es",
    "en": "en", "eng": "en", "english": "en",
    "fr": "fr", "fra": "fr", "fre": "fr", "french": "fr",
    "pt": "pt", "por": "pt", "portuguese": "pt",
    "it": "it", "ita": "it", "italian": "it",
    "de": "de", "deu": "de", "ger": "de", "german": "de",
    "ca": "ca", "cat": "ca", "catalan": "ca",
}

_TESSERACT_CODES: dict[str, str] = {
    "es": "spa", "en": "eng", "fr": "fra", "pt": "por", "it": "ita", "de": "deu", "ca": "cat",
}

_LANG_SPLIT_RE = re.compile(r"[+,\s]+")
_SHARPEN_KERNEL = np.array([[0, -1, 0], [-1, 5, -1], [0, -1, 0]], dtype=np.float32)


def resolve_language_hints(
    raw: str | None,
    default: tuple[str, ...] | list[str] = DEFAULT_LANGUAGES,
    limit: int = MAX_LANGUAGE_HINTS,
) -> list[str]:
    """Map a ``+``/``,``/space separated language field to ISO 639-1 hints."""
    hints: list[str] = []
    for token in _LANG_SPLIT_RE.split(str(raw or "").strip().lower()):
        if not token:
            continue
        code = _LANGUAGE_ALIASES.get(token)
        if code is None and len(token) == 2 and token.isalpha():
            code = token
        if code and code not in hints:
            hints.append(code)
    if not hints:
        hints = list(default)
    return hints[: max(1, int(limit))]


def tesseract_lang(hints: list[str]) -> str:
    codes: list[str] = []
    for hint in hints:
        code = _TESSERACT_CODES.get(hint)
        if code and code not in codes:
            codes.append(code)
    return "+".join(codes) or "eng"


def _trim_borders(img: np.ndarray, tolerance: int = 12) -> np.ndarray:
    """Cut uniform margins that match the top-left corner colour."""
    corner = img[0, 0].astype(np.int16)
    diff = np.abs(img.astype(np.int16) - corner)
    if diff.ndim == 3:
        diff = diff.max(axis=2)
    mask = (diff > tolerance).astype(np.uint8)
    if not mask.any():
        return img
    x, y, w, h = cv2.boundingRect(mask)
    if w < 8 or h < 8:
        return img
    return img[y:y + h, x:x + w]


def preprocess_crop(crop: np.ndarray, *, min_side: int = 300) -> np.ndarray:
    """Grey, contrast-stretched, sharpened crop for recognition.

    Any failure returns the untouched crop.
    """
    try:
        img = crop
        if img.ndim == 3 and img.shape[2] == 4:
            img = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
        img = _trim_borders(img)
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY) if img.ndim == 3 else img
        h, w = gray.shape[:2]
        if min(h, w) < min_side:
            gray = cv2.resize(gray, None, fx=2.0, fy=2.0, interpolation=cv2.INTER_CUBIC)
        gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
        return cv2.filter2D(gray, -1, _SHARPEN_KERNEL)
    except Exception:
        logger.warning("OCR preprocessing failed; using raw crop", exc_info=True)
        return crop


@dataclass(frozen=True)
class Recognition:
    text: str
    brand_hint: str | None = None


class TextRecognizer(Protocol):
    async def recognize(self, image: np.ndarray, language_hints: list[str]) -> Recognition: ...


class GoogleVisionOCR:
    """TEXT_DETECTION through the Vision REST API, with LOGO_DETECTION in the same request."""

    def __init__(self, vision: GoogleVisionClient, *, detect_logos: bool = True, logo_min_score: float = 0.5) -> None:
        self.vision = vision
        self.detect_logos = bool(detect_logos)
        self.logo_min_score = float(logo_min_score)

    async def recognize(self, image: np.ndarray, language_hints: list[str]) -> Recognition:
        features = [{"type": "TEXT_DETECTION"}]
        if self.detect_logos:
            features.append({"type": "LOGO_DETECTION", "maxResults": 5})
        try:
            result = await self.vision.annotate(
                encode_base64_jpeg(image, quality=90),
                features,
                language_hints=language_hints,
            )
        except (httpx.HTTPError, ValidationError, PipelineError) as exc:
            raise OCRError("Text recognition failed", component="google_vision_ocr", original_error=exc)

        logos = [
            logo for logo in result.logoAnnotations
            if logo.description.strip() and logo.score >= self.logo_min_score
        ]
        brand_hint = max(logos, key=lambda logo: logo.score).description.strip() if logos else None
        return Recognition(text=result.text, brand_hint=brand_hint)


class TesseractOCR:
    """Local Tesseract via pytesseract, run in the default executor."""

    def __init__(self, *, psm: int = 6, tesseract_cmd: str | None = None) -> None:
        self.psm = int(psm)
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def _recognize_sync(self, image: np.ndarray, lang: str) -> str:
        return pytesseract.image_to_string(image, lang=lang, config=f"--oem 1 --psm {self.psm}")

    async def recognize(self, image: np.ndarray, language_hints: list[str]) -> Recognition:
        loop = asyncio.get_event_loop()
        try:
            text = await loop.run_in_executor(
                None, self._recognize_sync, image, tesseract_lang(language_hints)
            )
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
            raise OCRError("Tesseract failed", component="tesseract_ocr", original_error=exc)
        return Recognition(text=text)


def apply_brand_hint(parsed: ParsedText, hint: str | None) -> ParsedText:
    """Prefer a detected logo over the text heuristic's brand guess."""
    hint = " ".join(str(hint or "").split())
    if not hint or (parsed.brand or "").casefold() == hint.casefold():
        return parsed
    name = parsed.product_name
    if name is None and parsed.brand:
        name = parsed.brand
    return replace(parsed, brand=hint, product_name=name)


@dataclass(frozen=True)
class TextExtraction:
    parsed: ParsedText
    barcode: str | None = None
    search_candidates: tuple[str, ...] = ()
    language_hints: tuple[str, ...] = ()
    low_quality: bool = False
    brand_hint: str | None = None
    raw_text: str = field(default="", repr=False)

    @property
    def char_count(self) -> int:
        return self.parsed.char_count


class TextExtractor:
    """Crop in, ``TextExtraction`` out. ``OCRError`` propagates to the caller."""

    def __init__(
        self,
        recognizer: TextRecognizer,
        *,
        min_chars: int = 6,
        min_line_chars: int = 2,
        max_lines: int = 8,
        default_languages: tuple[str, ...] = DEFAULT_LANGUAGES,
    ) -> None:
        self.recognizer = recognizer
        self.min_chars = max(0, int(min_chars))
        self.min_line_chars = max(1, int(min_line_chars))
        self.max_lines = max(1, int(max_lines))
        self.default_languages = tuple(default_languages)

    def interpret(
        self, raw_text: str, language_hints: list[str] | None = None, brand_hint: str | None = None
    ) -> TextExtraction:
        lines = clean_lines(raw_text, min_line_chars=self.min_line_chars, max_lines=self.max_lines)
        all_lines = clean_lines(raw_text, min_line_chars=self.min_line_chars, max_lines=None)
        parsed = apply_brand_hint(parse_lines(lines), brand_hint)
        barcode = extract_barcode(all_lines)
        low_quality = parsed.char_count < self.min_chars
        return TextExtraction(
            parsed=parsed,
            barcode=barcode,
            search_candidates=() if low_quality else tuple(build_search_candidates(parsed)),
            language_hints=tuple(language_hints or ()),
            low_quality=low_quality,
            brand_hint=brand_hint,
            raw_text=raw_text,
        )

    async def extract(self, crop: np.ndarray, lang: str | None = None) -> TextExtraction:
        hints = resolve_language_hints(lang, default=self.default_languages)
        loop = asyncio.get_event_loop()
        prepared = await loop.run_in_executor(None, preprocess_crop, crop)
        recognition = await self.recognizer.recognize(prepared, hints)
        if recognition.brand_hint:
            logger.debug("Logo brand hint: %s", recognition.brand_hint)
        return self.interpret(recognition.text or "", hints, brand_hint=recognition.brand_hint)
