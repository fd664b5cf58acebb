"""Heuristics that turn raw package OCR text into brand, name and search queries."""

from __future__ import annotations

import re
from collections.abc import Iterable

from foodlens_core.models import ParsedText

SHORT_BRAND_CHARS = 12
BRAND_UPPER_RATIO = 0.6
VALID_BARCODE_LENGTHS = (12, 13, 14)

_STRIP_PUNCT_RE = re.compile(r"[^\w\s%]|_")
_WS_RE = re.compile(r"\s+")
_DIGIT_RUN_RE = re.compile(r"(?<!\d)(\d{8,14})(?!\d)")
_ATTRIBUTE_RE = re.compile(r"(?<!\d)(\d{2,4})\s?(kg|ml|oz|cal|g|l|%)(?![a-z])", re.IGNORECASE)

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "chips": ("papas", "patatas", "chips", "crisps", "fritas", "nachos"),
    "cookies": ("galletas", "galleta", "cookies", "cookie", "biscuits", "biscuit", "crackers"),
    "cereal": ("cereal", "cereales", "avena", "oats", "granola", "muesli", "copos"),
    "dairy": (
        "leche", "milk", "yogur", "yogurt", "yoghurt", "queso", "cheese",
        "mantequilla", "butter", "nata", "cream", "lácteo", "lacteo",
    ),
    "beverage": (
        "agua", "water", "zumo", "jugo", "juice", "refresco", "soda", "cola",
        "bebida", "drink", "café", "cafe", "coffee", "cerveza", "beer",
    ),
    "chocolate": ("chocolate", "cacao", "cocoa"),
    "pasta": ("pasta", "spaghetti", "espaguetis", "macarrones", "fideos", "noodles"),
    "sauce": ("salsa", "sauce", "ketchup", "mayonesa", "mayonnaise", "mostaza", "mustard"),
    "bar": ("barrita", "barritas", "protein", "proteína", "proteina"),
}

_CATEGORY_PATTERNS: dict[str, re.Pattern[str]] = {
    category: re.compile(r"\b(" + "|".join(re.escape(t) for t in terms) + r")\b", re.IGNORECASE)
    for category, terms in CATEGORY_KEYWORDS.items()
}


def _alnum_len(text: str) -> int:
    return sum(1 for ch in text if ch.isalnum())


def clean_line(raw: str) -> str:
    line = _STRIP_PUNCT_RE.sub(" ", str(raw or ""))
    return _WS_RE.sub(" ", line).strip()


def clean_lines(text: str | Iterable[str], *, min_line_chars: int = 2, max_lines: int | None = 8) -> list[str]:
    """Split, strip punctuation, drop noise and duplicates (case-insensitive)."""
    raw_lines = text.splitlines() if isinstance(text, str) else list(text)
    seen: set[str] = set()
    out: list[str] = []
    for raw in raw_lines:
        line = clean_line(raw)
        if _alnum_len(line) < min_line_chars:
            continue
        compact = line.replace(" ", "").casefold()
        if len(set(compact)) <= 1:
            continue
        key = line.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(line)
        if max_lines is not None and len(out) >= max_lines:
            break
    return out


def extract_barcode(lines: Iterable[str]) -> str | None:
    """First 12/13/14-digit run found in the lines; shorter runs are ignored."""
    for line in lines:
        for match in _DIGIT_RUN_RE.finditer(line):
            digits = match.group(1)
            if len(digits) in VALID_BARCODE_LENGTHS:
                return digits
    return None


def _upper_ratio(text: str) -> float:
    letters = [ch for ch in text if ch.isalpha()]
    if not letters:
        return 0.0
    return sum(1 for ch in letters if ch.isupper()) / len(letters)


def classify_brand_and_name(lines: list[str]) -> tuple[str | None, str | None]:
    if not lines:
        return None, None

    first = lines[0]
    tokens = first.split()
    looks_like_brand = (len(tokens) <= 3 and _upper_ratio(first) >= BRAND_UPPER_RATIO) or (
        len(tokens) <= 2 and len(first) <= SHORT_BRAND_CHARS
    )
    if looks_like_brand:
        name = " ".join(lines[1:3]).strip() or None
        return first, name

    name_lines = lines[:2] if len(tokens) < 4 else lines[:1]
    name = " ".join(name_lines).strip()
    brand = name if len(name) <= SHORT_BRAND_CHARS and len(name.split()) <= 2 else None
    return brand, name or None


def extract_keywords(lines: Iterable[str]) -> set[str]:
    found: set[str] = set()
    for line in lines:
        for pattern in _CATEGORY_PATTERNS.values():
            for match in pattern.finditer(line):
                found.add(match.group(1).lower())
    return found


def extract_attributes(lines: Iterable[str]) -> set[str]:
    found: set[str] = set()
    for line in lines:
        for match in _ATTRIBUTE_RE.finditer(line):
            found.add(f"{match.group(1)}{match.group(2).lower()}")
    return found


def keyword_categories(keywords: Iterable[str]) -> set[str]:
    """Categories any of the given keywords belongs to."""
    lowered = {k.lower() for k in keywords}
    return {
        category for category, terms in CATEGORY_KEYWORDS.items()
        if lowered.intersection(t.lower() for t in terms)
    }


def parse_lines(lines: list[str]) -> ParsedText:
    brand, name = classify_brand_and_name(lines)
    return ParsedText(
        brand=brand,
        product_name=name,
        keywords=frozenset(extract_keywords(lines)),
        attributes=frozenset(extract_attributes(lines)),
        raw_lines=tuple(lines),
    )


def _has_token(base: str, token: str) -> bool:
    return token.casefold() in base.casefold().split()


def build_search_candidates(parsed: ParsedText) -> list[str]:
    """Ordered, de-duplicated catalog queries, most specific first."""
    lines = list(parsed.raw_lines)
    brand = parsed.brand or ""
    name = parsed.product_name or ""
    ordered: list[str] = []

    ordered.append(" ".join(lines[:2]))
    ordered.append(" ".join(lines[:3]))
    if brand and name and brand.casefold() not in name.casefold():
        ordered.append(f"{brand} {name}")
    ordered.append(name)
    ordered.append(brand)
    for kw in sorted(parsed.keywords):
        if brand and not _has_token(brand, kw):
            ordered.append(f"{brand} {kw}")
        if name and not _has_token(name, kw):
            ordered.append(f"{name} {kw}")
    if name:
        for attr in sorted(parsed.attributes):
            if not _has_token(name, attr):
                ordered.append(f"{name} {attr}")

    seen: set[str] = set()
    out: list[str] = []
    for query in ordered:
        query = _WS_RE.sub(" ", query).strip()
        key = query.casefold()
        if not query or key in seen:
            continue
        seen.add(key)
        out.append(query)
    return out
