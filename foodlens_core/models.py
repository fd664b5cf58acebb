"""Value types passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np

from foodlens_core.geometry import Rect

SOURCE_BARCODE = "barcode"
SOURCE_SEARCH = "search"
SOURCE_NONE = "none"


@dataclass(frozen=True, eq=False)
class DecodedImage:
    """BGR pixel buffer decoded from an upload. Read-only for the request."""

    pixels: np.ndarray
    width: int
    height: int
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class DetectionCandidate:
    label: str
    score: float
    rect: Rect
    source: str = "primary"


@dataclass(frozen=True)
class Region:
    id: str
    label: str
    score: float
    rect: Rect
    normalized: dict[str, float]
    source: str = "primary"
    fallback: bool = False

    def to_box(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "score": round(float(self.score), 4),
            "box": dict(self.normalized),
        }


@dataclass(frozen=True)
class ParsedText:
    brand: str | None = None
    product_name: str | None = None
    keywords: frozenset[str] = frozenset()
    attributes: frozenset[str] = frozenset()
    raw_lines: tuple[str, ...] = ()

    @property
    def char_count(self) -> int:
        return sum(len(line) for line in self.raw_lines)


@dataclass(frozen=True)
class CatalogProduct:
    code: str
    name: str
    brand: str = ""
    image_url: str | None = None
    link: str | None = None
    categories: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "brand": self.brand,
            "imageUrl": self.image_url,
            "link": self.link,
            "categories": list(self.categories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CatalogProduct":
        return cls(
            code=str(data.get("code") or ""),
            name=str(data.get("name") or ""),
            brand=str(data.get("brand") or ""),
            image_url=data.get("imageUrl"),
            link=data.get("link"),
            categories=tuple(data.get("categories") or ()),
        )


@dataclass(frozen=True)
class CatalogMatch:
    product: CatalogProduct | None = None
    confidence: float = 0.0
    source: str = SOURCE_NONE
    alternatives: tuple[CatalogProduct, ...] = field(default_factory=tuple)

    @property
    def matched(self) -> bool:
        return self.product is not None and self.source != SOURCE_NONE
