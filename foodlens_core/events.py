"""Newline-delimited JSON records streamed back to the caller."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_READY = "ready"
STATUS_NO_MATCH = "no-match"
STATUS_LOW_OCR = "low-ocr"
STATUS_ERROR = "error"

TERMINAL_STATUSES = frozenset({STATUS_READY, STATUS_NO_MATCH, STATUS_LOW_OCR, STATUS_ERROR})


class StreamEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_ndjson(self) -> bytes:
        return (self.model_dump_json(by_alias=True) + "\n").encode("utf-8")


class ImageEvent(StreamEvent):
    type: Literal["image"] = "image"
    image: str
    width: int
    height: int


class BoxesEvent(StreamEvent):
    type: Literal["boxes"] = "boxes"
    boxes: list[dict[str, Any]] = Field(default_factory=list)
    detection_count: int = 0


class ProgressEvent(StreamEvent):
    type: Literal["product-progress"] = "product-progress"
    index: int
    status: str
    score: float = 0.0
    prompt: str = ""
    box_id: str = ""
    bounding_box: dict[str, float] = Field(default_factory=dict)


class ProductEvent(StreamEvent):
    type: Literal["product"] = "product"
    index: int
    status: str
    title: str = ""
    off_image: str | None = None
    off_link: str | None = None
    code: str | None = None
    barcode: str | None = None
    off_confidence: float = 0.0
    off_source: str = "none"
    off_alternatives: list[dict[str, Any]] = Field(default_factory=list)
    brand_candidate: str | None = None
    product_candidate: str | None = None
    keywords: list[str] = Field(default_factory=list)
    attributes: list[str] = Field(default_factory=list)
    search_candidates: list[str] = Field(default_factory=list)
    message: str | None = None


class NoProductsEvent(StreamEvent):
    type: Literal["no-products"] = "no-products"
    message: str


class ErrorEvent(StreamEvent):
    type: Literal["error"] = "error"
    message: str


class DoneEvent(StreamEvent):
    type: Literal["done"] = "done"
