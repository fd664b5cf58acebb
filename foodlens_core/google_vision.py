"""Google Cloud Vision ``images:annotate`` REST client and response schemas."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from foodlens_core.errors import PipelineError

logger = logging.getLogger("foodlens_core.google_vision")

DEFAULT_VISION_URL = "https://vision.googleapis.com/v1/images:annotate"


class Vertex(BaseModel):
    x: float = 0.0
    y: float = 0.0


class BoundingPoly(BaseModel):
    normalizedVertices: list[Vertex] = Field(default_factory=list)
    vertices: list[Vertex] = Field(default_factory=list)


class LocalizedObject(BaseModel):
    name: str = ""
    score: float = 0.0
    boundingPoly: BoundingPoly = Field(default_factory=BoundingPoly)


class TextAnnotation(BaseModel):
    description: str = ""
    locale: str | None = None


class EntityAnnotation(BaseModel):
    description: str = ""
    score: float = 0.0


class FullTextAnnotation(BaseModel):
    text: str = ""


class Status(BaseModel):
    code: int = 0
    message: str = ""


class AnnotateResponse(BaseModel):
    localizedObjectAnnotations: list[LocalizedObject] = Field(default_factory=list)
    textAnnotations: list[TextAnnotation] = Field(default_factory=list)
    logoAnnotations: list[EntityAnnotation] = Field(default_factory=list)
    fullTextAnnotation: FullTextAnnotation | None = None
    error: Status | None = None

    @property
    def text(self) -> str:
        if self.fullTextAnnotation is not None and self.fullTextAnnotation.text:
            return self.fullTextAnnotation.text
        if self.textAnnotations:
            return self.textAnnotations[0].description
        return ""


class BatchAnnotateResponse(BaseModel):
    responses: list[AnnotateResponse] = Field(default_factory=list)


class GoogleVisionClient:
    """Thin async wrapper over the Vision REST endpoint.

    Raises ``httpx.HTTPError`` for transport/status failures,
    ``pydantic.ValidationError`` for malformed bodies and ``PipelineError``
    when the API reports a per-image error.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str,
        url: str = DEFAULT_VISION_URL,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.http = http
        self.api_key = str(api_key or "").strip()
        self.url = url
        self.timeout_seconds = max(1.0, float(timeout_seconds))

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def annotate(
        self,
        content_b64: str,
        features: list[dict[str, Any]],
        *,
        language_hints: list[str] | None = None,
    ) -> AnnotateResponse:
        request: dict[str, Any] = {"image": {"content": content_b64}, "features": features}
        if language_hints:
            request["imageContext"] = {"languageHints": list(language_hints)}

        resp = await self.http.post(
            self.url,
            params={"key": self.api_key},
            json={"requests": [request]},
            timeout=self.timeout_seconds,
        )
        resp.raise_for_status()
        batch = BatchAnnotateResponse.model_validate(resp.json())
        if not batch.responses:
            return AnnotateResponse()
        result = batch.responses[0]
        if result.error is not None and result.error.message:
            raise PipelineError(
                f"Vision API error {result.error.code}: {result.error.message}",
                component="google_vision",
            )
        return result
