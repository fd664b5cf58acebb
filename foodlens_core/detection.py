"""Detection gateway: primary zero-shot detector, secondary localizer, focus refinement."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Protocol

import httpx
import numpy as np
from pydantic import BaseModel, TypeAdapter, ValidationError

from foodlens_core.errors import DetectionError, DetectorWarmingUp, PipelineError
from foodlens_core.geometry import Rect, clamp, contains, iou, normalized_box
from foodlens_core.google_vision import GoogleVisionClient
from foodlens_core.image_io import encode_base64_jpeg, resize_longest_side
from foodlens_core.models import DecodedImage, DetectionCandidate, Region
from foodlens_core.region_merger import RegionMerger

logger = logging.getLogger("foodlens_core.detection")

DETECTION_PROMPTS: tuple[str, ...] = (
    "food package",
    "snack bag",
    "bag of chips",
    "cereal box",
    "cookie package",
    "chocolate bar",
    "candy wrapper",
    "bottle",
    "drink can",
    "juice carton",
    "milk carton",
    "yogurt cup",
    "jar",
    "canned food",
    "box",
)

FOCUS_LABEL = "focus"


class HFBox(BaseModel):
    xmin: float
    ymin: float
    xmax: float
    ymax: float


class HFDetection(BaseModel):
    score: float
    label: str
    box: HFBox


_HF_DETECTIONS = TypeAdapter(list[HFDetection])


class Localizer(Protocol):
    async def localize(self, pixels: np.ndarray, min_score: float) -> list[DetectionCandidate]: ...


class ZeroShotDetector:
    """Hugging Face inference endpoint for zero-shot object detection."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_url: str,
        token: str | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.http = http
        self.api_url = api_url
        self.token = str(token or "").strip()
        self.timeout_seconds = max(1.0, float(timeout_seconds))

    async def detect(
        self, pixels: np.ndarray, labels: tuple[str, ...] | list[str], min_score: float
    ) -> list[DetectionCandidate]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = {
            "inputs": encode_base64_jpeg(pixels),
            "parameters": {"candidate_labels": list(labels)},
        }
        try:
            resp = await self.http.post(
                self.api_url, headers=headers, json=payload, timeout=self.timeout_seconds
            )
        except httpx.HTTPError as exc:
            raise DetectionError("Detector unreachable", component="detector", original_error=exc)

        if resp.status_code == 503:
            body = _safe_json(resp)
            message = str(body.get("error", "")) if isinstance(body, dict) else ""
            if "loading" in message.lower() or (isinstance(body, dict) and "estimated_time" in body):
                estimated = body.get("estimated_time") if isinstance(body, dict) else None
                raise DetectorWarmingUp(
                    message or "Detector model is loading",
                    estimated_wait=float(estimated) if isinstance(estimated, (int, float)) else None,
                    component="detector",
                )
        if resp.status_code >= 400:
            raise DetectionError(
                f"Detector HTTP {resp.status_code}: {resp.text[:200]}", component="detector"
            )

        body = _safe_json(resp)
        if isinstance(body, dict) and body.get("error"):
            raise DetectionError(f"Detector error: {body['error']}", component="detector")
        try:
            detections = _HF_DETECTIONS.validate_python(body)
        except ValidationError as exc:
            raise DetectionError("Malformed detector response", component="detector", original_error=exc)

        return [
            DetectionCandidate(
                label=d.label.strip().lower(),
                score=float(d.score),
                rect=Rect(d.box.xmin, d.box.ymin, d.box.xmax, d.box.ymax),
                source="primary",
            )
            for d in detections
            if float(d.score) >= min_score
        ]


class GoogleObjectLocalizer:
    """Secondary general-purpose localizer backed by Vision OBJECT_LOCALIZATION."""

    def __init__(self, vision: GoogleVisionClient, *, max_results: int = 50) -> None:
        self.vision = vision
        self.max_results = max(1, int(max_results))

    async def localize(self, pixels: np.ndarray, min_score: float) -> list[DetectionCandidate]:
        h, w = pixels.shape[:2]
        try:
            result = await self.vision.annotate(
                encode_base64_jpeg(pixels),
                [{"type": "OBJECT_LOCALIZATION", "maxResults": self.max_results}],
            )
        except (httpx.HTTPError, ValidationError, PipelineError) as exc:
            raise DetectionError("Object localization failed", component="localizer", original_error=exc)

        candidates: list[DetectionCandidate] = []
        for obj in result.localizedObjectAnnotations:
            verts = obj.boundingPoly.normalizedVertices
            if not verts or obj.score < min_score:
                continue
            xs = [v.x * w for v in verts]
            ys = [v.y * h for v in verts]
            candidates.append(
                DetectionCandidate(
                    label=obj.name.strip().lower() or "object",
                    score=float(obj.score),
                    rect=Rect(min(xs), min(ys), max(xs), max(ys)),
                    source="secondary",
                )
            )
        return candidates


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


class DetectionGateway:
    """Turns a photo into merged regions.

    The primary detector is mandatory; its total failure propagates as
    ``DetectionError``. The secondary localizer only runs when the primary
    result is sparse and its failures are logged and ignored.
    """

    def __init__(
        self,
        primary: ZeroShotDetector,
        merger: RegionMerger,
        *,
        secondary: Localizer | None = None,
        prompts: tuple[str, ...] = DETECTION_PROMPTS,
        max_side: int = 1024,
        min_score: float = 0.15,
        secondary_min_score: float = 0.3,
        sparse_threshold: int = 2,
        warmup_retries: int = 1,
        warmup_backoff_seconds: float = 1.0,
        warmup_max_wait_seconds: float = 8.0,
        focus_window_ratio: float = 0.55,
        focus_min_score: float = 0.08,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.primary = primary
        self.merger = merger
        self.secondary = secondary
        self.prompts = tuple(prompts)
        self.max_side = int(max_side)
        self.min_score = float(min_score)
        self.secondary_min_score = float(secondary_min_score)
        self.sparse_threshold = max(0, int(sparse_threshold))
        self.warmup_retries = max(0, int(warmup_retries))
        self.warmup_backoff_seconds = max(0.0, float(warmup_backoff_seconds))
        self.warmup_max_wait_seconds = max(0.0, float(warmup_max_wait_seconds))
        self.focus_window_ratio = min(1.0, max(0.05, float(focus_window_ratio)))
        self.focus_min_score = float(focus_min_score)
        self._sleep = sleep

    async def _primary_with_retry(self, pixels: np.ndarray, min_score: float) -> list[DetectionCandidate]:
        attempt = 0
        while True:
            try:
                return await self.primary.detect(pixels, self.prompts, min_score)
            except DetectorWarmingUp as exc:
                if attempt >= self.warmup_retries:
                    raise DetectionError(
                        "Detector still warming up after retries", component="detector", original_error=exc
                    )
                wait = min(self.warmup_backoff_seconds * (2 ** attempt), self.warmup_max_wait_seconds)
                if exc.estimated_wait:
                    wait = min(max(wait, exc.estimated_wait), self.warmup_max_wait_seconds)
                logger.warning("Detector warming up (attempt=%d), retrying in %.1fs", attempt + 1, wait)
                await self._sleep(wait)
                attempt += 1

    async def collect(
        self,
        pixels: np.ndarray,
        *,
        min_score: float,
        secondary_min_score: float,
    ) -> list[DetectionCandidate]:
        """Raw candidates in the pixel space of ``pixels``."""
        resized, sx, sy = resize_longest_side(pixels, self.max_side)
        candidates = await self._primary_with_retry(resized, min_score)

        if len(candidates) < self.sparse_threshold and self.secondary is not None:
            try:
                extra = await self.secondary.localize(resized, secondary_min_score)
                logger.info(
                    "Sparse primary result (%d); secondary localizer added %d", len(candidates), len(extra)
                )
                candidates = candidates + extra
            except Exception:
                logger.warning("Secondary localizer failed; continuing with primary result", exc_info=True)

        if sx == 1.0 and sy == 1.0:
            return candidates
        return [
            DetectionCandidate(c.label, c.score, c.rect.scale(sx, sy), c.source) for c in candidates
        ]

    async def detect(self, image: DecodedImage, min_score: float | None = None) -> list[Region]:
        score = self.min_score if min_score is None else float(min_score)
        candidates = await self.collect(
            image.pixels, min_score=score, secondary_min_score=self.secondary_min_score
        )
        regions = self.merger.merge(candidates, image.width, image.height)
        logger.info("Detection: candidates=%d regions=%d", len(candidates), len(regions))
        return regions

    def focus_window(self, image: DecodedImage, x: float, y: float) -> Rect:
        """Square window around a normalized point, shifted to stay inside the image."""
        side = float(max(1, round(self.focus_window_ratio * min(image.width, image.height))))
        cx = min(1.0, max(0.0, float(x))) * image.width
        cy = min(1.0, max(0.0, float(y))) * image.height
        left = min(max(0.0, cx - side / 2.0), image.width - side)
        top = min(max(0.0, cy - side / 2.0), image.height - side)
        return Rect(left, top, left + side, top + side)

    async def refine_focus(
        self,
        image: DecodedImage,
        point: tuple[float, float],
        existing: list[Region],
    ) -> list[Region]:
        """Re-detect around a point and append regions not already covered."""
        window = self.focus_window(image, point[0], point[1])
        x1, y1, x2, y2 = window.as_int_tuple()
        patch = image.pixels[y1:y2, x1:x2]

        candidates: list[DetectionCandidate] = []
        if patch.size > 0:
            local = await self.collect(
                patch, min_score=self.focus_min_score, secondary_min_score=self.focus_min_score
            )
            candidates = [
                DetectionCandidate(c.label, c.score, c.rect.offset(x1, y1), c.source) for c in local
            ]

        fresh = self.merger.merge(candidates, image.width, image.height, id_offset=len(existing))
        if not fresh or any(r.fallback for r in fresh):
            rect = clamp(window, image.width, image.height) or window
            fresh = [
                Region(
                    id=f"r{len(existing)}",
                    label=FOCUS_LABEL,
                    score=0.0,
                    rect=rect,
                    normalized=normalized_box(rect, image.width, image.height),
                    source="focus",
                )
            ]

        added: list[Region] = []
        known = list(existing)
        cushion = self.merger.containment_cushion
        for region in fresh:
            duplicate = any(
                iou(region.rect, k.rect) >= self.merger.iou_threshold
                or contains(region.rect, k.rect, cushion)
                or contains(k.rect, region.rect, cushion)
                for k in known
            )
            if duplicate:
                continue
            renumbered = Region(
                id=f"r{len(known)}",
                label=region.label,
                score=region.score,
                rect=region.rect,
                normalized=region.normalized,
                source=region.source,
            )
            known.append(renumbered)
            added.append(renumbered)

        logger.info(
            "Focus refinement at (%.3f, %.3f): candidates=%d added=%d", point[0], point[1], len(candidates), len(added)
        )
        return list(existing) + added

    async def detect_focus(self, image: DecodedImage, points: list[tuple[float, float]]) -> list[Region]:
        regions: list[Region] = []
        for point in points:
            regions = await self.refine_focus(image, point, regions)
        return regions
