"""Bounded worker pool that turns a photo into a stream of product events."""

from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import nullcontext
from typing import Any, AsyncIterator, Awaitable, Callable

from foodlens_core.catalog import CatalogResolver
from foodlens_core.detection import DetectionGateway
from foodlens_core.errors import DetectionError, PipelineError
from foodlens_core.events import (
    STATUS_ERROR,
    STATUS_LOW_OCR,
    STATUS_NO_MATCH,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_READY,
    TERMINAL_STATUSES,
    BoxesEvent,
    DoneEvent,
    ErrorEvent,
    ImageEvent,
    NoProductsEvent,
    ProductEvent,
    ProgressEvent,
    StreamEvent,
)
from foodlens_core.geometry import expand
from foodlens_core.image_io import crop, to_data_url
from foodlens_core.models import CatalogMatch, CatalogProduct, DecodedImage, Region
from foodlens_core.ocr import TextExtraction, TextExtractor

logger = logging.getLogger("foodlens_core.orchestrator")

Emit = Callable[[StreamEvent], Awaitable[None]]

NO_PRODUCTS_MESSAGE = "No products were detected in the photo. Try again closer to the package."
DETECTION_FAILED_MESSAGE = "The detection service is unavailable. Please try again."
LOW_OCR_MESSAGE = "Could not read enough text on this product."
NO_MATCH_MESSAGE = "No matching product was found in the catalog."
REGION_ERROR_MESSAGE = "This product could not be processed."

_ORDER = {STATUS_PENDING: 0, STATUS_PROCESSING: 1}


class RegionTracker:
    """Per-index status book-keeping. Transitions only move forward and a
    terminal status is entered exactly once."""

    def __init__(self, count: int) -> None:
        self._status: dict[int, str | None] = {i: None for i in range(count)}

    def advance(self, index: int, status: str) -> None:
        current = self._status[index]
        if current in TERMINAL_STATUSES:
            raise RuntimeError(f"region {index} already finished with {current}")
        current_rank = -1 if current is None else _ORDER[current]
        next_rank = 2 if status in TERMINAL_STATUSES else _ORDER[status]
        if next_rank <= current_rank:
            raise RuntimeError(f"region {index}: illegal transition {current} -> {status}")
        self._status[index] = status

    def status(self, index: int) -> str | None:
        return self._status[index]

    @property
    def all_terminal(self) -> bool:
        return all(s in TERMINAL_STATUSES for s in self._status.values())


def _product_payload(product: CatalogProduct) -> dict[str, Any]:
    return {
        "code": product.code,
        "name": product.name,
        "brand": product.brand,
        "image": product.image_url,
        "link": product.link,
    }


class ScanOrchestrator:
    """Detect regions, then run text extraction and catalog resolution for
    each region on at most ``concurrency`` workers."""

    def __init__(
        self,
        detector: DetectionGateway,
        extractor: TextExtractor,
        resolver: CatalogResolver,
        *,
        concurrency: int = 3,
        crop_padding: float = 0.1,
        preview_max_side: int = 960,
        profiler: Any | None = None,
    ) -> None:
        self.detector = detector
        self.extractor = extractor
        self.resolver = resolver
        self.concurrency = max(1, int(concurrency))
        self.crop_padding = max(0.0, float(crop_padding))
        self.preview_max_side = int(preview_max_side)
        self.profiler = profiler

    @staticmethod
    def _progress(index: int, region: Region, status: str) -> ProgressEvent:
        return ProgressEvent(
            index=index,
            status=status,
            score=round(float(region.score), 4),
            prompt=region.label,
            box_id=region.id,
            bounding_box=dict(region.normalized),
        )

    @staticmethod
    def _final_event(index: int, extraction: TextExtraction, match: CatalogMatch | None) -> ProductEvent:
        parsed = extraction.parsed
        base = dict(
            index=index,
            barcode=extraction.barcode,
            brand_candidate=parsed.brand,
            product_candidate=parsed.product_name,
            keywords=sorted(parsed.keywords),
            attributes=sorted(parsed.attributes),
            search_candidates=list(extraction.search_candidates),
        )
        fallback_title = parsed.product_name or (parsed.raw_lines[0] if parsed.raw_lines else "Unknown product")

        if match is None:
            return ProductEvent(status=STATUS_LOW_OCR, title=fallback_title, message=LOW_OCR_MESSAGE, **base)
        if not match.matched:
            return ProductEvent(status=STATUS_NO_MATCH, title=fallback_title, message=NO_MATCH_MESSAGE, **base)

        product = match.product
        return ProductEvent(
            status=STATUS_READY,
            title=product.name or fallback_title,
            off_image=product.image_url,
            off_link=product.link,
            code=product.code,
            off_confidence=round(float(match.confidence), 4),
            off_source=match.source,
            off_alternatives=[_product_payload(p) for p in match.alternatives],
            **base,
        )

    async def _process_region(
        self,
        index: int,
        region: Region,
        image: DecodedImage,
        lang: str | None,
        emit: Emit,
        tracker: RegionTracker,
        request_id: str,
    ) -> None:
        tracker.advance(index, STATUS_PROCESSING)
        await emit(self._progress(index, region, STATUS_PROCESSING))

        timing = self.profiler.start(request_id, index) if self.profiler is not None else None
        measure = timing.stage if timing is not None else (lambda _name: nullcontext())
        stage = "crop"
        try:
            with measure("crop"):
                rect = expand(region.rect, self.crop_padding, image.width, image.height)
                pixels = crop(image.pixels, rect)
            if pixels is None:
                raise PipelineError("Empty crop", component="crop")

            stage = "ocr"
            with measure("ocr"):
                extraction = await self.extractor.extract(pixels, lang)

            if extraction.low_quality:
                logger.info(
                    "Low OCR quality: request=%s index=%d stage=ocr chars=%d", request_id, index, extraction.char_count
                )
                event = self._final_event(index, extraction, None)
            else:
                stage = "resolve"
                with measure("resolve"):
                    match = await self.resolver.resolve(
                        extraction.parsed, extraction.barcode, extraction.search_candidates
                    )
                event = self._final_event(index, extraction, match)
        except Exception:
            logger.exception("Region failed: request=%s index=%d box=%s stage=%s", request_id, index, region.id, stage)
            event = ProductEvent(index=index, status=STATUS_ERROR, title="Error", message=REGION_ERROR_MESSAGE)

        tracker.advance(index, event.status)
        if self.profiler is not None:
            self.profiler.finish(timing, event.status)
        await emit(event)

    async def run(
        self,
        image: DecodedImage,
        emit: Emit,
        *,
        lang: str | None = None,
        focus: list[tuple[float, float]] | None = None,
        request_id: str = "-",
    ) -> None:
        loop = asyncio.get_event_loop()
        preview = await loop.run_in_executor(None, to_data_url, image, self.preview_max_side)
        await emit(ImageEvent(image=preview, width=image.width, height=image.height))

        try:
            if focus:
                regions = await self.detector.detect_focus(image, focus)
            else:
                regions = await self.detector.detect(image)
        except DetectionError as exc:
            logger.error("Detection failed: request=%s error=%s", request_id, exc)
            await emit(ErrorEvent(message=DETECTION_FAILED_MESSAGE))
            return

        await emit(BoxesEvent(boxes=[r.to_box() for r in regions], detection_count=len(regions)))
        if not regions:
            await emit(NoProductsEvent(message=NO_PRODUCTS_MESSAGE))
            await emit(DoneEvent())
            return

        tracker = RegionTracker(len(regions))
        for index, region in enumerate(regions):
            tracker.advance(index, STATUS_PENDING)
            await emit(self._progress(index, region, STATUS_PENDING))

        cursor = itertools.count()

        async def worker() -> None:
            while True:
                index = next(cursor)
                if index >= len(regions):
                    return
                await self._process_region(index, regions[index], image, lang, emit, tracker, request_id)

        pool_size = min(self.concurrency, len(regions))
        logger.info("Processing %d regions with %d workers: request=%s", len(regions), pool_size, request_id)
        await asyncio.gather(*(worker() for _ in range(pool_size)))
        await emit(DoneEvent())

    async def stream(
        self,
        image: DecodedImage,
        *,
        lang: str | None = None,
        focus: list[tuple[float, float]] | None = None,
        request_id: str = "-",
    ) -> AsyncIterator[bytes]:
        """Workers write into a queue; this single consumer serializes records."""
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        async def emit(event: StreamEvent) -> None:
            await queue.put(event)

        async def produce() -> None:
            try:
                await self.run(image, emit, lang=lang, focus=focus, request_id=request_id)
            except Exception:
                logger.exception("Scan pipeline crashed: request=%s", request_id)
                await queue.put(ErrorEvent(message="Internal error"))
            finally:
                await queue.put(None)

        producer = asyncio.create_task(produce())
        finished = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    finished = True
                    break
                yield event.to_ndjson()
        finally:
            if not finished:
                logger.info("Stream closed early: request=%s; results will be discarded", request_id)
                _abandoned.add(producer)
                producer.add_done_callback(_forget_abandoned)


# Strong references so detached producers are not garbage collected mid-flight.
_abandoned: set[asyncio.Task] = set()


def _forget_abandoned(task: asyncio.Task) -> None:
    _abandoned.discard(task)
    if task.cancelled():
        logger.info("Abandoned scan was cancelled")
    else:
        logger.info("Abandoned scan finished; results discarded")
