"""FastAPI application entry point.

Builds the HTTP client and every pipeline service once at startup via
lifespan, registers routers, and configures CORS for the web frontend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx

from foodlens_api import config

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logging.getLogger("foodlens_api").setLevel(config.LOG_LEVEL)
logging.getLogger("foodlens_core").setLevel(config.LOG_LEVEL)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from foodlens_api.dependencies import AppState
from foodlens_api.routers import scan, search
from foodlens_api.utils.profiler import StageProfiler
from foodlens_core.cache import CacheStore, FrequencyGatedCache, MemoryStore, UpstashStore
from foodlens_core.catalog import CatalogResolver, OpenFoodFactsClient
from foodlens_core.detection import DetectionGateway, GoogleObjectLocalizer, Localizer, ZeroShotDetector
from foodlens_core.google_vision import GoogleVisionClient
from foodlens_core.ocr import GoogleVisionOCR, TesseractOCR, TextExtractor, TextRecognizer, resolve_language_hints
from foodlens_core.orchestrator import ScanOrchestrator
from foodlens_core.region_merger import RegionMerger

logger = logging.getLogger("foodlens_api")


def _build_cache_store(http: httpx.AsyncClient) -> CacheStore | None:
    if config.CACHE_BACKEND == "none":
        return None
    if config.CACHE_BACKEND == "upstash":
        if config.UPSTASH_REDIS_REST_URL and config.UPSTASH_REDIS_REST_TOKEN:
            return UpstashStore(http, url=config.UPSTASH_REDIS_REST_URL, token=config.UPSTASH_REDIS_REST_TOKEN)
        logger.warning("CACHE_BACKEND=upstash but Upstash credentials are missing; caching disabled")
        return None
    return MemoryStore(max_entries=config.MEMORY_CACHE_MAX_ENTRIES)


def _build_secondary(vision: GoogleVisionClient) -> Localizer | None:
    if config.SECONDARY_DETECTOR == "google":
        if vision.enabled:
            return GoogleObjectLocalizer(vision)
        logger.warning("SECONDARY_DETECTOR=google but GOOGLE_VISION_API_KEY is not set; secondary disabled")
        return None
    if config.SECONDARY_DETECTOR == "yolo":
        from foodlens_core.yolo_detector import YOLOLocalizer

        return YOLOLocalizer(model_path=config.YOLO_MODEL_PATH, device=config.YOLO_DEVICE)
    return None


def _build_recognizer(vision: GoogleVisionClient) -> TextRecognizer:
    if config.OCR_PROVIDER == "google" and vision.enabled:
        return GoogleVisionOCR(vision, detect_logos=config.OCR_DETECT_LOGOS, logo_min_score=config.LOGO_MIN_SCORE)
    if config.OCR_PROVIDER == "google":
        logger.warning("OCR_PROVIDER=google but GOOGLE_VISION_API_KEY is not set; using tesseract")
    return TesseractOCR(tesseract_cmd=config.TESSERACT_CMD)


def build_services(http: httpx.AsyncClient) -> AppState:
    timeout = config.HTTP_TIMEOUT_SECONDS
    vision = GoogleVisionClient(
        http, api_key=config.GOOGLE_VISION_API_KEY, url=config.GOOGLE_VISION_URL, timeout_seconds=timeout
    )

    merger = RegionMerger(
        iou_threshold=config.MERGE_IOU_THRESHOLD,
        containment_cushion=config.CONTAINMENT_CUSHION_PX,
        min_area_ratio=config.MIN_REGION_AREA_RATIO,
        min_side_ratio=config.MIN_REGION_SIDE_RATIO,
        max_regions=config.MAX_REGIONS,
    )
    detector = DetectionGateway(
        ZeroShotDetector(http, api_url=config.DETECTOR_API_URL, token=config.HF_TOKEN, timeout_seconds=timeout),
        merger,
        secondary=_build_secondary(vision),
        max_side=config.DETECTOR_MAX_SIDE,
        min_score=config.DETECTOR_MIN_SCORE,
        secondary_min_score=config.SECONDARY_MIN_SCORE,
        warmup_retries=config.DETECTOR_WARMUP_RETRIES,
        warmup_backoff_seconds=config.DETECTOR_WARMUP_BACKOFF_SECONDS,
        warmup_max_wait_seconds=config.DETECTOR_WARMUP_MAX_WAIT_SECONDS,
        focus_window_ratio=config.FOCUS_WINDOW_RATIO,
        focus_min_score=config.FOCUS_MIN_SCORE,
    )

    extractor = TextExtractor(
        _build_recognizer(vision),
        min_chars=config.OCR_MIN_CHARS,
        min_line_chars=config.OCR_MIN_LINE_CHARS,
        max_lines=config.OCR_MAX_LINES,
        default_languages=tuple(resolve_language_hints(config.OCR_DEFAULT_LANGS)),
    )

    cache = FrequencyGatedCache(
        _build_cache_store(http),
        threshold=config.CACHE_THRESHOLD,
        ttl_seconds=config.CACHE_TTL_SECONDS,
        failure_threshold=config.CACHE_FAILURE_THRESHOLD,
        disable_window_seconds=config.CACHE_DISABLE_WINDOW_SECONDS,
    )
    catalog = OpenFoodFactsClient(
        http,
        product_url=config.OPENFOODFACTS_PRODUCT_URL,
        search_url=config.OPENFOODFACTS_SEARCH_URL,
        page_size=config.CATALOG_PAGE_SIZE,
        timeout_seconds=timeout,
    )
    resolver = CatalogResolver(
        catalog,
        cache,
        barcode_confidence=config.BARCODE_CONFIDENCE,
        accept_threshold=config.MATCH_ACCEPT_THRESHOLD,
        name_weight=config.MATCH_NAME_WEIGHT,
        brand_weight=config.MATCH_BRAND_WEIGHT,
        keyword_weight=config.MATCH_KEYWORD_WEIGHT,
        max_queries=config.MAX_SEARCH_QUERIES,
    )

    profiler = None
    if config.ENABLE_PROFILING:
        profiler = StageProfiler(
            enable=True,
            every_n_regions=config.PROFILE_EVERY_N_REGIONS,
            logger=logging.getLogger("foodlens_api.profiler"),
        )
    orchestrator = ScanOrchestrator(
        detector,
        extractor,
        resolver,
        concurrency=config.SCAN_CONCURRENCY,
        crop_padding=config.REGION_CROP_PADDING,
        preview_max_side=config.PREVIEW_MAX_SIDE,
        profiler=profiler,
    )

    return AppState(
        orchestrator=orchestrator,
        catalog=catalog,
        resolver=resolver,
        cache=cache,
        http=http,
        dev_disable_cache=config.DEV_DISABLE_CACHE,
        info={
            "ocr_provider": type(extractor.recognizer).__name__,
            "secondary_detector": type(detector.secondary).__name__ if detector.secondary else None,
            "cache_backend": type(cache.store).__name__ if cache.store else None,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared HTTP client and pipeline services once."""
    async with httpx.AsyncClient(follow_redirects=True) as http:
        services = build_services(http)
        app.state.services = services
        logger.info(
            "Services ready: ocr=%s secondary=%s cache=%s concurrency=%d",
            services.info["ocr_provider"],
            services.info["secondary_detector"],
            services.info["cache_backend"],
            services.orchestrator.concurrency,
        )
        yield
        logger.info("Shutting down ...")


def create_app() -> FastAPI:
    app = FastAPI(
        title="FoodLens API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(scan.router, prefix="/api")
    app.include_router(search.router, prefix="/api")

    @app.get("/api/health")
    async def health():
        services: AppState | None = getattr(app.state, "services", None)
        if services is None:
            return {"status": "starting"}
        return {
            "status": "ok",
            **services.info,
            "cache_circuit_open": services.cache.circuit_open,
        }

    return app


app = create_app()
