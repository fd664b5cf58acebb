"""Service configuration via environment variables."""

from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    value = (os.getenv(name, default) or default).strip().lower()
    return value if value in choices else default


# Server
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS", "http://localhost:5173,http://localhost:3000"
).split(",")
LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper()

# HTTP
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

# Detection
DETECTOR_API_URL = os.getenv(
    "DETECTOR_API_URL",
    "https://api-inference.huggingface.co/models/google/owlvit-base-patch32",
)
HF_TOKEN = os.getenv("HF_TOKEN", "")
DETECTOR_MAX_SIDE = int(os.getenv("DETECTOR_MAX_SIDE", "1024"))
DETECTOR_MIN_SCORE = float(os.getenv("DETECTOR_MIN_SCORE", "0.15"))
SECONDARY_DETECTOR = _env_choice("SECONDARY_DETECTOR", "google", {"google", "yolo", "none"})
SECONDARY_MIN_SCORE = float(os.getenv("SECONDARY_MIN_SCORE", "0.3"))
YOLO_MODEL_PATH = os.getenv("YOLO_MODEL_PATH", "yolov8n.pt")
YOLO_DEVICE = os.getenv("YOLO_DEVICE", "cpu")
DETECTOR_WARMUP_RETRIES = int(os.getenv("DETECTOR_WARMUP_RETRIES", "1"))
DETECTOR_WARMUP_BACKOFF_SECONDS = float(os.getenv("DETECTOR_WARMUP_BACKOFF_SECONDS", "1.0"))
DETECTOR_WARMUP_MAX_WAIT_SECONDS = float(os.getenv("DETECTOR_WARMUP_MAX_WAIT_SECONDS", "8.0"))
FOCUS_WINDOW_RATIO = float(os.getenv("FOCUS_WINDOW_RATIO", "0.55"))
FOCUS_MIN_SCORE = float(os.getenv("FOCUS_MIN_SCORE", "0.08"))

# Region merging
MERGE_IOU_THRESHOLD = float(os.getenv("MERGE_IOU_THRESHOLD", "0.45"))
CONTAINMENT_CUSHION_PX = int(os.getenv("CONTAINMENT_CUSHION_PX", "6"))
MIN_REGION_AREA_RATIO = float(os.getenv("MIN_REGION_AREA_RATIO", "0.01"))
MIN_REGION_SIDE_RATIO = float(os.getenv("MIN_REGION_SIDE_RATIO", "0.06"))
MAX_REGIONS = int(os.getenv("MAX_REGIONS", "8"))
REGION_CROP_PADDING = float(os.getenv("REGION_CROP_PADDING", "0.1"))

# OCR
OCR_PROVIDER = _env_choice("OCR_PROVIDER", "google", {"google", "tesseract"})
GOOGLE_VISION_API_KEY = os.getenv("GOOGLE_VISION_API_KEY", "")
GOOGLE_VISION_URL = os.getenv("GOOGLE_VISION_URL", "https://vision.googleapis.com/v1/images:annotate")
OCR_DEFAULT_LANGS = os.getenv("OCR_DEFAULT_LANGS", "es+en")
OCR_MIN_CHARS = int(os.getenv("OCR_MIN_CHARS", "6"))
OCR_MIN_LINE_CHARS = int(os.getenv("OCR_MIN_LINE_CHARS", "2"))
OCR_MAX_LINES = int(os.getenv("OCR_MAX_LINES", "8"))
OCR_DETECT_LOGOS = _env_bool("OCR_DETECT_LOGOS", True)
LOGO_MIN_SCORE = float(os.getenv("LOGO_MIN_SCORE", "0.5"))
TESSERACT_CMD = os.getenv("TESSERACT_CMD") or None

# Catalog
OPENFOODFACTS_PRODUCT_URL = os.getenv(
    "OPENFOODFACTS_PRODUCT_URL", "https://world.openfoodfacts.org/api/v2/product"
)
OPENFOODFACTS_SEARCH_URL = os.getenv(
    "OPENFOODFACTS_SEARCH_URL", "https://world.openfoodfacts.org/cgi/search.pl"
)
CATALOG_PAGE_SIZE = int(os.getenv("CATALOG_PAGE_SIZE", "20"))
BARCODE_CONFIDENCE = float(os.getenv("BARCODE_CONFIDENCE", "0.95"))
MATCH_ACCEPT_THRESHOLD = float(os.getenv("MATCH_ACCEPT_THRESHOLD", "0.35"))
MATCH_NAME_WEIGHT = float(os.getenv("MATCH_NAME_WEIGHT", "0.6"))
MATCH_BRAND_WEIGHT = float(os.getenv("MATCH_BRAND_WEIGHT", "0.3"))
MATCH_KEYWORD_WEIGHT = float(os.getenv("MATCH_KEYWORD_WEIGHT", "0.1"))
MAX_SEARCH_QUERIES = int(os.getenv("MAX_SEARCH_QUERIES", "6"))

# Orchestration
SCAN_CONCURRENCY = int(os.getenv("SCAN_CONCURRENCY", "3"))
PREVIEW_MAX_SIDE = int(os.getenv("PREVIEW_MAX_SIDE", "960"))

# Cache
CACHE_BACKEND = _env_choice("CACHE_BACKEND", "memory", {"memory", "upstash", "none"})
UPSTASH_REDIS_REST_URL = os.getenv("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.getenv("UPSTASH_REDIS_REST_TOKEN", "")
CACHE_THRESHOLD = int(os.getenv("CACHE_THRESHOLD", "3"))
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "86400"))
CACHE_FAILURE_THRESHOLD = int(os.getenv("CACHE_FAILURE_THRESHOLD", "3"))
CACHE_DISABLE_WINDOW_SECONDS = float(os.getenv("CACHE_DISABLE_WINDOW_SECONDS", "60"))
MEMORY_CACHE_MAX_ENTRIES = int(os.getenv("MEMORY_CACHE_MAX_ENTRIES", "10000"))
DEV_DISABLE_CACHE = _env_bool("DEV_DISABLE_CACHE", False)

# Profiling
ENABLE_PROFILING = _env_bool("ENABLE_PROFILING", False)
PROFILE_EVERY_N_REGIONS = int(os.getenv("PROFILE_EVERY_N_REGIONS", "20"))
