"""Plain-text catalog search and single-product lookup."""

from __future__ import annotations

import logging
import re
import time
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from foodlens_api.dependencies import AppState, get_services
from foodlens_core.cache import SOURCE_UPSTREAM
from foodlens_core.catalog import normalize_query, summarize_products
from foodlens_core.errors import CatalogError
from foodlens_core.models import CatalogProduct

logger = logging.getLogger("foodlens_api.search")

router = APIRouter(tags=["search"])

_BARCODE_QUERY_RE = re.compile(r"^\d{8,13}$")
SUMMARY_FIELDS = "code,product_name,image_url"


def _bypass_cache(request: Request, services: AppState) -> bool:
    return request.cookies.get("dev") == "true" or services.dev_disable_cache


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


@router.get("/search")
async def search_products(
    request: Request,
    services: Annotated[AppState, Depends(get_services)],
    query: str | None = None,
):
    if not query:
        return JSONResponse({"success": False, "message": "Missing query"}, status_code=400)

    start = time.perf_counter()
    bypass = _bypass_cache(request, services)
    key = f"search:{normalize_query(query)}"
    logger.debug("Search cache lookup: key=%s bypass=%s", key, bypass)

    cached = await services.cache.read(key, bypass=bypass)
    if cached.hit:
        return {"success": True, "products": cached.value, "source": cached.source, "elapsedTime": _elapsed_ms(start)}

    try:
        raw = await services.catalog.search_raw(query, page_size=services.catalog.page_size, fields=SUMMARY_FIELDS)
    except CatalogError as exc:
        logger.error("Catalog search failed for %r: %s", query, exc)
        return {"success": False, "message": "Catalog unavailable", "products": []}

    products = summarize_products(raw)
    await services.cache.write(key, products, cached.frequency, bypass=bypass)
    return {"success": True, "products": products, "source": cached.source, "elapsedTime": _elapsed_ms(start)}


@router.get("/product")
async def get_product(
    request: Request,
    services: Annotated[AppState, Depends(get_services)],
    query: str | None = None,
):
    """Barcode lookup for 8-13 digit queries, first search hit otherwise."""
    if not query:
        return JSONResponse({"error": "Missing query"}, status_code=400)

    start = time.perf_counter()
    bypass = _bypass_cache(request, services)
    is_barcode = bool(_BARCODE_QUERY_RE.match(query))
    key = f"product:{query if is_barcode else normalize_query(query)}"

    cached = await services.cache.read(key, bypass=bypass)
    if cached.hit and isinstance(cached.value, dict):
        return {**cached.value, "source": cached.source, "elapsedTime": _elapsed_ms(start)}

    product: CatalogProduct | None
    try:
        if is_barcode:
            product = await services.catalog.get_product(query)
        else:
            hits = await services.catalog.search(query)
            product = hits[0] if hits else None
    except CatalogError as exc:
        logger.error("Catalog product lookup failed for %r: %s", query, exc)
        return JSONResponse({"error": "Catalog unavailable"}, status_code=500)

    if product is None:
        return JSONResponse({"error": "Not found"}, status_code=404)

    payload = product.to_dict()
    await services.cache.write(key, payload, cached.frequency, bypass=bypass)
    return {**payload, "source": SOURCE_UPSTREAM, "elapsedTime": _elapsed_ms(start)}
