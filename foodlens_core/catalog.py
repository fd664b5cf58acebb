"""Open Food Facts client and the region-to-product resolver."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from foodlens_core.cache import FrequencyGatedCache
from foodlens_core.errors import CatalogError
from foodlens_core.models import (
    SOURCE_BARCODE,
    SOURCE_SEARCH,
    CatalogMatch,
    CatalogProduct,
    ParsedText,
)
from foodlens_core.text_parser import extract_keywords, keyword_categories

logger = logging.getLogger("foodlens_core.catalog")

DEFAULT_PRODUCT_URL = "https://world.openfoodfacts.org/api/v2/product"
DEFAULT_SEARCH_URL = "https://world.openfoodfacts.org/cgi/search.pl"
SEARCH_FIELDS = "code,product_name,brands,image_url,image_front_url,url,categories_tags"

# Full product records; the plain-text endpoint caches summaries under "search:".
SCAN_SEARCH_PREFIX = "scan-search:"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", str(text or ""))
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_query(text: str) -> str:
    """Cache-key form of a query: no accents, alphanumerics only, lower-case."""
    return _NON_ALNUM_RE.sub("", strip_accents(text).lower())


def tokenize(text: str | None) -> set[str]:
    return {t for t in _NON_ALNUM_RE.split(strip_accents(text or "").lower()) if t}


def token_overlap(a: str | None, b: str | None) -> float:
    """|A ∩ B| / max(|A|, |B|) over normalized tokens; 0 when either side is empty."""
    ta = tokenize(a)
    tb = tokenize(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / max(len(ta), len(tb))


class OFFProduct(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str = ""
    product_name: str | None = None
    brands: str | None = None
    image_url: str | None = None
    image_front_url: str | None = None
    url: str | None = None
    categories_tags: list[str] = Field(default_factory=list)

    @field_validator("code", mode="before")
    @classmethod
    def _code_to_str(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("categories_tags", mode="before")
    @classmethod
    def _tags_list(cls, value: Any) -> list[str]:
        return [str(v) for v in value] if isinstance(value, list) else []


class OFFProductResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: int = 0
    product: OFFProduct | None = None


class OFFSearchResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    count: int = 0
    products: list[OFFProduct] = Field(default_factory=list)


class OpenFoodFactsClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        product_url: str = DEFAULT_PRODUCT_URL,
        search_url: str = DEFAULT_SEARCH_URL,
        page_size: int = 20,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.http = http
        self.product_url = product_url.rstrip("/")
        self.search_url = search_url
        self.page_size = max(1, int(page_size))
        self.timeout_seconds = max(1.0, float(timeout_seconds))

    def to_product(self, raw: OFFProduct) -> CatalogProduct:
        brand = (raw.brands or "").split(",")[0].strip()
        link = raw.url or (f"{self.product_url}/{raw.code}" if raw.code else None)
        return CatalogProduct(
            code=raw.code,
            name=(raw.product_name or "").strip(),
            brand=brand,
            image_url=raw.image_url or raw.image_front_url,
            link=link,
            categories=tuple(raw.categories_tags),
        )

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = await self.http.get(url, params=params, timeout=self.timeout_seconds)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise CatalogError(f"Catalog request failed: {url}", component="openfoodfacts", original_error=exc)

    async def get_product(self, code: str) -> CatalogProduct | None:
        body = await self._get_json(f"{self.product_url}/{code}.json")
        try:
            parsed = OFFProductResponse.model_validate(body)
        except ValidationError as exc:
            raise CatalogError("Malformed product response", component="openfoodfacts", original_error=exc)
        if parsed.status != 1 or parsed.product is None:
            return None
        product = self.to_product(parsed.product)
        if not product.code:
            product = CatalogProduct(
                code=code,
                name=product.name,
                brand=product.brand,
                image_url=product.image_url,
                link=product.link or f"{self.product_url}/{code}",
                categories=product.categories,
            )
        return product

    async def search_raw(self, query: str, *, page_size: int | None = None, fields: str = SEARCH_FIELDS) -> list[OFFProduct]:
        params = {
            "search_terms": query,
            "search_simple": "1",
            "action": "process",
            "json": "1",
            "page_size": str(page_size or self.page_size),
            "fields": fields,
        }
        body = await self._get_json(self.search_url, params=params)
        try:
            parsed = OFFSearchResponse.model_validate(body)
        except ValidationError as exc:
            raise CatalogError("Malformed search response", component="openfoodfacts", original_error=exc)
        return parsed.products

    async def search(self, query: str) -> list[CatalogProduct]:
        return [self.to_product(p) for p in await self.search_raw(query)]


def summarize_products(products: list[OFFProduct]) -> list[dict[str, str]]:
    """``{code, name, image}`` per distinct code, skipping incomplete entries."""
    by_code: dict[str, dict[str, Any]] = {}
    for p in products:
        image = p.image_url or ""
        name = (p.product_name or "").strip()
        if not (p.code and name and image):
            continue
        entry = by_code.get(p.code)
        if entry is None:
            by_code[p.code] = {"code": p.code, "name": name, "images": [image]}
        else:
            entry["images"].append(image)
    return [
        {"code": e["code"], "name": e["name"], "image": next((i for i in e["images"] if i), "")}
        for e in by_code.values()
    ]


class CatalogResolver:
    """Resolves parsed package text to a catalog entry.

    A barcode is tried first; otherwise candidate queries run in order
    until a scored candidate reaches ``accept_threshold``.
    """

    def __init__(
        self,
        client: OpenFoodFactsClient,
        cache: FrequencyGatedCache,
        *,
        barcode_confidence: float = 0.95,
        accept_threshold: float = 0.35,
        name_weight: float = 0.6,
        brand_weight: float = 0.3,
        keyword_weight: float = 0.1,
        max_alternatives: int = 3,
        max_queries: int | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.barcode_confidence = min(1.0, max(0.0, float(barcode_confidence)))
        self.accept_threshold = float(accept_threshold)
        self.name_weight = float(name_weight)
        self.brand_weight = float(brand_weight)
        self.keyword_weight = float(keyword_weight)
        self.max_alternatives = max(0, int(max_alternatives))
        self.max_queries = None if max_queries is None else max(1, int(max_queries))

    async def lookup_barcode(self, code: str) -> CatalogProduct | None:
        key = f"product:{code}"
        cached = await self.cache.read(key)
        if cached.hit and isinstance(cached.value, dict):
            return CatalogProduct.from_dict(cached.value)
        product = await self.client.get_product(code)
        if product is not None:
            await self.cache.write(key, product.to_dict(), cached.frequency)
        return product

    async def search(self, query: str) -> list[CatalogProduct]:
        key = f"{SCAN_SEARCH_PREFIX}{normalize_query(query)}"
        cached = await self.cache.read(key)
        if cached.hit and isinstance(cached.value, list):
            return [CatalogProduct.from_dict(v) for v in cached.value if isinstance(v, dict)]
        products = await self.client.search(query)
        if products:
            await self.cache.write(key, [p.to_dict() for p in products], cached.frequency)
        return products

    def score(self, parsed: ParsedText, product: CatalogProduct) -> float:
        name = parsed.product_name or " ".join(parsed.raw_lines[:2])
        name_score = token_overlap(name, product.name)
        brand_score = token_overlap(parsed.brand, product.brand)
        keyword_score = 0.0
        wanted = keyword_categories(parsed.keywords)
        if wanted:
            haystack = [product.name] + [c.split(":", 1)[-1].replace("-", " ") for c in product.categories]
            if wanted & keyword_categories(extract_keywords(haystack)):
                keyword_score = 1.0
        return (
            self.name_weight * name_score
            + self.brand_weight * brand_score
            + self.keyword_weight * keyword_score
        )

    async def resolve(
        self,
        parsed: ParsedText,
        barcode: str | None,
        candidate_queries: list[str] | tuple[str, ...],
    ) -> CatalogMatch:
        if barcode:
            try:
                product = await self.lookup_barcode(barcode)
            except CatalogError:
                logger.warning("Barcode lookup failed for %s", barcode, exc_info=True)
                product = None
            if product is not None:
                return CatalogMatch(product=product, confidence=self.barcode_confidence, source=SOURCE_BARCODE)

        queries = list(candidate_queries)
        if self.max_queries is not None:
            queries = queries[: self.max_queries]

        scored: dict[str, tuple[float, CatalogProduct]] = {}
        best: tuple[float, str, CatalogProduct] | None = None
        for query in queries:
            try:
                products = await self.search(query)
            except CatalogError:
                logger.warning("Catalog search failed for query=%r", query, exc_info=True)
                continue
            for product in products:
                s = self.score(parsed, product)
                key = product.code or f"{product.name}|{product.brand}"
                if key not in scored or s > scored[key][0]:
                    scored[key] = (s, product)
                if best is None or s > best[0]:
                    best = (s, key, product)
            if best is not None and best[0] >= self.accept_threshold:
                logger.debug("Early stop on query=%r score=%.3f", query, best[0])
                break

        if best is None or best[0] <= 0.0:
            return CatalogMatch()

        best_score, best_key, best_product = best
        runners = sorted(
            (entry for key, entry in scored.items() if key != best_key and entry[0] > 0.0),
            key=lambda e: e[0],
            reverse=True,
        )
        confidence = min(self.barcode_confidence, max(0.0, best_score))
        return CatalogMatch(
            product=best_product,
            confidence=round(confidence, 4),
            source=SOURCE_SEARCH,
            alternatives=tuple(p for _, p in runners[: self.max_alternatives]),
        )
