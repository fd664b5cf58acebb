"""Shared service handles.

Built once during FastAPI lifespan startup and stored on ``app.state``;
routers receive them through ``get_services``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi import Request

from foodlens_core.cache import FrequencyGatedCache
from foodlens_core.catalog import CatalogResolver, OpenFoodFactsClient
from foodlens_core.orchestrator import ScanOrchestrator


@dataclass
class AppState:
    """Everything a request handler needs, wired from config."""

    orchestrator: ScanOrchestrator
    catalog: OpenFoodFactsClient
    resolver: CatalogResolver
    cache: FrequencyGatedCache
    http: httpx.AsyncClient | None = None
    dev_disable_cache: bool = False
    info: dict[str, Any] = field(default_factory=dict)


def get_services(request: Request) -> AppState:
    return request.app.state.services
