"""Photo upload endpoint streaming product resolution as NDJSON."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import StreamingResponse

from foodlens_api.dependencies import AppState, get_services
from foodlens_core.errors import ImageDecodeError
from foodlens_core.image_io import decode_image

logger = logging.getLogger("foodlens_api.scan")

router = APIRouter(tags=["scan"])

MAX_FOCUS_POINTS = 6
NDJSON_MEDIA_TYPE = "application/x-ndjson"


def parse_focus(raw: str | None) -> list[tuple[float, float]] | None:
    """Validate the ``focus`` form field: a JSON array of up to six
    ``{x, y}`` points with both coordinates in [0, 1]."""
    if raw is None or not raw.strip():
        return None
    try:
        data: Any = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=422, detail="focus must be a JSON array")
    if not isinstance(data, list):
        raise HTTPException(status_code=422, detail="focus must be a JSON array")
    if len(data) > MAX_FOCUS_POINTS:
        raise HTTPException(status_code=422, detail=f"focus accepts at most {MAX_FOCUS_POINTS} points")

    points: list[tuple[float, float]] = []
    for item in data:
        if not isinstance(item, dict) or "x" not in item or "y" not in item:
            raise HTTPException(status_code=422, detail="Each focus point must be {x, y}")
        x, y = item["x"], item["y"]
        if isinstance(x, bool) or isinstance(y, bool) or not isinstance(x, (int, float)) or not isinstance(y, (int, float)):
            raise HTTPException(status_code=422, detail="Focus coordinates must be numbers")
        if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0):
            raise HTTPException(status_code=422, detail="Focus coordinates must be within [0, 1]")
        points.append((float(x), float(y)))
    return points or None


@router.post("/camera/upload")
async def upload_photo(
    services: Annotated[AppState, Depends(get_services)],
    image: UploadFile | None = File(None),
    lang: Annotated[str | None, Form()] = None,
    focus: Annotated[str | None, Form()] = None,
):
    """Detect products in the photo and stream one record per event."""
    if image is None:
        raise HTTPException(status_code=400, detail="An image file is required")

    focus_points = parse_focus(focus)

    data = await image.read()
    if not data:
        raise HTTPException(status_code=400, detail="An image file is required")
    loop = asyncio.get_event_loop()
    try:
        decoded = await loop.run_in_executor(None, decode_image, data, image.content_type)
    except ImageDecodeError:
        raise HTTPException(status_code=400, detail="Could not read image dimensions")

    request_id = uuid.uuid4().hex[:12]
    logger.info(
        "Scan started: request=%s size=%dx%d lang=%s focus_points=%d",
        request_id,
        decoded.width,
        decoded.height,
        lang or "-",
        len(focus_points or []),
    )
    stream = services.orchestrator.stream(decoded, lang=lang, focus=focus_points, request_id=request_id)
    return StreamingResponse(
        stream,
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Request-Id": request_id},
    )
