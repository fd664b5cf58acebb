"""Local YOLO object localizer used as the secondary detector."""

from __future__ import annotations

import asyncio
import logging

import numpy as np

from foodlens_core.geometry import Rect
from foodlens_core.models import DetectionCandidate

logger = logging.getLogger("foodlens_core.yolo_detector")


class YOLOLocalizer:
    """General-purpose YOLO localizer.

    Runs the model in the default executor so the event loop keeps serving
    other regions while inference is in progress.
    """

    def __init__(self, model_path: str, device: str = "cpu"):
        """Initialize YOLO localizer.

        Args:
            model_path: Path to YOLO .pt model file
            device: Device to run inference on ("cpu" or "cuda")
        """
        try:
            from ultralytics import YOLO
        except ImportError:
            raise ImportError(
                "ultralytics package not found. Install with: pip install foodlens[yolo]"
            )

        self.model = YOLO(model_path)
        self.device = device
        self.model.to(device)

        logger.info("YOLO localizer initialized: model=%s, device=%s", model_path, device)

    def _detect_sync(self, pixels: np.ndarray, min_score: float) -> list[DetectionCandidate]:
        results = self.model(pixels, conf=min_score, verbose=False, device=self.device)
        names = getattr(self.model, "names", {}) or {}

        candidates: list[DetectionCandidate] = []
        for result in results:
            if result.boxes is None or len(result.boxes) == 0:
                continue
            for box in result.boxes:
                x1, y1, x2, y2 = box.xyxy[0].cpu().numpy()
                cls_id = int(box.cls[0].cpu().numpy())
                conf = float(box.conf[0].cpu().numpy())
                candidates.append(
                    DetectionCandidate(
                        label=str(names.get(cls_id, "object")).lower(),
                        score=conf,
                        rect=Rect(float(x1), float(y1), float(x2), float(y2)),
                        source="secondary",
                    )
                )
        return candidates

    async def localize(self, pixels: np.ndarray, min_score: float) -> list[DetectionCandidate]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._detect_sync, pixels, float(min_score))
