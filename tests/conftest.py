"""Shared fixtures and fakes for the pipeline tests."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from foodlens_core.geometry import Rect
from foodlens_core.models import DecodedImage, DetectionCandidate

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logging.getLogger("PIL").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


def make_image(width: int = 640, height: int = 480, value: int = 200) -> DecodedImage:
    pixels = np.full((height, width, 3), value, dtype=np.uint8)
    return DecodedImage(pixels=pixels, width=width, height=height)


def candidate(label: str, score: float, left: float, top: float, right: float, bottom: float,
              source: str = "primary") -> DetectionCandidate:
    return DetectionCandidate(label=label, score=score, rect=Rect(left, top, right, bottom), source=source)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def image():
    return make_image()


@pytest.fixture
def clock():
    return FakeClock()
