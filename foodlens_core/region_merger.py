"""Non-max suppression and nested-box elimination over raw detections."""

from __future__ import annotations

import logging
from collections import defaultdict

from foodlens_core.geometry import Rect, area, clamp, contains, iou, normalized_box
from foodlens_core.models import DetectionCandidate, Region

logger = logging.getLogger("foodlens_core.region_merger")

FALLBACK_LABEL = "full-frame"


class RegionMerger:
    """Turns overlapping detector boxes into an ordered list of work regions."""

    def __init__(
        self,
        *,
        iou_threshold: float = 0.45,
        containment_cushion: float = 6.0,
        min_area_ratio: float = 0.01,
        min_side_ratio: float = 0.06,
        max_regions: int = 8,
        fallback_on_empty: bool = False,
    ) -> None:
        self.iou_threshold = float(iou_threshold)
        self.containment_cushion = max(0.0, float(containment_cushion))
        self.min_area_ratio = max(0.0, float(min_area_ratio))
        self.min_side_ratio = max(0.0, float(min_side_ratio))
        self.max_regions = max(1, int(max_regions))
        self.fallback_on_empty = bool(fallback_on_empty)

    def suppress(self, candidates: list[DetectionCandidate]) -> list[DetectionCandidate]:
        """Greedy per-label NMS. Kept boxes keep their own geometry."""
        groups: dict[str, list[DetectionCandidate]] = defaultdict(list)
        for cand in candidates:
            groups[cand.label].append(cand)

        kept: list[DetectionCandidate] = []
        for label_group in groups.values():
            label_group.sort(key=lambda c: c.score, reverse=True)
            group_kept: list[DetectionCandidate] = []
            for cand in label_group:
                if any(iou(cand.rect, k.rect) >= self.iou_threshold for k in group_kept):
                    continue
                group_kept.append(cand)
            kept.extend(group_kept)
        return kept

    def drop_nested(self, candidates: list[DetectionCandidate]) -> list[DetectionCandidate]:
        """Drop any box nested in (or enclosing) a higher-scoring one."""
        ordered = sorted(candidates, key=lambda c: c.score, reverse=True)
        kept: list[DetectionCandidate] = []
        cushion = self.containment_cushion
        for cand in ordered:
            nested = any(
                contains(cand.rect, k.rect, cushion) or contains(k.rect, cand.rect, cushion)
                for k in kept
            )
            if not nested:
                kept.append(cand)
        return kept

    def filter_small(
        self, candidates: list[DetectionCandidate], width: int, height: int
    ) -> list[DetectionCandidate]:
        min_area = self.min_area_ratio * float(width) * float(height)
        min_side = self.min_side_ratio * float(min(width, height))
        return [
            c for c in candidates
            if area(c.rect) >= min_area and c.rect.width >= min_side and c.rect.height >= min_side
        ]

    def merge(
        self,
        candidates: list[DetectionCandidate],
        width: int,
        height: int,
        *,
        id_offset: int = 0,
    ) -> list[Region]:
        clamped: list[DetectionCandidate] = []
        for cand in candidates:
            rect = clamp(cand.rect, width, height)
            if rect is None:
                continue
            clamped.append(DetectionCandidate(cand.label, float(cand.score), rect, cand.source))

        kept = self.suppress(clamped)
        kept = self.drop_nested(kept)
        kept = self.filter_small(kept, width, height)
        kept.sort(key=lambda c: c.score, reverse=True)
        kept = kept[: self.max_regions]

        logger.debug(
            "Merged detections: raw=%d clamped=%d final=%d", len(candidates), len(clamped), len(kept)
        )

        if not kept:
            if not candidates and not self.fallback_on_empty:
                return []
            return [full_frame_region(width, height, region_id=f"r{id_offset}")]

        return [
            Region(
                id=f"r{id_offset + i}",
                label=c.label,
                score=float(c.score),
                rect=c.rect,
                normalized=normalized_box(c.rect, width, height),
                source=c.source,
            )
            for i, c in enumerate(kept)
        ]


def full_frame_region(width: int, height: int, *, region_id: str = "r0") -> Region:
    rect = Rect(0.0, 0.0, float(width), float(height))
    return Region(
        id=region_id,
        label=FALLBACK_LABEL,
        score=0.0,
        rect=rect,
        normalized=normalized_box(rect, width, height),
        source="fallback",
        fallback=True,
    )
