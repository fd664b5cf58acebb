import itertools

import pytest

from foodlens_core.geometry import contains, iou
from foodlens_core.region_merger import FALLBACK_LABEL, RegionMerger

from conftest import candidate

W = H = 1000


@pytest.fixture
def merger():
    return RegionMerger()


class TestSuppression:
    def test_same_label_overlap_keeps_highest_score(self, merger):
        """Kept box keeps its own geometry; the weaker overlapping box is discarded."""
        regions = merger.merge(
            [
                candidate("box", 0.6, 110, 110, 410, 410),
                candidate("box", 0.9, 100, 100, 400, 400),
                candidate("box", 0.7, 95, 120, 395, 420),
            ],
            W,
            H,
        )
        assert len(regions) == 1
        assert regions[0].score == pytest.approx(0.9)
        assert regions[0].rect.as_int_tuple() == (100, 100, 400, 400)

    def test_different_labels_are_not_suppressed(self, merger):
        regions = merger.merge(
            [candidate("bottle", 0.9, 0, 0, 400, 400), candidate("box", 0.8, 100, 0, 500, 400)],
            W,
            H,
        )
        assert {r.label for r in regions} == {"bottle", "box"}


class TestContainment:
    def test_nested_box_dropped(self, merger):
        regions = merger.merge(
            [candidate("box", 0.9, 100, 100, 500, 500), candidate("can", 0.8, 200, 200, 300, 300)],
            W,
            H,
        )
        assert [r.label for r in regions] == ["box"]

    def test_enclosing_lower_score_box_dropped(self, merger):
        regions = merger.merge(
            [candidate("shelf", 0.4, 50, 50, 900, 900), candidate("can", 0.8, 200, 200, 400, 400)],
            W,
            H,
        )
        assert [r.label for r in regions] == ["can"]

    def test_no_region_is_subset_of_another(self, merger):
        raw = [
            candidate("box", 0.9, 100, 100, 500, 500),
            candidate("jar", 0.85, 103, 98, 503, 497),
            candidate("can", 0.8, 600, 600, 800, 800),
            candidate("bag", 0.7, 590, 590, 810, 815),
            candidate("bottle", 0.6, 150, 600, 350, 900),
        ]
        regions = merger.merge(raw, W, H)
        for a, b in itertools.permutations(regions, 2):
            assert not contains(a.rect, b.rect, merger.containment_cushion)
            if a.label == b.label:
                assert iou(a.rect, b.rect) < merger.iou_threshold


class TestFilteringAndOrdering:
    def test_no_candidates_yields_empty_list(self, merger):
        assert merger.merge([], W, H) == []

    def test_only_noise_falls_back_to_full_frame(self, merger):
        regions = merger.merge([candidate("box", 0.9, 10, 10, 30, 30)], W, H)
        assert len(regions) == 1
        assert regions[0].fallback
        assert regions[0].label == FALLBACK_LABEL
        assert regions[0].normalized == {"x": 0.0, "y": 0.0, "width": 1.0, "height": 1.0}

    def test_fallback_on_empty_flag(self):
        regions = RegionMerger(fallback_on_empty=True).merge([], W, H)
        assert len(regions) == 1 and regions[0].fallback

    def test_out_of_bounds_boxes_are_clamped(self, merger):
        regions = merger.merge([candidate("box", 0.9, -50, -50, 300, 300)], W, H)
        assert regions[0].rect.as_int_tuple() == (0, 0, 300, 300)

    def test_sorted_and_capped(self, merger):
        raw = [
            candidate("box", 0.1 + i * 0.05, (i % 4) * 200, (i // 4) * 200, (i % 4) * 200 + 120, (i // 4) * 200 + 120)
            for i in range(12)
        ]
        regions = merger.merge(raw, W, H)
        assert len(regions) == 8
        scores = [r.score for r in regions]
        assert scores == sorted(scores, reverse=True)
        assert [r.id for r in regions] == [f"r{i}" for i in range(8)]

    def test_id_offset(self, merger):
        regions = merger.merge([candidate("box", 0.9, 0, 0, 300, 300)], W, H, id_offset=3)
        assert regions[0].id == "r3"
