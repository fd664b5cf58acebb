import pytest

from foodlens_core.geometry import Rect, area, clamp, contains, expand, intersection_area, iou, normalized_box


class TestIoU:
    def test_identical_rects(self):
        r = Rect(0, 0, 10, 10)
        assert iou(r, r) == pytest.approx(1.0)

    def test_disjoint_rects(self):
        assert iou(Rect(0, 0, 10, 10), Rect(20, 20, 30, 30)) == 0.0

    def test_touching_edges_do_not_overlap(self):
        assert intersection_area(Rect(0, 0, 10, 10), Rect(10, 0, 20, 10)) == 0.0

    def test_half_shifted(self):
        a = Rect(0, 0, 10, 10)
        b = Rect(5, 0, 15, 10)
        assert intersection_area(a, b) == pytest.approx(50.0)
        assert iou(a, b) == pytest.approx(50.0 / 150.0)

    def test_degenerate_rect_has_zero_area(self):
        assert area(Rect(5, 5, 5, 20)) == 0.0
        assert iou(Rect(5, 5, 5, 20), Rect(0, 0, 10, 10)) == 0.0


class TestClampAndExpand:
    def test_clamp_to_bounds(self):
        assert clamp(Rect(-5, -5, 50, 120), 40, 100) == Rect(0, 0, 40, 100)

    def test_clamp_outside_returns_none(self):
        assert clamp(Rect(-10, -10, -1, -1), 100, 100) is None

    def test_expand_pads_by_own_dimensions(self):
        grown = expand(Rect(10, 10, 30, 20), 0.1, 100, 100)
        assert grown.left == pytest.approx(8.0)
        assert grown.right == pytest.approx(32.0)
        assert grown.top == pytest.approx(9.0)
        assert grown.bottom == pytest.approx(21.0)

    def test_expand_is_clamped(self):
        grown = expand(Rect(0, 0, 100, 50), 0.5, 100, 50)
        assert grown == Rect(0, 0, 100, 50)


class TestContains:
    def test_inside(self):
        assert contains(Rect(2, 2, 8, 8), Rect(0, 0, 10, 10))

    def test_cushion_tolerates_overhang(self):
        inner = Rect(0, 0, 13, 10)
        outer = Rect(0, 0, 10, 10)
        assert not contains(inner, outer)
        assert contains(inner, outer, cushion=6)

    def test_outer_not_inside_inner(self):
        assert not contains(Rect(0, 0, 100, 100), Rect(10, 10, 20, 20), cushion=6)


def test_normalized_box():
    box = normalized_box(Rect(10, 20, 60, 70), 200, 100)
    assert box == {"x": 0.05, "y": 0.2, "width": 0.25, "height": 0.5}
