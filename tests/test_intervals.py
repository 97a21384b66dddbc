"""Tests for half-open interval algebra."""

import pytest
from pydantic import ValidationError

from wwk.intervals import Interval, subtract_all


def iv(start: int, end: int) -> Interval:
    return Interval.of(start, end)


class TestIntervalBasics:
    """Tests for emptiness, duration and containment."""

    def test_empty_when_end_equals_start(self):
        assert iv(5, 5).is_empty

    def test_empty_when_end_before_start(self):
        """Negative-length intervals are representable but empty."""
        interval = iv(10, 5)
        assert interval.is_empty
        assert interval.duration_us == 0

    def test_non_empty_duration(self):
        interval = iv(10, 25)
        assert not interval.is_empty
        assert interval.duration_us == 15

    def test_contains_is_half_open(self):
        interval = iv(10, 20)
        assert interval.contains(10)
        assert interval.contains(19)
        assert not interval.contains(20)
        assert not interval.contains(9)

    def test_empty_interval_contains_nothing(self):
        assert not iv(10, 10).contains(10)

    def test_frozen(self):
        """Intervals are immutable values."""
        interval = iv(1, 2)
        with pytest.raises(ValidationError):
            interval.start_us = 5


class TestOverlaps:
    """Tests for overlap detection."""

    @pytest.mark.parametrize(
        "a,b,expected",
        [
            ((0, 10), (5, 15), True),
            ((0, 10), (10, 20), False),  # touching at boundary
            ((10, 20), (0, 10), False),
            ((0, 10), (2, 3), True),  # containment
            ((2, 3), (0, 10), True),
            ((0, 10), (0, 10), True),
            ((0, 10), (20, 30), False),
            ((5, 5), (0, 10), False),  # empty never overlaps
        ],
    )
    def test_overlaps(self, a, b, expected):
        assert iv(*a).overlaps(iv(*b)) is expected
        assert iv(*b).overlaps(iv(*a)) is expected


class TestIntersect:
    """Tests for intersection."""

    def test_partial_overlap(self):
        assert iv(0, 10).intersect(iv(5, 15)) == iv(5, 10)

    def test_containment(self):
        assert iv(0, 100).intersect(iv(20, 30)) == iv(20, 30)

    def test_touching_is_none(self):
        assert iv(0, 10).intersect(iv(10, 20)) is None

    def test_disjoint_is_none(self):
        assert iv(0, 10).intersect(iv(50, 60)) is None

    def test_commutative(self):
        a, b = iv(3, 17), iv(11, 40)
        assert a.intersect(b) == b.intersect(a)


class TestSubtract:
    """Tests for interval subtraction (0, 1 or 2 pieces)."""

    def test_no_overlap_returns_self(self):
        assert iv(0, 10).subtract(iv(20, 30)) == [iv(0, 10)]

    def test_touching_returns_self(self):
        assert iv(0, 10).subtract(iv(10, 20)) == [iv(0, 10)]

    def test_full_cover_returns_nothing(self):
        assert iv(5, 10).subtract(iv(0, 20)) == []

    def test_identical_returns_nothing(self):
        assert iv(5, 10).subtract(iv(5, 10)) == []

    def test_cut_left(self):
        assert iv(0, 10).subtract(iv(-5, 4)) == [iv(4, 10)]

    def test_cut_right(self):
        assert iv(0, 10).subtract(iv(6, 15)) == [iv(0, 6)]

    def test_split_in_middle(self):
        """Subtracting an inner interval yields left then right piece."""
        assert iv(0, 10).subtract(iv(3, 7)) == [iv(0, 3), iv(7, 10)]

    def test_pieces_preserve_total_duration(self):
        whole = iv(0, 100)
        removed = iv(30, 45)
        pieces = whole.subtract(removed)
        assert sum(p.duration_us for p in pieces) == whole.duration_us - removed.duration_us


class TestSubtractAll:
    """Tests for subtracting from a list of intervals."""

    def test_subtracts_from_each(self):
        result = subtract_all([iv(0, 10), iv(20, 30)], iv(5, 25))
        assert result == [iv(0, 5), iv(25, 30)]

    def test_drops_fully_removed(self):
        assert subtract_all([iv(0, 10)], iv(0, 10)) == []

    def test_empty_input(self):
        assert subtract_all([], iv(0, 10)) == []
